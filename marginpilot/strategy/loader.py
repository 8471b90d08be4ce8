"""Strategy document loading — JSON → :class:`StrategyConfig` with validation.

Bad documents never raise: every problem is reported as a
:class:`ValidationError` with the dotted path of the offending field.
"""

import collections.abc
import dataclasses
import json
import logging
import typing
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Optional, Union

from marginpilot.models.strategy_config import (
    AntiGreedConfig,
    DCAConfig,
    ExitConfig,
    LiquidationConfig,
    PositionSizingConfig,
    SignalConfig,
    StrategyConfig,
    StrategyMeta,
    TimeboxConfig,
    TimeframeWeights,
)

logger = logging.getLogger("marginpilot.strategy")

PRESET_DIR = Path(__file__).resolve().parent / "presets"

_INVALID = object()


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass(frozen=True)
class LoadResult:
    strategy: Optional[StrategyConfig]
    errors: tuple[ValidationError, ...]

    @property
    def ok(self) -> bool:
        return self.strategy is not None and not self.errors


# ── Key mapping ──────────────────────────────────────────────────────────


def _camel(name: str) -> str:
    first, *rest = name.split("_")
    return first + "".join(part.capitalize() for part in rest)


def json_key(f: dataclasses.Field) -> str:
    """JSON key of a config field."""
    return f.metadata.get("key") or _camel(f.name)


def _is_required(f: dataclasses.Field) -> bool:
    return f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING


def _unwrap_optional(tp):
    if typing.get_origin(tp) is Union:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


# ── Hydration ────────────────────────────────────────────────────────────


def _convert(tp, value: Any, path: str, errors: list[ValidationError]) -> Any:
    tp = _unwrap_optional(tp)
    origin = typing.get_origin(tp)

    if dataclasses.is_dataclass(tp):
        if not isinstance(value, dict):
            errors.append(ValidationError(path, "Must be an object"))
            return _INVALID
        hydrated = _hydrate(tp, value, path, errors)
        return hydrated if hydrated is not None else _INVALID

    if origin is tuple:
        if not isinstance(value, list):
            errors.append(ValidationError(path, "Must be a list"))
            return _INVALID
        item_type = typing.get_args(tp)[0]
        items = [_convert(item_type, v, f"{path}[{i}]", errors) for i, v in enumerate(value)]
        if any(item is _INVALID for item in items):
            return _INVALID
        return tuple(items)

    if origin in (dict, collections.abc.Mapping):
        if not isinstance(value, dict):
            errors.append(ValidationError(path, "Must be an object"))
            return _INVALID
        key_type, value_type = typing.get_args(tp)
        result = {}
        for k, v in value.items():
            try:
                parsed_key = key_type(k)
            except (TypeError, ValueError):
                errors.append(ValidationError(f"{path}.{k}", f"Key must be {key_type.__name__}"))
                return _INVALID
            converted = _convert(value_type, v, f"{path}.{k}", errors)
            if converted is _INVALID:
                return _INVALID
            result[parsed_key] = converted
        return MappingProxyType(result) if origin is collections.abc.Mapping else result

    if tp is bool:
        if not isinstance(value, bool):
            errors.append(ValidationError(path, "Must be true or false"))
            return _INVALID
        return value

    if tp in (int, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(ValidationError(path, "Must be a number"))
            return _INVALID
        if tp is int:
            if isinstance(value, float) and not value.is_integer():
                errors.append(ValidationError(path, "Must be a whole number"))
                return _INVALID
            return int(value)
        return float(value)

    if tp is str:
        if not isinstance(value, str):
            errors.append(ValidationError(path, "Must be a string"))
            return _INVALID
        return value

    return value


def _hydrate(cls, data: dict, path: str, errors: list[ValidationError]):
    """Build *cls* from a camelCase dict, appending problems to *errors*."""
    hints = typing.get_type_hints(cls)
    kwargs = {}
    failed = False
    for f in dataclasses.fields(cls):
        k = json_key(f)
        field_path = f"{path}.{k}" if path else k
        alias = f.metadata.get("alias")
        if k in data:
            raw = data[k]
        elif alias and alias in data:
            raw = data[alias]
        else:
            if _is_required(f):
                message = "Section is required" if not path else "Field is required"
                errors.append(ValidationError(field_path, message))
                failed = True
            continue
        if raw is None and not _is_required(f) and f.default is None:
            continue
        value = _convert(hints[f.name], raw, field_path, errors)
        if value is _INVALID:
            failed = True
            continue
        kwargs[f.name] = value
    if failed:
        return None
    return cls(**kwargs)


# ── Validation ───────────────────────────────────────────────────────────


def _validate_meta(meta: StrategyMeta, errors: list[ValidationError]) -> None:
    if not meta.name:
        errors.append(ValidationError("meta.name", "Strategy name is required"))
    if not meta.version:
        errors.append(ValidationError("meta.version", "Version is required"))


def _validate_weights(weights: TimeframeWeights, errors: list[ValidationError]) -> None:
    total = weights.total()
    if abs(total - 100) > 1e-9:
        errors.append(ValidationError("timeframeWeights", f"Weights must sum to 100, got {total:g}"))


def _validate_signals(signals: SignalConfig, errors: list[ValidationError]) -> None:
    if not 0 <= signals.action_threshold <= 100:
        errors.append(ValidationError("signals.actionThreshold", "Must be 0-100"))
    g = signals.grade_thresholds
    if not g.a >= g.b >= g.c >= g.d:
        errors.append(ValidationError("signals.gradeThresholds", "Grades must be descending A >= B >= C >= D"))


def _validate_sizing(ps: PositionSizingConfig, errors: list[ValidationError]) -> None:
    if not 1 <= ps.leverage <= 50:
        errors.append(ValidationError("positionSizing.leverage", "Leverage must be 1-50"))
    if ps.max_total_margin_percent + ps.min_free_margin_percent > 100:
        errors.append(ValidationError(
            "positionSizing",
            "maxTotalMarginPercent + minFreeMarginPercent cannot exceed 100",
        ))
    if ps.full_entry_margin_percent > ps.max_total_margin_percent:
        errors.append(ValidationError(
            "positionSizing.fullEntryMarginPercent", "Cannot exceed maxTotalMarginPercent",
        ))
    if ps.full_entry_margin_percent + ps.min_free_margin_percent > 100:
        errors.append(ValidationError(
            "positionSizing.fullEntryMarginPercent",
            "fullEntryMarginPercent + minFreeMarginPercent cannot exceed 100",
        ))
    if ps.max_dca_count < 0:
        errors.append(ValidationError("positionSizing.maxDCACount", "Must be >= 0"))


def _validate_dca(dca: DCAConfig, errors: list[ValidationError]) -> None:
    if dca.min_drawdown_for_dca < 0:
        errors.append(ValidationError("dca.minDrawdownForDCA", "Must be >= 0"))


def _validate_exit(exit_cfg: ExitConfig, errors: list[ValidationError]) -> None:
    if not 0 <= exit_cfg.exit_pressure_threshold <= 100:
        errors.append(ValidationError("exit.exitPressureThreshold", "Must be 0-100"))


def _validate_anti_greed(ag: AntiGreedConfig, errors: list[ValidationError]) -> None:
    if ag.drawdown_threshold_percent <= 0:
        errors.append(ValidationError("antiGreed.drawdownThresholdPercent", "Must be > 0"))


def _validate_timebox(tb: TimeboxConfig, errors: list[ValidationError]) -> None:
    if tb.max_hours <= 0:
        errors.append(ValidationError("timebox.maxHours", "Must be > 0"))
    hours = [step.hours for step in tb.steps]
    if any(b <= a for a, b in zip(hours, hours[1:])):
        errors.append(ValidationError("timebox.steps", "Step hours must be ascending"))


def _validate_liquidation(liq: LiquidationConfig, errors: list[ValidationError]) -> None:
    if liq.magnet_proximity_pct <= 0:
        errors.append(ValidationError("liquidation.magnetProximityPct", "Must be > 0"))
    if liq.wall_proximity_pct <= 0:
        errors.append(ValidationError("liquidation.wallProximityPct", "Must be > 0"))
    if liq.strong_asymmetry_threshold <= 0:
        errors.append(ValidationError("liquidation.strongAsymmetryThreshold", "Must be > 0"))


_SECTION_VALIDATORS = {
    "meta": _validate_meta,
    "timeframe_weights": _validate_weights,
    "signals": _validate_signals,
    "position_sizing": _validate_sizing,
    "dca": _validate_dca,
    "exit": _validate_exit,
    "anti_greed": _validate_anti_greed,
    "timebox": _validate_timebox,
    "liquidation": _validate_liquidation,
}


def _validate_sections(sections: dict[str, Any]) -> list[ValidationError]:
    errors: list[ValidationError] = []
    for name, validator in _SECTION_VALIDATORS.items():
        section = sections.get(name)
        if section is not None:
            validator(section, errors)
    return errors


def validate_strategy(strategy: StrategyConfig) -> list[ValidationError]:
    """Run every semantic rule against a hydrated strategy.

    Returns:
        All violations found; an empty list means valid.
    """
    sections = {name: getattr(strategy, name) for name in _SECTION_VALIDATORS}
    return _validate_sections(sections)


# ── Public API ───────────────────────────────────────────────────────────


def load_strategy(raw: Union[dict, str, bytes]) -> LoadResult:
    """Hydrate and validate a strategy document.

    Args:
        raw: A parsed JSON object, or JSON text.

    Returns:
        A :class:`LoadResult`; ``strategy`` is ``None`` when any error was
        found.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            return LoadResult(None, (ValidationError("root", f"Invalid JSON: {exc.msg}"),))
    if not isinstance(raw, dict):
        return LoadResult(None, (ValidationError("root", "Strategy document must be a JSON object"),))

    errors: list[ValidationError] = []
    hints = typing.get_type_hints(StrategyConfig)
    sections: dict[str, Any] = {}
    for f in dataclasses.fields(StrategyConfig):
        k = json_key(f)
        if k not in raw or raw[k] is None:
            if _is_required(f):
                errors.append(ValidationError(k, "Section is required"))
            continue
        value = _convert(hints[f.name], raw[k], k, errors)
        if value is not _INVALID:
            sections[f.name] = value

    errors.extend(_validate_sections(sections))
    if errors:
        name = raw.get("meta", {}).get("name") if isinstance(raw.get("meta"), dict) else None
        logger.warning("Strategy %s rejected with %d error(s)", name or "<unnamed>", len(errors))
        return LoadResult(None, tuple(errors))

    return LoadResult(StrategyConfig(**sections), ())


def load_strategy_file(path: Union[str, Path]) -> LoadResult:
    """Read a strategy JSON file and load it."""
    text = Path(path).read_text(encoding="utf-8")
    return load_strategy(text)


def _export_value(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return export_strategy(value)
    if isinstance(value, tuple):
        return [_export_value(v) for v in value]
    if isinstance(value, collections.abc.Mapping):
        return {str(k): _export_value(v) for k, v in value.items()}
    return value


def export_strategy(config) -> dict:
    """Serialise a strategy (or any config section) back to camelCase JSON."""
    out = {}
    for f in dataclasses.fields(config):
        value = getattr(config, f.name)
        if value is None:
            continue
        out[json_key(f)] = _export_value(value)
    return out
