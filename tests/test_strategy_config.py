"""Tests for strategy loading, validation and the registry."""

import copy
import dataclasses
import json

import pytest

from marginpilot.models.strategy_config import ExhaustionThresholds
from marginpilot.strategy.loader import (
    PRESET_DIR,
    ValidationError,
    export_strategy,
    load_strategy,
    load_strategy_file,
    validate_strategy,
)
from marginpilot.strategy.registry import (
    StrategyRegistry,
    build_registry,
    load_builtin_registry,
)


PRESET_PATH = PRESET_DIR / "aggressive_swing_10x.json"


def _raw() -> dict:
    return json.loads(PRESET_PATH.read_text(encoding="utf-8"))


def _fields(result) -> set[str]:
    return {e.field for e in result.errors}


# ── Loading ──────────────────────────────────────────────────────────────


class TestLoadStrategy:
    @pytest.mark.parametrize("filename", ["aggressive_swing_10x.json", "breakout_pullback_10x.json"])
    def test_presets_are_valid(self, filename):
        result = load_strategy_file(PRESET_DIR / filename)
        assert result.ok, [str(e) for e in result.errors]

    def test_preset_values(self):
        strategy = load_strategy_file(PRESET_PATH).strategy
        assert strategy.name == "AGGRESSIVE_SWING_10X"
        assert strategy.position_sizing.leverage == 10
        assert strategy.position_sizing.max_dca_count == 3
        assert strategy.dca.exhaustion_thresholds.min_hours_between_by_level == {1: 2, 2: 4, 3: 8}
        assert strategy.timeframe_weights.total() == 100

    def test_level_hours_are_read_only(self):
        thresholds = load_strategy_file(PRESET_PATH).strategy.dca.exhaustion_thresholds
        with pytest.raises(TypeError):
            thresholds.min_hours_between_by_level[1] = 0.0
        with pytest.raises(TypeError):
            ExhaustionThresholds().min_hours_between_by_level[4] = 16.0

    def test_accepts_json_text(self):
        assert load_strategy(PRESET_PATH.read_text(encoding="utf-8")).ok

    def test_invalid_json(self):
        result = load_strategy("{not json")
        assert result.strategy is None
        assert result.errors[0].field == "root"
        assert result.errors[0].message.startswith("Invalid JSON")

    def test_non_object_document(self):
        result = load_strategy("[1, 2, 3]")
        assert str(result.errors[0]) == "root: Strategy document must be a JSON object"

    def test_missing_section(self):
        raw = _raw()
        del raw["positionSizing"]
        result = load_strategy(raw)
        assert not result.ok
        assert ValidationError("positionSizing", "Section is required") in result.errors

    def test_missing_field(self):
        raw = _raw()
        del raw["meta"]["name"]
        result = load_strategy(raw)
        assert ValidationError("meta.name", "Field is required") in result.errors

    def test_wrong_type(self):
        raw = _raw()
        raw["positionSizing"]["leverage"] = "ten"
        result = load_strategy(raw)
        assert ValidationError("positionSizing.leverage", "Must be a number") in result.errors

    def test_rejection_is_logged(self, caplog):
        raw = _raw()
        raw["positionSizing"]["leverage"] = 100
        with caplog.at_level("WARNING", logger="marginpilot.strategy"):
            load_strategy(raw)
        assert "AGGRESSIVE_SWING_10X rejected with 1 error(s)" in caplog.text

    def test_all_errors_reported(self):
        raw = _raw()
        raw["positionSizing"]["leverage"] = 0
        raw["exit"]["exitPressureThreshold"] = 150
        raw["antiGreed"]["drawdownThresholdPercent"] = 0
        assert {"positionSizing.leverage", "exit.exitPressureThreshold", "antiGreed.drawdownThresholdPercent"} <= _fields(load_strategy(raw))


# ── Validation rules ─────────────────────────────────────────────────────


def _set(raw: dict, path: str, value) -> dict:
    raw = copy.deepcopy(raw)
    *parents, leaf = path.split(".")
    node = raw
    for part in parents:
        node = node[part]
    node[leaf] = value
    return raw


class TestValidationRules:
    @pytest.mark.parametrize(
        "path, value, field",
        [
            ("meta.name", "", "meta.name"),
            ("meta.version", "", "meta.version"),
            ("timeframeWeights.5m", 20, "timeframeWeights"),
            ("signals.actionThreshold", 101, "signals.actionThreshold"),
            ("signals.gradeThresholds.B", 90, "signals.gradeThresholds"),
            ("positionSizing.leverage", 51, "positionSizing.leverage"),
            ("positionSizing.maxTotalMarginPercent", 90, "positionSizing"),
            ("positionSizing.fullEntryMarginPercent", 85, "positionSizing.fullEntryMarginPercent"),
            ("positionSizing.maxDCACount", -1, "positionSizing.maxDCACount"),
            ("dca.minDrawdownForDCA", -1, "dca.minDrawdownForDCA"),
            ("exit.exitPressureThreshold", -5, "exit.exitPressureThreshold"),
            ("antiGreed.drawdownThresholdPercent", -1, "antiGreed.drawdownThresholdPercent"),
            ("timebox.maxHours", 0, "timebox.maxHours"),
        ],
    )
    def test_rule(self, path, value, field):
        result = load_strategy(_set(_raw(), path, value))
        assert not result.ok
        assert field in _fields(result)

    def test_weight_sum_message(self):
        result = load_strategy(_set(_raw(), "timeframeWeights.5m", 20))
        assert ValidationError("timeframeWeights", "Weights must sum to 100, got 110") in result.errors

    def test_timebox_steps_ascending(self):
        raw = _raw()
        raw["timebox"]["steps"][1]["hours"] = 0
        assert "timebox.steps" in _fields(load_strategy(raw))

    def test_validate_strategy_on_hydrated_config(self):
        strategy = load_strategy_file(PRESET_PATH).strategy
        assert validate_strategy(strategy) == []
        broken = dataclasses.replace(
            strategy, exit=dataclasses.replace(strategy.exit, exit_pressure_threshold=120),
        )
        assert [e.field for e in validate_strategy(broken)] == ["exit.exitPressureThreshold"]

    def test_export_reloads_identically(self):
        strategy = load_strategy_file(PRESET_PATH).strategy
        assert load_strategy(export_strategy(strategy)).strategy == strategy


# ── Registry ─────────────────────────────────────────────────────────────


class TestRegistry:
    def test_builtin_presets(self):
        registry = load_builtin_registry()
        assert "AGGRESSIVE_SWING_10X" in registry
        assert "BREAKOUT_PULLBACK_10X" in registry
        assert len(registry) == 2

    def test_unknown_strategy(self):
        registry = load_builtin_registry()
        with pytest.raises(KeyError, match="Unknown strategy 'NOPE'"):
            registry.get("NOPE")

    def test_empty_registry(self):
        assert len(StrategyRegistry()) == 0
        assert StrategyRegistry().names() == []

    def test_duplicate_names_rejected(self):
        strategy = load_strategy_file(PRESET_PATH).strategy
        with pytest.raises(ValueError, match="Duplicate strategy name"):
            build_registry([strategy, strategy])

    def test_invalid_strategy_rejected(self):
        strategy = load_strategy_file(PRESET_PATH).strategy
        broken = dataclasses.replace(
            strategy, timebox=dataclasses.replace(strategy.timebox, max_hours=0),
        )
        with pytest.raises(ValueError, match="is invalid"):
            build_registry([broken])

    def test_with_strategy_returns_new_registry(self):
        registry = StrategyRegistry()
        strategy = load_strategy_file(PRESET_PATH).strategy
        updated, errors = registry.with_strategy(strategy)
        assert errors == []
        assert len(registry) == 0
        assert updated.get("AGGRESSIVE_SWING_10X") is strategy

    def test_with_invalid_strategy_keeps_registry(self):
        registry = StrategyRegistry()
        strategy = load_strategy_file(PRESET_PATH).strategy
        broken = dataclasses.replace(
            strategy, meta=dataclasses.replace(strategy.meta, version=""),
        )
        same, errors = registry.with_strategy(broken)
        assert same is registry
        assert errors[0].field == "meta.version"

    def test_extra_dir_skips_invalid_files(self, tmp_path):
        custom = _set(_raw(), "meta.name", "CUSTOM")
        (tmp_path / "custom.json").write_text(json.dumps(custom), encoding="utf-8")
        (tmp_path / "broken.json").write_text("{}", encoding="utf-8")
        registry = load_builtin_registry(tmp_path)
        assert "CUSTOM" in registry
        assert len(registry) == 3

    def test_extra_dir_overrides_builtin(self, tmp_path):
        override = _set(_raw(), "meta.version", "9.9.9")
        (tmp_path / "aggressive.json").write_text(json.dumps(override), encoding="utf-8")
        registry = load_builtin_registry(tmp_path)
        assert len(registry) == 2
        assert registry.get("AGGRESSIVE_SWING_10X").meta.version == "9.9.9"
