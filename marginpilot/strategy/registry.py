"""Strategy registry — an immutable name → StrategyConfig mapping.

Built once at startup and passed explicitly to whatever needs a strategy.
There is no module-level default; callers name the strategy they want.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from marginpilot.models.strategy_config import StrategyConfig
from marginpilot.strategy.loader import (
    PRESET_DIR,
    ValidationError,
    load_strategy_file,
    validate_strategy,
)

logger = logging.getLogger("marginpilot.strategy")


@dataclass(frozen=True)
class StrategyRegistry:
    """Read-only collection of validated strategies keyed by ``meta.name``."""

    _strategies: Mapping[str, StrategyConfig] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def get(self, name: str) -> StrategyConfig:
        """Look up a strategy by name.

        Raises ``KeyError`` if the strategy name is not registered.
        """
        if name not in self._strategies:
            raise KeyError(
                f"Unknown strategy '{name}'. "
                f"Available: {', '.join(self.names())}"
            )
        return self._strategies[name]

    def names(self) -> list[str]:
        return list(self._strategies.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._strategies

    def __len__(self) -> int:
        return len(self._strategies)

    def with_strategy(
        self, strategy: StrategyConfig
    ) -> tuple["StrategyRegistry", list[ValidationError]]:
        """Return a registry that also holds *strategy*.

        The strategy is validated first; on errors the current registry is
        returned unchanged together with the errors.
        """
        errors = validate_strategy(strategy)
        if errors:
            return self, errors
        merged = dict(self._strategies)
        merged[strategy.name] = strategy
        return StrategyRegistry(MappingProxyType(merged)), []


def build_registry(strategies: Iterable[StrategyConfig]) -> StrategyRegistry:
    """Build a registry from already-validated strategies.

    Raises ``ValueError`` on duplicate names or invalid strategies.
    """
    mapping: dict[str, StrategyConfig] = {}
    for strategy in strategies:
        if strategy.name in mapping:
            raise ValueError(f"Duplicate strategy name '{strategy.name}'")
        errors = validate_strategy(strategy)
        if errors:
            raise ValueError(
                f"Strategy '{strategy.name}' is invalid: "
                f"{'; '.join(str(e) for e in errors)}"
            )
        mapping[strategy.name] = strategy
    return StrategyRegistry(MappingProxyType(mapping))


def _load_dir(directory: Path, strict: bool) -> list[StrategyConfig]:
    loaded: list[StrategyConfig] = []
    for path in sorted(directory.glob("*.json")):
        result = load_strategy_file(path)
        if result.ok:
            loaded.append(result.strategy)
            continue
        detail = "; ".join(str(e) for e in result.errors)
        if strict:
            raise ValueError(f"Built-in strategy {path.name} is invalid: {detail}")
        logger.warning("Skipping strategy file %s: %s", path.name, detail)
    return loaded


def load_builtin_registry(extra_dir: Optional[Path] = None) -> StrategyRegistry:
    """Load the packaged presets plus any valid documents in *extra_dir*.

    Packaged presets must be valid (``ValueError`` otherwise); invalid
    files in *extra_dir* are skipped with a warning.
    """
    strategies = _load_dir(PRESET_DIR, strict=True)
    if extra_dir is not None:
        builtin_names = {s.name for s in strategies}
        for strategy in _load_dir(Path(extra_dir), strict=False):
            if strategy.name in builtin_names:
                logger.warning("Strategy %s in %s overrides a built-in preset", strategy.name, extra_dir)
                strategies = [s for s in strategies if s.name != strategy.name]
            strategies.append(strategy)

    registry = build_registry(strategies)
    logger.info("Strategy registry loaded: %s", ", ".join(registry.names()))
    return registry
