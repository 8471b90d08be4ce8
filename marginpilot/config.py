"""MarginPilot — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "DEFAULT_STRATEGY",
]


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    default_strategy: str
    trade_pair: str
    strategy_dir: Optional[str]  # None → built-in presets only
    candle_dir: str
    log_level: str
    available_margin: float
    knife_gating: bool  # KNIFE_GATING_ENABLED=false turns the knife gate off


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent, or when ``AVAILABLE_MARGIN`` is not a
    positive number.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    raw_margin = os.environ.get("AVAILABLE_MARGIN", "10000")
    try:
        available_margin = float(raw_margin)
    except ValueError:
        raise ValueError(f"AVAILABLE_MARGIN must be a number, got {raw_margin!r}") from None
    if available_margin <= 0:
        raise ValueError(f"AVAILABLE_MARGIN must be positive, got {available_margin}")

    return Config(
        default_strategy=os.environ["DEFAULT_STRATEGY"],
        trade_pair=os.environ.get("TRADE_PAIR", "XRPEUR"),
        strategy_dir=os.environ.get("STRATEGY_DIR") or None,
        candle_dir=os.environ.get("CANDLE_DIR", "data/candles"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        available_margin=available_margin,
        knife_gating=os.environ.get("KNIFE_GATING_ENABLED", "true").lower() != "false",
    )
