"""Session filter — trading session lookup and confidence adjustment. Pure functions."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from marginpilot.models.strategy_config import SessionConfig


@dataclass(frozen=True)
class TradingSession:
    phase: str  # "asia", "europe", "overlap_europe_us", "us" or "transition"
    market_hours: str
    description: str
    is_weekend: bool


def get_trading_session(now: datetime) -> TradingSession:
    """Return the session active at *now* (naive datetimes are taken as UTC).

    Windows (UTC): asia 00–07, europe 07–13, overlap_europe_us 13–16,
    us 16–21, transition 21–24.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    hour = now.hour
    is_weekend = now.weekday() >= 5

    if hour < 7:
        phase, hours, description = (
            "asia", "00:00-07:00 UTC", "Asia session - lower volume, choppy price action",
        )
    elif hour < 13:
        phase, hours, description = (
            "europe", "07:00-13:00 UTC", "Europe session - moderate volume, trend development",
        )
    elif hour < 16:
        phase, hours, description = (
            "overlap_europe_us", "13:00-16:00 UTC", "Europe-US overlap - highest liquidity window",
        )
    elif hour < 21:
        phase, hours, description = (
            "us", "16:00-21:00 UTC", "US session - high volume, strong directional moves",
        )
    else:
        phase, hours, description = (
            "transition", "21:00-00:00 UTC", "Transition period - lower volume, range-bound",
        )

    if is_weekend:
        description = f"Weekend {phase} hours - significantly lower volume"

    return TradingSession(phase=phase, market_hours=hours, description=description, is_weekend=is_weekend)


def session_confidence_adjustment(
    session: TradingSession,
    config: Optional[SessionConfig],
) -> tuple[float, Optional[str]]:
    """Confidence points to add for *session*, plus a note for warnings.

    Returns ``(0, None)`` when the filter is disabled.
    """
    if config is None or not config.enabled:
        return 0.0, None

    adjustment = 0.0
    if session.phase == "asia":
        adjustment -= config.asia_discount
    elif session.phase == "transition":
        adjustment -= config.transition_discount
    elif session.phase == "overlap_europe_us":
        adjustment += config.overlap_bonus
    if session.is_weekend:
        adjustment -= config.weekend_discount

    if adjustment < 0:
        return adjustment, f"{session.description} ({adjustment:+.0f} confidence)"
    return adjustment, None
