"""Fibonacci retracement/extension levels from the latest swing high and low.

The levels feed the key-level clustering in ``chart_context``; they are not
a standalone signal.
"""

from dataclasses import dataclass
from typing import Optional

from marginpilot.models.strategy_config import FibonacciConfig
from marginpilot.strategy.models import PriceLevel, SwingPoint


@dataclass(frozen=True)
class FibonacciResult:
    levels: tuple[PriceLevel, ...]
    swing_high: float
    swing_low: float
    range: float


def _side(price: float, current_price: float) -> str:
    return "support" if price < current_price else "resistance"


def calculate_fibonacci_levels(
    swings: list[SwingPoint],
    current_price: float,
    config: FibonacciConfig,
    atr: Optional[float] = None,
    interval: Optional[str] = None,
) -> Optional[FibonacciResult]:
    """Compute Fibonacci levels between the most recent swing high and low.

    Args:
        swings: Swing points sorted by index.
        current_price: Latest close, used to label support vs resistance.
        config: Ratios, extensions and the minimum swing range in ATRs.
        atr: ATR of the same timeframe; swings smaller than
            ``minSwingRangeATRMultiple × atr`` produce no levels.
        interval: Source timeframe label appended to each level's source.

    Returns:
        ``None`` when no usable swing range exists.
    """
    highs = [s for s in swings if s.type == "high"]
    lows = [s for s in swings if s.type == "low"]
    if not highs or not lows:
        return None

    swing_high = highs[-1].price
    swing_low = lows[-1].price
    rng = swing_high - swing_low
    if rng <= 0:
        return None
    if atr and atr > 0 and rng < config.min_swing_range_atr_multiple * atr:
        return None

    suffix = f"@tf{interval}" if interval else ""
    levels: list[PriceLevel] = []

    for ratio in config.ratios:
        price = swing_high - ratio * rng
        levels.append(PriceLevel(price, _side(price, current_price), 1, "moderate", (f"fib_{ratio}{suffix}",)))

    for ext in config.extensions:
        up = swing_high + (ext - 1) * rng
        levels.append(PriceLevel(up, _side(up, current_price), 1, "moderate", (f"fib_ext_{ext}{suffix}",)))

    for ext in config.extensions:
        down = swing_low - (ext - 1) * rng
        if down > 0:
            levels.append(PriceLevel(down, _side(down, current_price), 1, "moderate", (f"fib_ext_{ext}{suffix}",)))

    return FibonacciResult(levels=tuple(levels), swing_high=swing_high, swing_low=swing_low, range=rng)
