"""Liquidation price estimates — pure math, no I/O.

Two models are provided:

* ``calculate_liquidation_price`` — the position model.  The exchange
  liquidates at roughly an 80 % margin level, so equity may fall by 20 % of
  margin before liquidation::

      move = 0.2 / leverage          (2 % at 10x)

  applied against the volume-weighted average entry.
* ``calculate_cross_margin_liquidation_price`` — the market-wide model used
  for estimating where *other* traders' leveraged positions get liquidated::

      long  = entry × (1 − 1/leverage + maintenance)
      short = entry × (1 + 1/leverage − maintenance)
"""

from typing import Literal

Direction = Literal["long", "short"]

# Share of margin that may be lost before liquidation
LIQUIDATION_MARGIN_SHARE = 0.2
DEFAULT_MAINTENANCE_MARGIN = 0.004


def calculate_liquidation_price(
    avg_entry_price: float,
    total_margin_used: float,
    position_value: float,
    direction: Direction,
    leverage: float = 10.0,
) -> tuple[float, float]:
    """Estimate the liquidation price of a margin position.

    Args:
        avg_entry_price: Volume-weighted average entry price.
        total_margin_used: Margin committed across all entries.
        position_value: Notional value (margin × leverage).
        direction: ``"long"`` or ``"short"``.
        leverage: Leverage multiplier.

    Returns:
        ``(liquidation_price, distance_percent)`` with the distance measured
        from the average entry.  ``(0.0, 0.0)`` when any input is
        non-positive.
    """
    if avg_entry_price <= 0 or total_margin_used <= 0 or position_value <= 0 or leverage <= 0:
        return 0.0, 0.0

    move = LIQUIDATION_MARGIN_SHARE / leverage
    if direction == "long":
        price = avg_entry_price * (1 - move)
    else:
        price = avg_entry_price * (1 + move)

    distance = abs((avg_entry_price - price) / avg_entry_price * 100)
    return price, distance


def calculate_cross_margin_liquidation_price(
    entry_price: float,
    leverage: float,
    direction: Direction,
    maintenance_margin: float = DEFAULT_MAINTENANCE_MARGIN,
) -> float:
    """Liquidation price of a position opened at *entry_price*, cross-margin model."""
    if entry_price <= 0 or leverage <= 0:
        raise ValueError(f"entry_price and leverage must be positive, got {entry_price}, {leverage}")
    if direction == "long":
        return entry_price * (1 - 1 / leverage + maintenance_margin)
    return entry_price * (1 + 1 / leverage - maintenance_margin)


def liquidation_distance_percent(
    liquidation_price: float,
    current_price: float,
    direction: Direction,
) -> float:
    """Distance from *current_price* to liquidation, in % of the current price.

    Returns 100 when no liquidation price is known.  Negative once price
    has crossed the liquidation level.
    """
    if liquidation_price <= 0 or current_price <= 0:
        return 100.0
    if direction == "long":
        return (current_price - liquidation_price) / current_price * 100
    return (liquidation_price - current_price) / current_price * 100
