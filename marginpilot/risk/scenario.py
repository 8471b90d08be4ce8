"""DCA scenario planner — what a hypothetical add does to a position, no I/O.

Three questions are answered:

* ``solve_target_average`` — how much must be added at *dca_price* to pull
  the average entry to *target_avg*::

      volume = current_volume × (current_avg − target) / (target − dca_price)

  A long can only lower its average (``dca_price < target < current_avg``),
  a short can only raise it (``current_avg < target < dca_price``).
* ``what_if_buy`` — the effect of adding a given volume or quote amount.
* ``plan_multi_level`` — a progressive ladder of adds, each step applied to
  the result of the previous one.

Every step reports the new average, liquidation price and distance, fees,
breakeven and whether the free margin covers it.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from marginpilot.risk.liquidation import Direction, calculate_liquidation_price
from marginpilot.risk.position import PositionState, calculate_new_avg_price

# ── Fees ─────────────────────────────────────────────────────────────────

TAKER_FEE = 0.0026  # market orders
MAKER_FEE = 0.0016  # limit orders
MARGIN_OPEN_FEE = 0.0002
MARGIN_ROLLOVER_FEE = 0.0002  # per 4 hours


class ScenarioRejection(Exception):
    """The requested scenario is mathematically impossible."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class FeeEstimate:
    trading_fee: float
    margin_open_fee: float
    rollover_per_4h: float
    total: float  # trading + margin open


@dataclass(frozen=True)
class ScenarioStep:
    dca_price: float
    dca_volume: float
    dca_cost: float
    margin_required: float
    new_avg_price: float
    new_total_volume: float
    new_total_margin: float
    liquidation_price: float
    liquidation_distance_percent: float  # from the DCA price
    breakeven_price: float
    fees: FeeEstimate
    can_afford: bool


@dataclass(frozen=True)
class MultiLevelPlan:
    steps: tuple[ScenarioStep, ...]
    total_cost: float
    total_volume: float
    total_fees: float
    final_margin_utilization_percent: float
    first_unaffordable_level: Optional[int]  # 1-based


def estimate_fees(order_value: float, order_type: str = "market", leverage: float = 10.0) -> FeeEstimate:
    """Fee estimate for an order of *order_value* (quote currency)."""
    rate = TAKER_FEE if order_type == "market" else MAKER_FEE
    trading = order_value * rate
    is_margin = leverage > 0
    opening = order_value * MARGIN_OPEN_FEE if is_margin else 0.0
    rollover = order_value * MARGIN_ROLLOVER_FEE if is_margin else 0.0
    return FeeEstimate(
        trading_fee=trading,
        margin_open_fee=opening,
        rollover_per_4h=rollover,
        total=trading + opening,
    )


def _scenario_step(
    direction: Direction,
    current_avg: float,
    current_volume: float,
    dca_price: float,
    dca_volume: float,
    leverage: float,
    free_margin: float,
) -> ScenarioStep:
    new_avg = calculate_new_avg_price(current_avg, current_volume, dca_price, dca_volume)
    new_volume = current_volume + dca_volume

    cost = dca_price * dca_volume
    margin_required = cost / leverage
    new_total_margin = current_volume * current_avg / leverage + margin_required

    liq_price, _ = calculate_liquidation_price(
        new_avg, new_total_margin, new_volume * new_avg, direction, leverage
    )
    if direction == "long":
        liq_distance = (dca_price - liq_price) / dca_price * 100
        breakeven = new_avg * (1 + 2 * TAKER_FEE)
    else:
        liq_distance = (liq_price - dca_price) / dca_price * 100
        breakeven = new_avg * (1 - 2 * TAKER_FEE)

    return ScenarioStep(
        dca_price=dca_price,
        dca_volume=dca_volume,
        dca_cost=cost,
        margin_required=margin_required,
        new_avg_price=new_avg,
        new_total_volume=new_volume,
        new_total_margin=new_total_margin,
        liquidation_price=liq_price,
        liquidation_distance_percent=liq_distance,
        breakeven_price=breakeven,
        fees=estimate_fees(cost, "market", leverage),
        can_afford=margin_required <= free_margin,
    )


def _require_open(position: PositionState) -> Direction:
    if not position.is_open or position.direction is None or position.total_volume <= 0:
        raise ValueError("scenario planning requires an open position")
    return position.direction


# ── Modes ────────────────────────────────────────────────────────────────


def solve_target_average(
    position: PositionState,
    target_avg: float,
    dca_price: float,
    free_margin: float,
) -> ScenarioStep:
    """Volume to add at *dca_price* so the average entry becomes *target_avg*.

    Raises:
        ValueError: If a price is non-positive or the position is not open.
        ScenarioRejection: If the target cannot be reached from this price.
    """
    if target_avg <= 0 or dca_price <= 0:
        raise ValueError(f"target_avg and dca_price must be positive, got {target_avg}, {dca_price}")
    direction = _require_open(position)
    current_avg = position.avg_price

    if direction == "long":
        if target_avg >= current_avg:
            raise ScenarioRejection(
                f"Cannot raise average from {current_avg:.5f} to {target_avg:.5f} by buying more. "
                "DCA can only lower your average for a long position."
            )
        if target_avg <= dca_price:
            raise ScenarioRejection(
                f"Target avg {target_avg:.5f} is at or below DCA price {dca_price:.5f}. "
                "Mathematically impossible: target must be between DCA price and current avg."
            )
    else:
        if target_avg <= current_avg:
            raise ScenarioRejection(
                f"Cannot lower average from {current_avg:.5f} to {target_avg:.5f} by selling more. "
                "DCA can only raise your average for a short position."
            )
        if target_avg >= dca_price:
            raise ScenarioRejection(
                f"Target avg {target_avg:.5f} is at or above DCA price {dca_price:.5f}. "
                "Mathematically impossible: target must be between current avg and DCA price."
            )

    denominator = target_avg - dca_price
    if abs(denominator) < 1e-10:
        raise ScenarioRejection("Target avg is too close to DCA price")

    volume = abs(position.total_volume * (current_avg - target_avg) / denominator)
    return _scenario_step(
        direction, current_avg, position.total_volume, dca_price, volume, position.leverage, free_margin
    )


def what_if_buy(
    position: PositionState,
    dca_price: float,
    free_margin: float,
    volume: float = 0.0,
    amount: float = 0.0,
) -> ScenarioStep:
    """Effect of adding *volume* (or *amount* in quote currency) at *dca_price*."""
    if dca_price <= 0:
        raise ValueError(f"dca_price must be positive, got {dca_price}")
    direction = _require_open(position)
    if volume <= 0 and amount > 0:
        volume = amount / dca_price
    if volume <= 0:
        raise ValueError("provide a positive volume or amount for the hypothetical add")
    return _scenario_step(
        direction, position.avg_price, position.total_volume, dca_price, volume, position.leverage, free_margin
    )


def plan_multi_level(
    position: PositionState,
    price_levels: Sequence[float],
    free_margin: float,
    dca_margin_percent: float,
    volume_per_level: float = 0.0,
    amount_per_level: float = 0.0,
) -> MultiLevelPlan:
    """Progressive DCA ladder over *price_levels*.

    Levels are visited in the order price would reach them: descending for
    a long, ascending for a short.  Without an explicit volume or amount,
    each level uses *dca_margin_percent* of the running equity.
    """
    if not price_levels:
        raise ValueError("price_levels must not be empty")
    if any(p <= 0 for p in price_levels):
        raise ValueError("price_levels must all be positive")
    direction = _require_open(position)
    leverage = position.leverage

    levels = sorted(price_levels, reverse=(direction == "long"))

    running_avg = position.avg_price
    running_volume = position.total_volume
    running_margin = position.total_margin_used
    running_free = free_margin
    steps: list[ScenarioStep] = []

    for price in levels:
        if volume_per_level > 0:
            volume = volume_per_level
        elif amount_per_level > 0:
            volume = amount_per_level / price
        else:
            equity = running_free + running_margin
            volume = equity * dca_margin_percent / 100 * leverage / price

        step = _scenario_step(direction, running_avg, running_volume, price, volume, leverage, running_free)
        steps.append(step)

        running_avg = step.new_avg_price
        running_volume = step.new_total_volume
        running_margin += step.margin_required
        running_free = max(0.0, running_free - step.margin_required)

    equity = free_margin + position.total_margin_used
    first_unaffordable = next((i + 1 for i, s in enumerate(steps) if not s.can_afford), None)
    return MultiLevelPlan(
        steps=tuple(steps),
        total_cost=sum(s.dca_cost for s in steps),
        total_volume=sum(s.dca_volume for s in steps),
        total_fees=sum(s.fees.total for s in steps),
        final_margin_utilization_percent=running_margin / equity * 100 if equity > 0 else 0.0,
        first_unaffordable_level=first_unaffordable,
    )
