"""Exit pressure engine — weighted exit pressures and urgency, no I/O.

Each detector yields a pressure ``value`` (0–100) with a fixed weight.
Active pressures combine into a weighted average; the timebox then floors
the composite (≥ 90 once overdue, ≥ 50 once urgent).

The engine never recommends exiting at a loss:

    should_exit = pnl > 0 and pnl ≥ minProfitForExit
                  and pressure ≥ exitPressureThreshold
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from marginpilot.models.strategy_config import AntiGreedConfig, StrategyConfig, TimeboxConfig
from marginpilot.risk.position import DEFAULT_TIMEBOX_HOURS, MS_PER_HOUR, PositionState
from marginpilot.strategy.models import IndicatorSet
from marginpilot.strategy.regime import MarketRegimeAnalysis

logger = logging.getLogger("marginpilot.risk")

TimePhase = Literal["normal", "monitor", "escalating", "urgent", "overdue"]
Urgency = Literal["immediate", "soon", "consider", "monitor"]

DEFAULT_TIMEBOX_WEIGHT = 0.30


@dataclass(frozen=True)
class ExitPressure:
    source: str  # exit reason this pressure supports
    value: float  # 0-100
    weight: float
    detail: str


@dataclass(frozen=True)
class ExitSignal:
    should_exit: bool
    urgency: Urgency
    reason: str
    confidence: int
    explanation: str
    pressures: tuple[ExitPressure, ...]
    total_pressure: int  # 0-100
    suggested_exit_percent: int


@dataclass(frozen=True)
class Detection:
    active: bool
    value: float
    detail: str


NO_EXIT_SIGNAL = ExitSignal(
    should_exit=False,
    urgency="monitor",
    reason="timebox_approaching",
    confidence=0,
    explanation="No open position.",
    pressures=(),
    total_pressure=0,
    suggested_exit_percent=0,
)


# ── Time ─────────────────────────────────────────────────────────────────


def resolve_timebox_hours(strategy: StrategyConfig, regime: Optional[MarketRegimeAnalysis] = None) -> float:
    """The timebox in force: the regime's adjusted hours, else ``timebox.maxHours``."""
    if regime is not None:
        return regime.adjusted_timebox_max_hours
    return strategy.timebox.max_hours


def get_time_phase(hours_in_trade: float, max_hours: float = DEFAULT_TIMEBOX_HOURS) -> TimePhase:
    """Phase of a trade within its timebox.

    Cut-offs sit at 25 / 50 / 75 / 100 % of *max_hours*, i.e. 12 / 24 / 36 / 48 h
    for a 48 h timebox.
    """
    if hours_in_trade >= max_hours:
        return "overdue"
    if hours_in_trade >= max_hours * 0.75:
        return "urgent"
    if hours_in_trade >= max_hours * 0.5:
        return "escalating"
    if hours_in_trade >= max_hours * 0.25:
        return "monitor"
    return "normal"


def calculate_timebox_pressure(hours_in_trade: float, timebox: TimeboxConfig) -> float:
    """Timebox pressure from the step table, interpolated linearly between steps.

    Past the last step the last step's pressure applies.  Non-decreasing in
    *hours_in_trade* for a valid (ascending) step table.
    """
    steps = timebox.steps
    for i in range(len(steps) - 1, -1, -1):
        if hours_in_trade >= steps[i].hours:
            if i == len(steps) - 1:
                return steps[i].pressure
            current, nxt = steps[i], steps[i + 1]
            progress = (hours_in_trade - current.hours) / (nxt.hours - current.hours)
            return current.pressure + (nxt.pressure - current.pressure) * progress
    return 0.0


# ── Detectors ────────────────────────────────────────────────────────────


def detect_rsi_exhaustion(direction: str, rsi15m: float) -> Detection:
    if direction == "long":
        if rsi15m > 75:
            return Detection(True, 90, f"15m RSI {rsi15m:.0f} - strongly overbought")
        if rsi15m > 70:
            return Detection(True, 60, f"15m RSI {rsi15m:.0f} - overbought")
    else:
        if rsi15m < 25:
            return Detection(True, 90, f"15m RSI {rsi15m:.0f} - strongly oversold")
        if rsi15m < 30:
            return Detection(True, 60, f"15m RSI {rsi15m:.0f} - oversold")
    return Detection(False, 0, f"15m RSI {rsi15m:.0f} - neutral")


def detect_macd_reversal(direction: str, histogram1h: float, macd1h: float) -> Detection:
    """1h histogram flipping against the position; stronger when MACD agrees."""
    if direction == "long":
        if histogram1h < 0 and macd1h < 0:
            return Detection(True, 80, f"1H MACD reversed bearish (hist: {histogram1h:.5f})")
        if histogram1h < 0:
            return Detection(True, 50, f"1H histogram turning negative ({histogram1h:.5f})")
    else:
        if histogram1h > 0 and macd1h > 0:
            return Detection(True, 80, f"1H MACD reversed bullish (hist: {histogram1h:+.5f})")
        if histogram1h > 0:
            return Detection(True, 50, f"1H histogram turning positive ({histogram1h:+.5f})")
    return Detection(False, 0, f"1H MACD histogram {histogram1h:+.5f}")


def detect_volume_dry_up(vol_ratio15m: float, vol_ratio5m: float, in_profit: bool) -> Detection:
    if not in_profit:
        return Detection(False, 0, f"Vol: 15m {vol_ratio15m:.1f}x, 5m {vol_ratio5m:.1f}x")

    avg = (vol_ratio15m + vol_ratio5m) / 2
    if avg < 0.5:
        return Detection(True, 80, f"Volume dried up (avg {avg:.1f}x) - take profit")
    if avg < 0.7:
        return Detection(True, 50, f"Volume declining (avg {avg:.1f}x) - consider exit")
    return Detection(False, 0, f"Volume ok (avg {avg:.1f}x)")


def _hwm_drawdown_percent(pnl: float, hwm: float) -> float:
    return (hwm - pnl) / hwm * 100 if hwm > 0 else 0.0


def detect_anti_greed(pnl: float, high_water_mark: float, config: AntiGreedConfig) -> Detection:
    """P&L given back from its high-water mark.

    Gated by ``minHWMToTrack`` and ``minPnLToActivate``.  At 70 % of the
    threshold an inactive early warning (value 30) is reported.
    """
    if not config.enabled:
        return Detection(False, 0, "Anti-greed disabled")
    if high_water_mark < config.min_hwm_to_track:
        return Detection(False, 0, f"HWM {high_water_mark:.0f} below tracking threshold")
    if pnl < config.min_pnl_to_activate:
        return Detection(False, 0, f"P&L {pnl:.0f} below activation threshold")

    drawdown = _hwm_drawdown_percent(pnl, high_water_mark)
    if drawdown >= config.drawdown_threshold_percent:
        return Detection(
            True, 90,
            f"Gave back {drawdown:.0f}% from peak ({high_water_mark:.0f} -> {pnl:.0f})",
        )
    if drawdown >= config.drawdown_threshold_percent * 0.7:
        return Detection(
            False, 30,
            f"Drawdown {drawdown:.0f}% from peak (approaching {config.drawdown_threshold_percent:.0f}% threshold)",
        )
    return Detection(False, 0, f"Drawdown {drawdown:.0f}% from peak - healthy")


def detect_momentum_fading(direction: str, ind15m: IndicatorSet) -> Detection:
    """Two of three: histogram shrinking toward zero, RSI near 50, flat EMA20."""
    hist = ind15m.histogram
    signals = 0
    if direction == "long" and 0 < hist < 0.0001:
        signals += 1
    elif direction == "short" and -0.0001 < hist < 0:
        signals += 1
    if 45 < ind15m.rsi < 55:
        signals += 1
    if abs(ind15m.ema20_slope) < 0.02:
        signals += 1

    if signals >= 2:
        return Detection(True, 60, f"Momentum fading ({signals}/3 signals)")
    if signals == 1:
        return Detection(False, 20, f"Partial momentum fade ({signals}/3 signals)")
    return Detection(False, 0, "Momentum intact")


def detect_trend_reversal(direction: str, ind1h: IndicatorSet) -> Detection:
    against = "bearish" if direction == "long" else "bullish"
    if ind1h.trend == against and ind1h.ema_alignment == against:
        return Detection(True, 90, f"1H trend reversed to {against} with EMA stack")
    if ind1h.trend == against:
        return Detection(True, 60, f"1H trend turned {against}")
    return Detection(False, 0, f"1H trend: {ind1h.trend}")


# ── Urgency ──────────────────────────────────────────────────────────────


def determine_urgency(phase: TimePhase, in_profit: bool, total_pressure: float) -> Urgency:
    if total_pressure >= 90:
        return "immediate"
    if phase == "overdue":
        return "immediate" if in_profit else "soon"
    if phase == "urgent":
        return "soon" if in_profit else "consider"
    if phase == "escalating":
        if total_pressure >= 60:
            return "soon"
        return "consider" if in_profit else "monitor"
    if phase == "monitor":
        return "consider" if total_pressure >= 70 else "monitor"
    return "consider" if total_pressure >= 80 else "monitor"


# ── Main analysis ────────────────────────────────────────────────────────


def analyze_exit_conditions(
    position: PositionState,
    ind15m: Optional[IndicatorSet],
    ind1h: Optional[IndicatorSet],
    ind5m: Optional[IndicatorSet],
    current_price: float,
    now_ms: int,
    strategy: StrategyConfig,
    regime: Optional[MarketRegimeAnalysis] = None,
) -> Optional[ExitSignal]:
    """Combine every exit pressure into an ``ExitSignal``.

    Args:
        position: Position state refreshed to *now_ms*.
        ind15m: 15m indicators.
        ind1h: 1h indicators.
        ind5m: 5m indicators.
        current_price: Latest price.
        now_ms: Current time in unix ms.
        strategy: Active strategy (exit, anti-greed and timebox sections).
        regime: Optional regime analysis; its adjusted timebox weight
            replaces the default 0.30 and its adjusted max hours replace
            ``timebox.maxHours`` for the time phase.

    Returns:
        ``NO_EXIT_SIGNAL`` without an open position, ``None`` when any
        indicator set is missing, otherwise the ``ExitSignal``.
    """
    if not position.is_open or position.direction is None:
        return NO_EXIT_SIGNAL
    if ind15m is None or ind1h is None or ind5m is None:
        logger.debug("Exit analysis skipped: insufficient indicator data")
        return None

    direction = position.direction
    pnl = position.unrealized_pnl
    in_profit = pnl > 0
    hours = position.time_in_trade_ms / MS_PER_HOUR
    phase = get_time_phase(hours, resolve_timebox_hours(strategy, regime))
    pressures: list[ExitPressure] = []

    timebox_value = calculate_timebox_pressure(hours, strategy.timebox)
    if timebox_value > 0:
        weight = regime.adjusted_timebox_weight if regime is not None else DEFAULT_TIMEBOX_WEIGHT
        pressures.append(ExitPressure(
            "timebox_expired", timebox_value, weight,
            f"{hours:.1f}h in trade ({phase}) - pressure {timebox_value:.0f}%",
        ))

    rsi = detect_rsi_exhaustion(direction, ind15m.rsi)
    if rsi.active:
        pressures.append(ExitPressure("momentum_exhaustion", rsi.value, 0.20, rsi.detail))

    macd = detect_macd_reversal(direction, ind1h.histogram, ind1h.macd)
    if macd.active:
        pressures.append(ExitPressure("momentum_exhaustion", macd.value, 0.15, macd.detail))

    volume = detect_volume_dry_up(ind15m.volume_ratio, ind5m.volume_ratio, in_profit)
    if volume.active:
        pressures.append(ExitPressure("condition_deterioration", volume.value, 0.10, volume.detail))

    greed = detect_anti_greed(pnl, position.high_water_mark_pnl, strategy.anti_greed)
    if greed.active:
        pressures.append(ExitPressure("anti_greed", greed.value, 0.25, greed.detail))

    fading = detect_momentum_fading(direction, ind15m)
    if fading.active:
        pressures.append(ExitPressure("momentum_exhaustion", fading.value, 0.10, fading.detail))

    reversal = detect_trend_reversal(direction, ind1h)
    if reversal.active:
        pressures.append(ExitPressure("trend_reversal", reversal.value, 0.20, reversal.detail))

    total_weight = sum(p.weight for p in pressures)
    total = min(100.0, sum(p.value * p.weight for p in pressures) / total_weight) if total_weight > 0 else 0.0
    if phase == "overdue":
        total = max(total, 90.0)
    elif phase == "urgent":
        total = max(total, 50.0)

    urgency = determine_urgency(phase, in_profit, total)
    exit_config = strategy.exit
    should_exit = in_profit and pnl >= exit_config.min_profit_for_exit and total >= exit_config.exit_pressure_threshold

    if greed.active:
        reason = "anti_greed"
    elif reversal.active and reversal.value >= 80:
        reason = "trend_reversal"
    elif phase == "overdue":
        reason = "timebox_expired"
    elif rsi.active or macd.active:
        reason = "momentum_exhaustion"
    elif volume.active:
        reason = "condition_deterioration"
    else:
        reason = "timebox_approaching"

    parts = []
    if should_exit:
        parts.append(f"Exit recommended (pressure {total:.0f}%).")
    elif in_profit:
        parts.append(f"In profit but pressure low ({total:.0f}%).")
    else:
        parts.append("At a loss - no exit signal (trader holds to liquidation).")
    if phase != "normal":
        parts.append(f"Time: {hours:.1f}h ({phase}).")
    if in_profit:
        parts.append(f"P&L: +{pnl:.0f}.")
    if greed.active:
        parts.append(greed.detail)

    suggested = 0
    if should_exit:
        if urgency == "immediate":
            suggested = 100
        elif urgency == "soon":
            suggested = 100 if total >= 80 else 75
        elif urgency == "consider":
            suggested = 50

    if should_exit:
        logger.info(
            "Exit %s: %s, pressure %.0f%%, P&L %.2f @ %.5f",
            urgency, reason, total, pnl, current_price,
        )

    return ExitSignal(
        should_exit=should_exit,
        urgency=urgency,
        reason=reason,
        confidence=min(95, round(total)) if should_exit else 0,
        explanation=" ".join(parts),
        pressures=tuple(pressures),
        total_pressure=round(total),
        suggested_exit_percent=suggested,
    )


# ── Convenience helpers ──────────────────────────────────────────────────


def is_approaching_timebox(position: PositionState) -> bool:
    """True from the urgent phase (75 % of the position's timebox) on."""
    return position.time_in_trade_ms / MS_PER_HOUR >= position.timebox_max_hours * 0.75


def is_anti_greed_triggered(position: PositionState, config: AntiGreedConfig) -> bool:
    if not config.enabled:
        return False
    if position.high_water_mark_pnl < config.min_hwm_to_track:
        return False
    if position.unrealized_pnl < config.min_pnl_to_activate:
        return False
    drawdown = _hwm_drawdown_percent(position.unrealized_pnl, position.high_water_mark_pnl)
    return drawdown >= config.drawdown_threshold_percent


def exit_status_summary(signal: ExitSignal) -> str:
    """Short display label for an exit signal."""
    if not signal.should_exit and signal.total_pressure == 0:
        return "Holding"
    return {
        "immediate": "EXIT NOW",
        "soon": "Exit Soon",
        "consider": "Consider Exit",
        "monitor": "Monitoring",
    }.get(signal.urgency, "Holding")
