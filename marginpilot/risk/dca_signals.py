"""DCA opportunity detection — gated exhaustion scoring, no I/O.

A DCA is only considered once every gate passes:

1. the position is open and below ``maxDCACount``;
2. price has moved against the average entry by ``minDrawdownForDCA`` %;
3. enough time has passed since the last fill (the larger of
   ``minTimeBetweenDCAsMs`` and ``minHoursBetweenByLevel`` for the next
   level);
4. the timebox midpoint has not passed, unless ``allowDCAAfterMidpoint``.

Five weighted exhaustion signals then score the move:

=====================  ======  ==========================================
Signal                 Weight  Active when
=====================  ======  ==========================================
rsi_extreme            0.25    15m RSI at or beyond oversold / overbought
volume_decline         0.20    5m and 15m volume ratios declining, or 5m
                               fading
macd_convergence       0.20    15m histogram near zero or MACD hugging
                               its signal line
bb_middle              0.15    5m price back inside the middle BB band
price_stabilizing      0.20    enough higher lows (long) / lower highs
                               (short) over the last 5m candles
=====================  ======  ==========================================

``confidence = round(active weight / total weight × 100)``.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from marginpilot.models.strategy_config import ExhaustionThresholds, StrategyConfig
from marginpilot.risk.position import MS_PER_HOUR, PositionState
from marginpilot.strategy.models import Candle, IndicatorSet

logger = logging.getLogger("marginpilot.risk")

# Liquidation closer than this (% of price) is flagged on every DCA signal
LIQUIDATION_WARNING_PERCENT = 5.0


@dataclass(frozen=True)
class ExhaustionSignal:
    name: str
    active: bool
    weight: float
    detail: str


@dataclass(frozen=True)
class DCASignal:
    should_dca: bool
    confidence: int  # 0-100
    dca_level: int  # level the next DCA would be
    exhaustion_type: str  # signal name, "multi_signal" or "none"
    drawdown_percent: float
    signals: tuple[ExhaustionSignal, ...]
    reason: str
    suggested_margin_percent: float
    warnings: tuple[str, ...] = ()


def adverse_move_percent(position: PositionState, current_price: float) -> float:
    """How far price has moved against the average entry, in %. Negative in profit."""
    if position.avg_price <= 0:
        return 0.0
    if position.direction == "long":
        return (position.avg_price - current_price) / position.avg_price * 100
    return (current_price - position.avg_price) / position.avg_price * 100


def _no_dca(level: int, drawdown: float, reason: str, warnings: tuple[str, ...] = ()) -> DCASignal:
    return DCASignal(
        should_dca=False,
        confidence=0,
        dca_level=level,
        exhaustion_type="none",
        drawdown_percent=drawdown,
        signals=(),
        reason=reason,
        suggested_margin_percent=0.0,
        warnings=warnings,
    )


# ── Exhaustion signals ───────────────────────────────────────────────────


def _rsi_signal(direction: str, ind15m: IndicatorSet, t: ExhaustionThresholds) -> ExhaustionSignal:
    if direction == "long":
        active = ind15m.rsi <= t.rsi_oversold
        detail = f"15m RSI {ind15m.rsi:.0f} vs oversold {t.rsi_oversold:.0f}"
    else:
        active = ind15m.rsi >= t.rsi_overbought
        detail = f"15m RSI {ind15m.rsi:.0f} vs overbought {t.rsi_overbought:.0f}"
    return ExhaustionSignal("rsi_extreme", active, 0.25, detail)


def _volume_signal(ind5m: IndicatorSet, ind15m: IndicatorSet, t: ExhaustionThresholds) -> ExhaustionSignal:
    declining = ind5m.volume_ratio < t.volume_decline_5m and ind15m.volume_ratio < t.volume_decline_15m
    fading = ind5m.volume_ratio < t.volume_fading_5m
    detail = f"Vol 5m {ind5m.volume_ratio:.2f}x, 15m {ind15m.volume_ratio:.2f}x"
    if fading:
        detail += " (fading)"
    elif declining:
        detail += " (declining)"
    return ExhaustionSignal("volume_decline", declining or fading, 0.20, detail)


def _macd_signal(ind15m: IndicatorSet, t: ExhaustionThresholds) -> ExhaustionSignal:
    near_zero = abs(ind15m.histogram) < t.macd_near_zero
    hugging = abs(ind15m.macd - ind15m.macd_signal) < t.macd_signal_proximity
    return ExhaustionSignal(
        "macd_convergence",
        near_zero or hugging,
        0.20,
        f"15m hist {ind15m.histogram:+.5f}",
    )


def _bb_signal(ind5m: IndicatorSet, t: ExhaustionThresholds) -> ExhaustionSignal:
    active = t.bb_middle_low <= ind5m.bb_position <= t.bb_middle_high
    return ExhaustionSignal("bb_middle", active, 0.15, f"5m BB position {ind5m.bb_position:.2f}")


def count_stabilizing_candles(direction: str, candles: Sequence[Candle], lookback: int) -> int:
    """Higher lows (long) or lower highs (short) among the last *lookback* candles."""
    recent = list(candles[-(lookback + 1):])
    count = 0
    for prev, cur in zip(recent, recent[1:]):
        if direction == "long" and cur.low > prev.low:
            count += 1
        elif direction == "short" and cur.high < prev.high:
            count += 1
    return count


def _stabilizing_signal(direction: str, candles5m: Sequence[Candle], t: ExhaustionThresholds) -> ExhaustionSignal:
    matches = count_stabilizing_candles(direction, candles5m, t.price_stabilizing_lookback)
    label = "HL" if direction == "long" else "LH"
    return ExhaustionSignal(
        "price_stabilizing",
        matches >= t.price_stabilizing_min_matches,
        0.20,
        f"{matches}/{t.price_stabilizing_lookback} {label}",
    )


# ── Public API ───────────────────────────────────────────────────────────


def analyze_dca_opportunity(
    position: PositionState,
    current_price: float,
    ind5m: Optional[IndicatorSet],
    ind15m: Optional[IndicatorSet],
    candles5m: Sequence[Candle],
    now_ms: int,
    strategy: StrategyConfig,
) -> DCASignal:
    """Decide whether the open *position* should add a DCA entry now.

    Args:
        position: Current position state (refreshed to *now_ms*).
        current_price: Latest price.
        ind5m: 5m indicators, ``None`` when data was insufficient.
        ind15m: 15m indicators, ``None`` when data was insufficient.
        candles5m: Recent 5m candles for the stabilisation check.
        now_ms: Current time in unix ms.
        strategy: The active strategy.

    Returns:
        A ``DCASignal``.  Failing gates produce ``should_dca=False`` with
        the gate named in ``reason``.
    """
    sizing = strategy.position_sizing
    dca = strategy.dca
    level = position.dca_count + 1

    if not position.is_open or position.direction is None:
        return _no_dca(level, 0.0, "No open position")

    warnings: tuple[str, ...] = ()
    if position.liquidation_distance_percent < LIQUIDATION_WARNING_PERCENT:
        warnings = (f"Liquidation only {position.liquidation_distance_percent:.1f}% away",)

    drawdown = adverse_move_percent(position, current_price)

    if position.dca_count >= sizing.max_dca_count:
        return _no_dca(level, drawdown, f"Max {sizing.max_dca_count} DCAs reached", warnings)

    if drawdown < dca.min_drawdown_for_dca:
        return _no_dca(
            level, drawdown,
            f"Drawdown {drawdown:.2f}% below minimum {dca.min_drawdown_for_dca:.2f}%",
            warnings,
        )

    last_fill = position.entries[-1].timestamp if position.entries else position.opened_at
    if last_fill is not None:
        level_hours = dca.exhaustion_thresholds.min_hours_between_by_level.get(level, 0.0)
        min_gap_ms = max(dca.min_time_between_dcas_ms, level_hours * MS_PER_HOUR)
        elapsed = now_ms - last_fill
        if elapsed < min_gap_ms:
            return _no_dca(
                level, drawdown,
                f"Only {elapsed / MS_PER_HOUR:.1f}h since last entry (need {min_gap_ms / MS_PER_HOUR:.1f}h)",
                warnings,
            )

    if not dca.allow_dca_after_midpoint and position.timebox_progress > 0.5:
        return _no_dca(level, drawdown, "Past timebox midpoint", warnings)

    if ind5m is None or ind15m is None:
        logger.debug("DCA check skipped: insufficient 5m/15m data")
        return _no_dca(level, drawdown, "Insufficient data", warnings)

    t = dca.exhaustion_thresholds
    direction = position.direction
    signals = (
        _rsi_signal(direction, ind15m, t),
        _volume_signal(ind5m, ind15m, t),
        _macd_signal(ind15m, t),
        _bb_signal(ind5m, t),
        _stabilizing_signal(direction, candles5m, t),
    )

    total_weight = sum(s.weight for s in signals)
    active = [s for s in signals if s.active]
    confidence = round(sum(s.weight for s in active) / total_weight * 100) if total_weight > 0 else 0

    if len(active) >= 2:
        exhaustion_type = "multi_signal"
    elif active:
        exhaustion_type = active[0].name
    else:
        exhaustion_type = "none"

    should_dca = confidence >= dca.min_exhaustion_confidence
    suggested = sizing.dca_margin_percent * dca.dca_size_scale_factor ** (level - 1) if should_dca else 0.0

    if should_dca:
        reason = f"DCA {level}: exhaustion {confidence}% ({', '.join(s.name for s in active)})"
        logger.info("%s at %.2f%% drawdown", reason, drawdown)
    else:
        reason = f"Exhaustion {confidence}% below {dca.min_exhaustion_confidence:.0f}%"

    return DCASignal(
        should_dca=should_dca,
        confidence=confidence,
        dca_level=level,
        exhaustion_type=exhaustion_type,
        drawdown_percent=drawdown,
        signals=signals,
        reason=reason,
        suggested_margin_percent=suggested,
        warnings=warnings,
    )
