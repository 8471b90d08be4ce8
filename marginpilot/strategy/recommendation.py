"""Multi-timeframe recommendation engine.

Scores LONG and SHORT independently from weighted per-timeframe signals,
then picks LONG, SHORT or WAIT using the strategy's thresholds.  TREND comes
from EMA structure only; RSI and Bollinger feed entry timing.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Mapping, Optional

from marginpilot.models.strategy_config import (
    DirectionWeights,
    GradeThresholds,
    SpikeConfig,
    StrategyConfig,
)
from marginpilot.strategy.chart_context import ChartContext
from marginpilot.strategy.evaluators import (
    ChecklistItem,
    Direction,
    FlowAnalysis,
    KeyLevelEvaluation,
    LiquidationAnalysis,
    RejectionEvaluation,
    aligned_trend,
    analyze_flow,
    analyze_liquidation,
    build_checklist,
    collect_levels,
    count_passed,
    evaluate_derivatives,
    evaluate_key_level_proximity,
    evaluate_rejection,
    opposite_trend,
    spread_guard_penalty,
)
from marginpilot.strategy.knife import KnifeAnalysis, apply_knife_gate, detect_knife
from marginpilot.strategy.market_inputs import LiquidationInput, MicrostructureInput
from marginpilot.strategy.models import Candle, IndicatorSet, TimeframeSnapshot
from marginpilot.strategy.regime import MarketRegimeAnalysis
from marginpilot.strategy.session_filter import get_trading_session, session_confidence_adjustment

logger = logging.getLogger("marginpilot.strategy")

MIN_CONFIDENCE = 5
MAX_CONFIDENCE = 95


@dataclass(frozen=True)
class WeightedSignal:
    name: str
    weight: float
    value: float  # 0..1, how well the condition is met


@dataclass(frozen=True)
class DirectionStrength:
    strength: int
    signals: tuple[WeightedSignal, ...]
    reasons: tuple[str, ...]
    warnings: tuple[str, ...]


@dataclass(frozen=True)
class DirectionRecommendation:
    strength: int
    confidence: int
    grade: str
    checklist: tuple[ChecklistItem, ...]
    signals: tuple[WeightedSignal, ...]
    reasons: tuple[str, ...]
    warnings: tuple[str, ...]
    passed_count: int
    total_count: int


@dataclass(frozen=True)
class MomentumAlert:
    direction: str  # "up" or "down"
    strength: str  # "strong" or "moderate"
    reason: str


@dataclass(frozen=True)
class TradingRecommendation:
    action: str  # "LONG", "SHORT" or "WAIT"
    confidence: int
    base_confidence: int
    reason: str
    long: DirectionRecommendation
    short: DirectionRecommendation
    checklist: tuple[ChecklistItem, ...]  # of the stronger direction
    warnings: tuple[str, ...]
    spike: Optional[str] = None  # "long" or "short" on a 5m spike
    momentum_alert: Optional[MomentumAlert] = None
    flow_status: Optional[FlowAnalysis] = None
    liquidation_status: Optional[LiquidationAnalysis] = None
    regime: Optional[MarketRegimeAnalysis] = None
    knife: Optional[KnifeAnalysis] = None
    size_multiplier: float = 1.0  # knife gate scaling of the entry size


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _clamp_confidence(value: float) -> int:
    return round(_clamp(value, MIN_CONFIDENCE, MAX_CONFIDENCE))


# ── Direction strength ───────────────────────────────────────────────────


def _trend_value(direction: Direction, ind: IndicatorSet, neutral: float, floor: float, span: float) -> float:
    """Map an EMA trend score onto 0..1 for *direction*.

    Aligned trends land in 0.7–1.0 by score; opposing trends land in
    ``floor``–``floor + span`` (a weaker opposing trend scores higher).
    """
    score = ind.trend_score if direction == "long" else -ind.trend_score
    if ind.trend == aligned_trend(direction):
        value = 0.7 + (abs(score) / 100) * 0.3
    elif ind.trend == "neutral":
        value = neutral
    else:
        value = floor + ((100 + score) / 200) * span
    if ind.ema_alignment == aligned_trend(direction):
        value = min(1.0, value + 0.1)
    return value


def _rsi_entry_value(direction: Direction, rsi: float) -> float:
    if direction == "long":
        if 20 <= rsi <= 35:
            return 1.0
        if 35 < rsi <= 45:
            return 0.7
        if 45 < rsi <= 50:
            return 0.4
        if rsi < 20:
            return 0.8
        return 0.2
    if 65 <= rsi <= 80:
        return 1.0
    if 55 <= rsi < 65:
        return 0.7
    if 50 <= rsi < 55:
        return 0.4
    if rsi > 80:
        return 0.8
    return 0.2


def _volume_value(volume_ratio: float) -> float:
    if volume_ratio >= 2.0:
        return 1.0
    if volume_ratio >= 1.5:
        return 0.8
    if volume_ratio >= 1.3:
        return 0.6
    if volume_ratio >= 1.0:
        return 0.4
    return 0.3


def _candlestick_value(direction: Direction, ind15m: IndicatorSet) -> Optional[tuple[float, str]]:
    """Aligned pattern strength minus opposing pattern strength, centred on 0.5."""
    directional = [p for p in ind15m.patterns if p.direction != "neutral"]
    if not directional:
        return None
    aligned = [p for p in directional if p.direction == aligned_trend(direction)]
    opposing = [p for p in directional if p.direction == opposite_trend(direction)]
    best_aligned = max(aligned, key=lambda p: p.strength, default=None)
    best_opposing = max(opposing, key=lambda p: p.strength, default=None)
    s_a = best_aligned.strength if best_aligned else 0.0
    s_o = best_opposing.strength if best_opposing else 0.0
    name = best_aligned.name if best_aligned is not None and s_a >= s_o else best_opposing.name
    return _clamp(0.5 + (s_a - s_o) / 2, 0.0, 1.0), name


def calculate_direction_strength(
    direction: Direction,
    ind4h: IndicatorSet,
    ind1h: IndicatorSet,
    ind15m: IndicatorSet,
    ind1d: Optional[IndicatorSet],
    btc_trend: str,
    weights: DirectionWeights,
    flow: Optional[FlowAnalysis] = None,
    liquidation: Optional[LiquidationAnalysis] = None,
    liquidation_weight: Optional[float] = None,
    key_level: Optional[KeyLevelEvaluation] = None,
    rejection: Optional[RejectionEvaluation] = None,
) -> DirectionStrength:
    """Weighted strength (0–100) of *direction*.

    ``strength = round(Σ weight·value / Σ weight × 100)`` over the signals
    present.  Optional signals (daily trend, flow, liquidation, candlestick,
    key level, rejection) join only when their input exists and their
    weight is positive.
    """
    signals: list[WeightedSignal] = []
    reasons: list[str] = []
    warnings: list[str] = []
    trend_word = aligned_trend(direction)

    def _add(name: str, weight: float, value: float) -> None:
        if weight > 0:
            signals.append(WeightedSignal(name, weight, value))

    # 1. Daily trend
    if ind1d is not None:
        daily = _trend_value(direction, ind1d, neutral=0.5, floor=0.15, span=0.2)
        _add("1D Trend", weights.trend_1d, daily)
        if daily >= 0.75:
            reasons.append(f"Daily {ind1d.trend} ({ind1d.trend_score:+.0f})")
        if daily < 0.35:
            warnings.append(f"COUNTER-TREND: Daily is {ind1d.trend} (score {ind1d.trend_score:.0f})")

    # 2. 4H trend
    htf = _trend_value(direction, ind4h, neutral=0.45, floor=0.1, span=0.25)
    slope = ind4h.ema20_slope if direction == "long" else -ind4h.ema20_slope
    if slope > 0.05:
        htf = min(1.0, htf + 0.05)
    _add("4H Trend", weights.trend_4h, htf)
    if htf >= 0.75:
        mark = " +EMA" if ind4h.ema_alignment == trend_word else ""
        reasons.append(f"4H {ind4h.trend}{mark}")
    if htf < 0.35:
        warnings.append(f"4H opposes: {ind4h.trend} ({ind4h.trend_score:.0f})")

    # 3. 1H setup
    if ind1h.trend == trend_word:
        setup = 0.9
    elif ind1h.trend == "neutral":
        setup = 0.5
    else:
        setup = 0.25
    _add("1H Setup", weights.setup_1h, setup)
    if setup >= 0.8:
        reasons.append(f"1H confirms {ind1h.trend}")

    # 4. 15m RSI entry timing
    rsi_value = _rsi_entry_value(direction, ind15m.rsi)
    _add("15m RSI", weights.entry_15m, rsi_value)
    if rsi_value >= 0.8:
        reasons.append(f"RSI {ind15m.rsi:.0f} {'oversold' if direction == 'long' else 'overbought'}")

    # 5. Volume
    vol_value = _volume_value(ind15m.volume_ratio)
    _add("Volume", weights.volume, vol_value)
    if vol_value >= 0.8:
        reasons.append(f"Volume {ind15m.volume_ratio:.1f}x")

    # 6. BTC
    favoured = "bull" if direction == "long" else "bear"
    btc_value = 1.0 if btc_trend == favoured else 0.6 if btc_trend == "neut" else 0.3
    _add("BTC Align", weights.btc_align, btc_value)
    if btc_value >= 0.8:
        reasons.append(f"BTC {btc_trend}")
    if btc_value < 0.4:
        warnings.append(f"BTC opposing: {btc_trend}")

    # 7. MACD momentum
    hist = ind15m.histogram
    signed = hist if direction == "long" else -hist
    if signed > 0:
        macd_value = min(1.0, 0.6 + abs(hist) * 1000)
    else:
        macd_value = max(0.1, 0.4 - abs(hist) * 500)
    _add("MACD Mom", weights.macd_mom, macd_value)
    if macd_value >= 0.7:
        reasons.append(f"MACD histogram {hist:+.5f}")

    # 8. Order flow
    if flow is not None:
        flow_value = {"aligned": 0.9, "neutral": 0.5}.get(flow.status, 0.2)
        _add("Flow", weights.flow, flow_value)
        if flow_value >= 0.8:
            reasons.append(f"Flow aligned ({flow.cvd_trend} CVD)")
        if flow_value < 0.3:
            warnings.append("Flow opposing")
        if flow.divergence == opposite_trend(direction):
            warnings.append(f"{flow.divergence} divergence detected")

    # 9. Liquidation bias
    if liquidation is not None:
        if liquidation.bias == "neutral":
            liq_value = 0.5
        elif liquidation.aligned:
            liq_value = 0.9 if liquidation.bias_strength > 0.3 else 0.6
        else:
            liq_value = 0.2
        _add("Liquidation", weights.liq if liquidation_weight is None else liquidation_weight, liq_value)
        if liq_value >= 0.8:
            reasons.append(f"Liquidations favour {direction} ({liquidation.bias_strength * 100:.0f}%)")
        if liq_value < 0.35:
            warnings.append(f"Liquidations opposing: {liquidation.bias}")

    # 10. Candlestick patterns
    candle = _candlestick_value(direction, ind15m)
    if candle is not None:
        candle_value, pattern = candle
        _add("Candlestick", weights.candlestick, candle_value)
        if candle_value >= 0.75:
            reasons.append(f"Candle {pattern}")
        if candle_value < 0.35:
            warnings.append(f"Opposing candle {pattern}")

    # 11. Key-level proximity
    if key_level is not None:
        _add("Key Level", weights.key_level_proximity, key_level.value)
        if key_level.value >= 0.8:
            reasons.append(key_level.description)
        if key_level.warning:
            warnings.append(key_level.warning)

    # 12. Rejection at a level
    if rejection is not None:
        _add("Rejection", weights.rejection, 1.0 if rejection.passed else 0.5)
        if rejection.passed:
            reasons.append(f"Rejection: {rejection.description}")

    total_weight = sum(s.weight for s in signals)
    weighted = sum(s.weight * s.value for s in signals)
    strength = round(weighted / total_weight * 100) if total_weight > 0 else 50

    return DirectionStrength(
        strength=strength,
        signals=tuple(signals),
        reasons=tuple(reasons),
        warnings=tuple(warnings),
    )


def grade_from_strength(strength: float, thresholds: GradeThresholds = GradeThresholds()) -> str:
    if strength >= thresholds.a:
        return "A"
    if strength >= thresholds.b:
        return "B"
    if strength >= thresholds.c:
        return "C"
    if strength >= thresholds.d:
        return "D"
    return "F"


# ── Spikes / momentum ────────────────────────────────────────────────────


def detect_spike(ind5m: IndicatorSet, config: SpikeConfig = SpikeConfig()) -> Optional[str]:
    """5m volume spike at an RSI extreme: ``"long"`` (oversold), ``"short"`` or ``None``."""
    if ind5m.volume_ratio <= config.volume_ratio_threshold:
        return None
    if ind5m.rsi < config.oversold_rsi:
        return "long"
    if ind5m.rsi > config.overbought_rsi:
        return "short"
    return None


def detect_momentum(
    ind5m: IndicatorSet,
    ind15m: IndicatorSet,
    ind1h: IndicatorSet,
) -> Optional[MomentumAlert]:
    """Sudden moves: oversold bounce, overbought drop, or an all-timeframe cascade."""
    vol = ind5m.volume_ratio
    strength = "strong" if vol > 2.5 else "moderate"

    if ind5m.rsi < 30 and vol > 1.8 and ind15m.rsi < 40:
        return MomentumAlert("up", strength, f"Oversold bounce: 5m RSI {ind5m.rsi:.0f}, Vol {vol:.1f}x")
    if ind5m.rsi > 70 and vol > 1.8 and ind15m.rsi > 60:
        return MomentumAlert("down", strength, f"Overbought drop: 5m RSI {ind5m.rsi:.0f}, Vol {vol:.1f}x")

    if vol > 2.0:
        if ind5m.rsi < 35 and ind15m.macd < 0 and ind1h.macd < 0:
            return MomentumAlert("down", "strong", f"Cascade selling: all timeframes bearish, Vol {vol:.1f}x")
        if ind5m.rsi > 65 and ind15m.macd > 0 and ind1h.macd > 0:
            return MomentumAlert("up", "strong", f"Cascade buying: all timeframes bullish, Vol {vol:.1f}x")
    return None


# ── Recommendation ───────────────────────────────────────────────────────


def _indicators(snapshots: Mapping[str, TimeframeSnapshot], interval: str) -> Optional[IndicatorSet]:
    snap = snapshots.get(interval)
    return snap.indicators if snap is not None else None


def _candles(snapshots: Mapping[str, TimeframeSnapshot], interval: str) -> tuple[Candle, ...]:
    snap = snapshots.get(interval)
    return snap.candles if snap is not None else ()


def _build_direction(
    direction: Direction,
    strategy: StrategyConfig,
    ind4h: IndicatorSet,
    ind1h: IndicatorSet,
    ind15m: IndicatorSet,
    ind1d: Optional[IndicatorSet],
    btc_trend: str,
    btc_change: float,
    micro: Optional[MicrostructureInput],
    liq: Optional[LiquidationInput],
    price: float,
    chart_context: Optional[ChartContext],
) -> tuple[DirectionRecommendation, FlowAnalysis, LiquidationAnalysis, Optional[RejectionEvaluation]]:
    signals_cfg = strategy.signals
    flow = analyze_flow(direction, micro)
    liquidation = analyze_liquidation(direction, liq, strategy.liquidation, price)

    levels = collect_levels(chart_context)
    key_level = None
    if strategy.key_levels is not None and levels:
        key_level = evaluate_key_level_proximity(direction, price, levels, strategy.key_levels)
    rejection = None
    if strategy.rejection is not None and strategy.rejection.enabled and levels:
        rejection = evaluate_rejection(direction, ind15m, levels, strategy.rejection)

    result = calculate_direction_strength(
        direction,
        ind4h,
        ind1h,
        ind15m,
        ind1d,
        btc_trend,
        signals_cfg.direction_weights,
        flow=flow if micro is not None else None,
        liquidation=liquidation if liq is not None else None,
        liquidation_weight=strategy.liquidation.direction_weight if strategy.liquidation else None,
        key_level=key_level,
        rejection=rejection,
    )

    checklist = build_checklist(
        direction,
        ind4h,
        ind1h,
        ind15m,
        ind1d,
        btc_trend,
        btc_change,
        signals_cfg.macd_dead_zone,
        flow=flow if micro is not None else None,
        liquidation=liquidation if liq is not None else None,
        rejection=rejection,
    )
    passed, total = count_passed(checklist)

    reasons = list(result.reasons)
    warnings = list(result.warnings)
    if liquidation.notes:
        (reasons if liquidation.total_adjustment > 0 else warnings).extend(liquidation.notes)
    if liq is not None:
        squeezed = "long_squeeze" if direction == "long" else "short_squeeze"
        if liq.bias == squeezed and liq.bias_strength > 0.3:
            side = "Long" if direction == "long" else "Short"
            warnings.append(f"{side} squeeze risk ({liq.bias_strength * 100:.0f}%)")
    deriv_reasons, deriv_warnings = evaluate_derivatives(direction, liq, strategy.derivatives, ind4h)
    reasons.extend(deriv_reasons)
    warnings.extend(deriv_warnings)

    bonus = strategy.rejection.reversal_confluence_bonus if rejection is not None and rejection.passed else 0.0
    confidence = _clamp_confidence(
        result.strength + flow.total_adjustment + liquidation.total_adjustment + bonus
    )

    rec = DirectionRecommendation(
        strength=result.strength,
        confidence=confidence,
        grade=grade_from_strength(result.strength, signals_cfg.grade_thresholds),
        checklist=checklist,
        signals=result.signals,
        reasons=tuple(reasons),
        warnings=tuple(warnings),
        passed_count=passed,
        total_count=total,
    )
    return rec, flow, liquidation, rejection


def generate_recommendation(
    snapshots: Mapping[str, TimeframeSnapshot],
    strategy: StrategyConfig,
    btc_trend: str = "neut",
    btc_change: float = 0.0,
    micro: Optional[MicrostructureInput] = None,
    liq: Optional[LiquidationInput] = None,
    current_price: Optional[float] = None,
    regime: Optional[MarketRegimeAnalysis] = None,
    previous_action: Optional[str] = None,
    now: Optional[datetime] = None,
    chart_context: Optional[ChartContext] = None,
    knife_gating: bool = True,
) -> Optional[TradingRecommendation]:
    """Build a trade recommendation from the five timeframe snapshots.

    Args:
        snapshots: ``TimeframeSnapshot`` per interval ("5m" … "1d"); "1d"
            is optional.
        strategy: Validated strategy; supplies every threshold and weight.
        btc_trend: "bull", "bear" or "neut".
        btc_change: BTC % change, for display.
        micro: Order-flow snapshot, when available.
        liq: Liquidation landscape, when available.
        current_price: Last traded price; defaults to the 15m close.  The
            ATR volatility adjustment only applies when it is given.
        regime: When given, its adjusted action threshold replaces the
            strategy's.
        previous_action: The last emitted action; holding it lowers the
            threshold by ``maintainThresholdGap``.
        now: Evaluation time for the session filter.
        chart_context: Enables key-level and rejection signals.
        knife_gating: Detect falling / rising knives on the 15m candles and
            block entries against them.

    Returns:
        ``None`` if any of the 4h/1h/15m/5m snapshots lacks indicators.
    """
    ind4h = _indicators(snapshots, "4h")
    ind1h = _indicators(snapshots, "1h")
    ind15m = _indicators(snapshots, "15m")
    ind5m = _indicators(snapshots, "5m")
    ind1d = _indicators(snapshots, "1d")

    if ind4h is None or ind1h is None or ind15m is None or ind5m is None:
        logger.debug("Recommendation skipped: missing indicator set")
        return None

    price = current_price if current_price and current_price > 0 else ind15m.price
    cfg = strategy.signals

    long_rec, long_flow, long_liq, _ = _build_direction(
        "long", strategy, ind4h, ind1h, ind15m, ind1d, btc_trend, btc_change, micro, liq, price, chart_context,
    )
    short_rec, short_flow, short_liq, _ = _build_direction(
        "short", strategy, ind4h, ind1h, ind15m, ind1d, btc_trend, btc_change, micro, liq, price, chart_context,
    )

    best = "long" if long_rec.strength >= short_rec.strength else "short"
    ls, ss = long_rec.strength, short_rec.strength

    threshold = regime.adjusted_action_threshold if regime is not None else cfg.action_threshold
    long_threshold = threshold - (cfg.maintain_threshold_gap if previous_action == "LONG" else 0)
    short_threshold = threshold - (cfg.maintain_threshold_gap if previous_action == "SHORT" else 0)

    spike: Optional[str] = None
    if ls >= long_threshold and ls > ss + cfg.direction_lead_threshold:
        action = "LONG"
        reason = f"LONG Grade {long_rec.grade} ({ls}%): {', '.join(long_rec.reasons[:3])}."
        base = float(ls)
    elif ss >= short_threshold and ss > ls + cfg.direction_lead_threshold:
        action = "SHORT"
        reason = f"SHORT Grade {short_rec.grade} ({ss}%): {', '.join(short_rec.reasons[:3])}."
        base = float(ss)
    elif max(ls, ss) >= cfg.sit_on_hands_threshold:
        action = "WAIT"
        stronger = "LONG" if ls >= ss else "SHORT"
        reason = (
            f"{stronger} forming ({max(ls, ss)}%). Both: LONG {long_rec.grade} vs "
            f"SHORT {short_rec.grade}. Wait for stronger signal."
        )
        base = max(ls, ss) * 0.7
    else:
        action = "WAIT"
        reason = (
            f"Weak setups. LONG {long_rec.grade} ({ls}%), SHORT {short_rec.grade} ({ss}%). "
            "Wait for better entry."
        )
        base = 20.0

    if action == "WAIT":
        spike = detect_spike(ind5m, strategy.spike)
        if spike is not None:
            against = "bearish" if spike == "long" else "bullish"
            htf_allows = ind4h.bias != against and (ind1d is None or ind1d.bias != against)
            reason = f"SPIKE opportunity: RSI {ind5m.rsi:.0f}, Vol {ind5m.volume_ratio:.1f}x."
            base = 60.0 if htf_allows else 45.0
            if not htf_allows:
                reason += " Counter-trend - tight stops!"
                note = ("Counter-trend spike - use tight stops",)
                if spike == "long":
                    long_rec = replace(long_rec, warnings=long_rec.warnings + note)
                else:
                    short_rec = replace(short_rec, warnings=short_rec.warnings + note)

    knife: Optional[KnifeAnalysis] = None
    size_multiplier = 1.0
    flip = False
    if knife_gating:
        knife = detect_knife(
            _candles(snapshots, "15m"), _candles(snapshots, "5m"), _candles(snapshots, "1h"), _candles(snapshots, "4h"),
        )
    if knife is not None and knife.is_knife:
        trade = action if spike is None else ("LONG" if spike == "long" else "SHORT")
        gate = apply_knife_gate(trade, knife)
        size_multiplier = gate.size_multiplier
        flip = gate.flip_suggestion
        if knife.direction == "falling":
            long_rec = replace(long_rec, warnings=long_rec.warnings + gate.warnings)
        else:
            short_rec = replace(short_rec, warnings=short_rec.warnings + gate.warnings)
        if gate.action == "WAIT" and trade != "WAIT":
            logger.info("Knife gate blocked %s: %s knife in %s", trade, knife.direction, knife.phase)
            reason = f"{knife.direction.capitalize()} knife ({knife.phase}): {'. '.join(knife.reasons)}."
            base = (ls if trade == "LONG" else ss) * 0.7
            action = "WAIT"
            spike = None

    momentum = detect_momentum(ind5m, ind15m, ind1h)

    warnings: list[str] = []
    if knife is not None and knife.is_knife:
        warnings.append(f"{knife.direction.capitalize()} knife: {knife.phase}")
        if knife.wait_for:
            warnings.append(f"Wait for: {', '.join(knife.wait_for)}")
        if flip:
            warnings.append(f"Consider {'SHORT' if knife.direction == 'falling' else 'LONG'} instead (trend-follow)")
    if momentum is not None:
        warnings.append(f"Momentum {momentum.direction}: {momentum.reason}")

    flow = long_flow if best == "long" else short_flow
    liquidation = long_liq if best == "long" else short_liq
    confidence = base + flow.total_adjustment + liquidation.total_adjustment

    if current_price is not None and current_price > 0:
        atr_pct = ind15m.atr / current_price * 100
        if atr_pct > 3:
            warnings.append(f"High volatility (ATR {atr_pct:.1f}%)")
            confidence -= 10
        elif atr_pct < 1.5:
            confidence += 5

    if long_flow.divergence is not None:
        warnings.append(f"Divergence: {long_flow.divergence}")

    if now is not None:
        adjustment, note = session_confidence_adjustment(get_trading_session(now), strategy.session)
        confidence += adjustment
        if note:
            warnings.append(note)

    penalty, note = spread_guard_penalty(micro, strategy.spread_guard)
    confidence -= penalty
    if note:
        warnings.append(note)

    rec = TradingRecommendation(
        action=action,
        confidence=_clamp_confidence(confidence),
        base_confidence=round(base),
        reason=reason,
        long=long_rec,
        short=short_rec,
        checklist=long_rec.checklist if best == "long" else short_rec.checklist,
        warnings=tuple(warnings),
        spike=spike,
        momentum_alert=momentum,
        flow_status=flow if micro is not None else None,
        liquidation_status=liquidation if liq is not None else None,
        regime=regime,
        knife=knife,
        size_multiplier=size_multiplier,
    )
    logger.info(
        "Recommendation %s for %s: confidence %d (long %d, short %d)",
        rec.action, strategy.name, rec.confidence, ls, ss,
    )
    return rec
