"""Checklist evaluators — per-direction condition checks. Pure functions, no I/O.

Each evaluator reads one timeframe (or one optional market input) and
answers whether it supports a LONG or a SHORT.  The recommendation engine
combines them into a checklist and a weighted strength.
"""

from dataclasses import dataclass, field
from typing import Literal, Optional

from marginpilot.models.strategy_config import (
    DerivativesConfig,
    KeyLevelConfig,
    LiquidationConfig,
    RejectionConfig,
    SpreadGuardConfig,
)
from marginpilot.strategy.chart_context import ChartContext
from marginpilot.strategy.market_inputs import (
    FUNDING_CROWDED,
    CvdPoint,
    LiquidationInput,
    LiquidationZone,
    MicrostructureInput,
)
from marginpilot.strategy.models import IndicatorSet, PriceLevel

Direction = Literal["long", "short"]
Quality = Literal["strong", "moderate", "weak"]
EntryContext = Literal["pullback", "breakout", "continuation"]

_STRENGTH_RANK = {"weak": 0, "moderate": 1, "strong": 2}


def aligned_trend(direction: Direction) -> str:
    return "bullish" if direction == "long" else "bearish"


def opposite_trend(direction: Direction) -> str:
    return "bearish" if direction == "long" else "bullish"


# ── Order flow ───────────────────────────────────────────────────────────

# Minimum CVD change between the two halves of the window to call a trend
CVD_TREND_THRESHOLD = 500.0
CVD_DIVERGENCE_THRESHOLD = 1000.0
PRICE_DIVERGENCE_THRESHOLD = 0.005


@dataclass(frozen=True)
class FlowAnalysis:
    status: str  # "aligned", "neutral" or "opposing"
    imbalance: float
    cvd_trend: str  # "rising", "falling" or "neutral"
    divergence: Optional[str]  # "bullish", "bearish" or None
    spread_status: str  # "normal" or "wide"
    whale_activity: str  # "buying", "selling" or "none"
    confirm_pass: bool
    adjustments: dict[str, float] = field(default_factory=dict)

    @property
    def total_adjustment(self) -> float:
        return sum(self.adjustments.values())


def analyze_cvd_trend(history: tuple[CvdPoint, ...]) -> tuple[str, float]:
    """Compare the mean CVD of the first and last ten points of the last 20.

    Returns ``(trend, momentum)``; ``("neutral", 0.0)`` with fewer than 10
    points.
    """
    if len(history) < 10:
        return "neutral", 0.0

    recent = history[-20:]
    first = recent[:10]
    second = recent[-10:]
    first_avg = sum(p.value for p in first) / len(first)
    second_avg = sum(p.value for p in second) / len(second)

    change = second_avg - first_avg
    momentum = abs(change) / (abs(first_avg) or 1)

    if change > CVD_TREND_THRESHOLD:
        return "rising", momentum
    if change < -CVD_TREND_THRESHOLD:
        return "falling", momentum
    return "neutral", momentum


def detect_cvd_divergence(history: tuple[CvdPoint, ...]) -> Optional[str]:
    """Price and CVD moving in opposite directions over the last 20 points.

    ``"bullish"`` is price down with CVD up (accumulation), ``"bearish"``
    the mirror.  Needs at least 20 points.
    """
    if len(history) < 20:
        return None

    recent = history[-20:]
    first, last = recent[0], recent[-1]
    if first.price == 0:
        return None
    price_change = (last.price - first.price) / first.price
    cvd_change = last.value - first.value

    if price_change < -PRICE_DIVERGENCE_THRESHOLD and cvd_change > CVD_DIVERGENCE_THRESHOLD:
        return "bullish"
    if price_change > PRICE_DIVERGENCE_THRESHOLD and cvd_change < -CVD_DIVERGENCE_THRESHOLD:
        return "bearish"
    return None


def analyze_flow(direction: Direction, micro: Optional[MicrostructureInput]) -> FlowAnalysis:
    """Judge whether order flow supports *direction*.

    Without microstructure data the check passes with no adjustment.
    """
    if micro is None:
        return FlowAnalysis(
            status="neutral",
            imbalance=0.0,
            cvd_trend="neutral",
            divergence=None,
            spread_status="normal",
            whale_activity="none",
            confirm_pass=True,
        )

    cvd_trend, _ = analyze_cvd_trend(micro.cvd_history)
    divergence = detect_cvd_divergence(micro.cvd_history)

    wide = micro.avg_spread_percent > 0 and micro.spread_percent > micro.avg_spread_percent * 1.5
    spread_status = "wide" if wide else "normal"

    whale = "none"
    if micro.recent_large_buys > micro.recent_large_sells + 2:
        whale = "buying"
    elif micro.recent_large_sells > micro.recent_large_buys + 2:
        whale = "selling"

    if direction == "long":
        imbalance_supports = micro.imbalance > 0.2
        imbalance_opposes = micro.imbalance < -0.3
        cvd_supports = cvd_trend == "rising"
        cvd_opposes = cvd_trend == "falling"
    else:
        imbalance_supports = micro.imbalance < -0.2
        imbalance_opposes = micro.imbalance > 0.3
        cvd_supports = cvd_trend == "falling"
        cvd_opposes = cvd_trend == "rising"

    status = "neutral"
    if imbalance_supports or cvd_supports:
        status = "aligned"
    if imbalance_opposes and cvd_opposes:
        status = "opposing"

    confirm = imbalance_supports or cvd_supports or (not imbalance_opposes and not cvd_opposes)

    whale_aligned = (direction == "long" and whale == "buying") or (direction == "short" and whale == "selling")
    divergence_opposes = divergence == opposite_trend(direction)
    adjustments = {
        "flow_aligned": 15.0 if status == "aligned" else 0.0,
        "whale_activity": 5.0 if whale_aligned else 0.0,
        "divergence": -20.0 if divergence_opposes else 0.0,
        "spread_wide": -10.0 if wide else 0.0,
        "flow_opposing": -15.0 if status == "opposing" else 0.0,
    }

    return FlowAnalysis(
        status=status,
        imbalance=micro.imbalance,
        cvd_trend=cvd_trend,
        divergence=divergence,
        spread_status=spread_status,
        whale_activity=whale,
        confirm_pass=confirm,
        adjustments=adjustments,
    )


def spread_guard_penalty(
    micro: Optional[MicrostructureInput],
    config: Optional[SpreadGuardConfig],
) -> tuple[float, Optional[str]]:
    """Confidence penalty for a spread wider than its recent average.

    Returns ``(0, None)`` when the guard is disabled or no spread data exists.
    """
    if config is None or not config.enabled or micro is None or micro.avg_spread_percent <= 0:
        return 0.0, None

    ratio = micro.spread_percent / micro.avg_spread_percent
    if ratio >= config.block_multiplier:
        return config.block_penalty, f"Spread {ratio:.1f}x average (-{config.block_penalty:.0f} confidence)"
    if ratio >= config.warn_multiplier:
        return config.warn_penalty, f"Spread {ratio:.1f}x average (-{config.warn_penalty:.0f} confidence)"
    return 0.0, None


# ── Liquidations ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LiquidationAnalysis:
    aligned: bool
    bias: str
    bias_strength: float
    funding_rate: Optional[float]
    nearest_target: Optional[float]
    adjustments: dict[str, float] = field(default_factory=dict)
    notes: tuple[str, ...] = ()

    @property
    def total_adjustment(self) -> float:
        return sum(self.adjustments.values())


def _distance_pct(price: float, current_price: float) -> float:
    return abs(price - current_price) / current_price * 100


def _zone_mid(zone: LiquidationZone) -> float:
    return (zone.price_from + zone.price_to) / 2


def _zone_effects(
    direction: Direction,
    liq: LiquidationInput,
    config: LiquidationConfig,
    current_price: float,
) -> tuple[dict[str, float], list[str]]:
    """Magnet, wall and asymmetry adjustments from zone data."""
    scoring = config.scoring
    adjustments: dict[str, float] = {}
    notes: list[str] = []

    above = [z for z in liq.zones if _zone_mid(z) > current_price]
    below = [z for z in liq.zones if _zone_mid(z) <= current_price]
    ahead, behind = (above, below) if direction == "long" else (below, above)

    def _magnet(zones: list[LiquidationZone]) -> Optional[LiquidationZone]:
        candidates = [
            z for z in zones
            if z.strength >= config.magnet_min_strength
            and _distance_pct(_zone_mid(z), current_price) <= config.magnet_proximity_pct
        ]
        return min(candidates, key=lambda z: _distance_pct(_zone_mid(z), current_price), default=None)

    magnet = _magnet(ahead)
    if magnet is not None:
        dist = _distance_pct(_zone_mid(magnet), current_price)
        adjustments["magnet"] = scoring.magnet_aligned
        notes.append(f"Liquidation magnet {_zone_mid(magnet):.5f} ({dist:.1f}% away)")
        if dist <= config.magnet_proximity_pct / 2:
            adjustments["proximity"] = scoring.proximity_bonus
    else:
        opposing = _magnet(behind)
        if opposing is not None:
            adjustments["magnet"] = scoring.magnet_opposing
            notes.append(f"Opposing liquidation magnet {_zone_mid(opposing):.5f}")

    def _is_wall(zone: LiquidationZone) -> bool:
        density = zone.level_count / config.density_norm_factor
        return (
            density >= config.wall_min_density
            and zone.strength >= config.wall_min_strength
            and _distance_pct(_zone_mid(zone), current_price) <= config.wall_proximity_pct
        )

    if any(_is_wall(z) for z in behind):
        adjustments["wall_support"] = scoring.wall_support
    if any(_is_wall(z) for z in ahead):
        adjustments["wall_block"] = scoring.wall_block
        notes.append("Liquidation wall in trade direction")

    up, down = liq.upside_strength, liq.downside_strength
    if up > 0 or down > 0:
        fuel, against = (up, down) if direction == "long" else (down, up)
        if fuel > 0 and (against == 0 or fuel / against >= config.strong_asymmetry_threshold):
            adjustments["asymmetry"] = scoring.asymmetry_aligned
        elif against > 0 and (fuel == 0 or against / fuel >= config.strong_asymmetry_threshold):
            adjustments["asymmetry"] = scoring.asymmetry_opposing

    return adjustments, notes


def analyze_liquidation(
    direction: Direction,
    liq: Optional[LiquidationInput],
    config: Optional[LiquidationConfig] = None,
    current_price: Optional[float] = None,
) -> LiquidationAnalysis:
    """Judge whether the liquidation landscape supports *direction*.

    A short squeeze (shorts stacked above) favours LONG, a long squeeze
    favours SHORT, and a neutral bias passes both.  Without liquidation data
    the check passes with no adjustment.  Zone effects apply only when a
    ``liquidation`` config section and the current price are supplied.
    """
    if liq is None:
        return LiquidationAnalysis(
            aligned=True,
            bias="neutral",
            bias_strength=0.0,
            funding_rate=None,
            nearest_target=None,
        )

    aligned = (
        (direction == "long" and liq.bias == "short_squeeze")
        or (direction == "short" and liq.bias == "long_squeeze")
        or liq.bias == "neutral"
    )
    nearest = liq.nearest_upside if direction == "long" else liq.nearest_downside

    # Negative funding pays longs (shorts crowded), positive pays shorts
    funding_confirms = liq.funding_rate is not None and (
        (direction == "long" and liq.funding_rate < -FUNDING_CROWDED)
        or (direction == "short" and liq.funding_rate > FUNDING_CROWDED)
    )
    funding_bonus = config.scoring.funding_confirm if config is not None else 5.0

    adjustments = {
        "liq_aligned": 10.0 if aligned and liq.bias_strength > 0.3 else 0.0,
        "funding_confirm": funding_bonus if funding_confirms else 0.0,
    }
    notes: list[str] = []
    if config is not None and current_price and current_price > 0 and liq.zones:
        effects, notes = _zone_effects(direction, liq, config, current_price)
        adjustments.update(effects)

    return LiquidationAnalysis(
        aligned=aligned,
        bias=liq.bias,
        bias_strength=liq.bias_strength,
        funding_rate=liq.funding_rate,
        nearest_target=nearest,
        adjustments=adjustments,
        notes=tuple(notes),
    )


def evaluate_derivatives(
    direction: Direction,
    liq: Optional[LiquidationInput],
    config: Optional[DerivativesConfig],
    ind4h: IndicatorSet,
) -> tuple[list[str], list[str]]:
    """Funding and open-interest reasons/warnings for *direction*."""
    reasons: list[str] = []
    warnings: list[str] = []
    if config is None or liq is None:
        return reasons, warnings

    fr = liq.funding_rate
    if fr is not None and abs(fr) >= config.funding_extreme_threshold:
        crowded = "long" if fr > 0 else "short"
        if crowded == direction:
            warnings.append(f"Extreme funding {fr * 100:.3f}% - {crowded}s crowded")
        else:
            reasons.append(f"Extreme funding {fr * 100:.3f}% against crowded {crowded}s")

    oi = liq.open_interest_change_pct
    if oi is not None:
        if oi >= config.oi_rising_threshold_pct and ind4h.trend == aligned_trend(direction):
            reasons.append(f"Open interest rising {oi:+.1f}% with 4H trend")
        elif oi <= -config.oi_falling_threshold_pct:
            warnings.append(f"Open interest falling {oi:+.1f}%")

    return reasons, warnings


# ── Timeframe evaluators ─────────────────────────────────────────────────


@dataclass(frozen=True)
class SetupEvaluation:
    passed: bool
    score: float
    quality: Quality
    signals: tuple[str, ...]


@dataclass(frozen=True)
class Evaluation:
    passed: bool
    quality: str
    description: str


def evaluate_1h_setup(direction: Direction, ind1h: IndicatorSet) -> SetupEvaluation:
    """Score the 1H setup 0–10: trend, EMA stack, pullback depth, MACD, slope.

    Passes at 4; strong at 8, moderate at 5.
    """
    sign = 1 if direction == "long" else -1
    pve = ind1h.price_vs_ema20 * sign  # positive = right side of EMA20
    score = 0
    signals: list[str] = []

    if ind1h.trend == aligned_trend(direction):
        score += 3
        signals.append(f"1H trend {ind1h.trend}")
    elif ind1h.trend == "neutral":
        score += 1
        signals.append("1H trend neutral")

    if ind1h.ema_alignment == aligned_trend(direction):
        score += 2
        signals.append(f"EMA stack {ind1h.ema_alignment}")
    elif ind1h.ema_alignment == "mixed" and pve > 0:
        score += 1
        signals.append("Price > EMA20" if direction == "long" else "Price < EMA20")

    if 0 <= pve <= 2:
        score += 2
        signals.append(f"Pullback to EMA ({ind1h.price_vs_ema20:.1f}%)")
    elif 2 < pve <= 4:
        score += 1
        signals.append("Slightly extended")
    elif -2 < pve < 0:
        score += 1
        signals.append("Reclaiming EMA" if direction == "long" else "Testing EMA resistance")

    hist = ind1h.histogram * sign
    macd = ind1h.macd * sign
    if hist > 0 and macd > 0:
        score += 2
        signals.append(f"MACD {aligned_trend(direction)}")
    elif hist > 0 or macd > 0:
        score += 1
        signals.append("MACD turning")

    if ind1h.ema20_slope * sign > 0.05:
        score += 1
        signals.append("EMA rising" if direction == "long" else "EMA falling")

    quality: Quality = "strong" if score >= 8 else "moderate" if score >= 5 else "weak"
    return SetupEvaluation(passed=score >= 4, score=score, quality=quality, signals=tuple(signals))


def evaluate_15m_entry(direction: Direction, ind15m: IndicatorSet) -> SetupEvaluation:
    """Score 15m entry timing from RSI zone, BB position, MACD and EMA20.

    Passes at 3 points (roughly two solid confirmations).
    """
    score = 0.0
    signals: list[str] = []
    rsi = ind15m.rsi
    bb = ind15m.bb_position
    hist = ind15m.histogram
    pve = ind15m.price_vs_ema20

    if direction == "long":
        if 20 <= rsi <= 40:
            score += 2
            signals.append(f"RSI {rsi:.0f} oversold")
        elif 40 < rsi <= 50:
            score += 1
            signals.append(f"RSI {rsi:.0f} neutral-low")

        if bb < 0.25:
            score += 2
            signals.append(f"BB {bb * 100:.0f}% (oversold)")
        elif bb < 0.4:
            score += 1
            signals.append(f"BB {bb * 100:.0f}% (lower half)")

        if hist > 0:
            score += 2
            signals.append(f"MACD hist +{hist:.5f}")
        elif hist > -0.0001:
            score += 1
            signals.append("MACD turning")

        if pve > 0:
            score += 1
            signals.append("Above EMA20")
        elif pve > -1:
            score += 0.5
            signals.append("Near EMA20")
    else:
        if 60 <= rsi <= 80:
            score += 2
            signals.append(f"RSI {rsi:.0f} overbought")
        elif 50 <= rsi < 60:
            score += 1
            signals.append(f"RSI {rsi:.0f} neutral-high")

        if bb > 0.75:
            score += 2
            signals.append(f"BB {bb * 100:.0f}% (overbought)")
        elif bb > 0.6:
            score += 1
            signals.append(f"BB {bb * 100:.0f}% (upper half)")

        if hist < 0:
            score += 2
            signals.append(f"MACD hist {hist:.5f}")
        elif hist < 0.0001:
            score += 1
            signals.append("MACD turning")

        if pve < 0:
            score += 1
            signals.append("Below EMA20")
        elif pve < 1:
            score += 0.5
            signals.append("Near EMA20")

    quality: Quality = "strong" if score >= 5 else "moderate" if score >= 3 else "weak"
    return SetupEvaluation(passed=score >= 3, score=score, quality=quality, signals=tuple(signals))


def determine_entry_context(ind15m: IndicatorSet, ind1h: IndicatorSet, direction: Direction) -> EntryContext:
    """Breakout when extended on both 15m and 1H, pullback when near the 15m EMA20."""
    if direction == "long":
        extended = ind15m.price_vs_ema20 > 2 and ind1h.price_vs_ema20 > 3
    else:
        extended = ind15m.price_vs_ema20 < -2 and ind1h.price_vs_ema20 < -3
    if extended:
        return "breakout"
    if abs(ind15m.price_vs_ema20) < 1.5:
        return "pullback"
    return "continuation"


def evaluate_volume(volume_ratio: float, context: EntryContext) -> Evaluation:
    """Volume judged by entry context.

    Quiet volume on a pullback is healthy; breakouts need expansion.
    """
    v = f"{volume_ratio:.2f}x"
    if context == "pullback":
        if 0.5 <= volume_ratio <= 1.3:
            return Evaluation(True, "strong", f"{v} (healthy pullback)")
        if volume_ratio < 0.5:
            return Evaluation(True, "moderate", f"{v} (very quiet)")
        return Evaluation(True, "weak", f"{v} (high vol pullback)")

    if context == "breakout":
        if volume_ratio >= 1.8:
            return Evaluation(True, "strong", f"{v} (strong breakout)")
        if volume_ratio >= 1.3:
            return Evaluation(True, "moderate", f"{v} (confirmed)")
        return Evaluation(False, "weak", f"{v} (weak breakout)")

    if volume_ratio >= 1.3:
        return Evaluation(True, "strong", v)
    if volume_ratio >= 0.8:
        return Evaluation(True, "moderate", f"{v} (normal)")
    return Evaluation(False, "weak", f"{v} (low)")


def evaluate_macd_momentum(
    direction: Direction,
    histogram: float,
    macd: float,
    dead_zone: float = 0.00005,
) -> Evaluation:
    """MACD histogram momentum; within ``±dead_zone`` (edges included) it fails both directions."""
    if abs(histogram) <= dead_zone:
        return Evaluation(False, "neutral", f"Hist {histogram:+.5f} (neutral)")

    if direction == "long":
        if histogram > dead_zone:
            strength = "strong" if histogram > 0.0005 else "moderate" if histogram > 0.0001 else "weak"
            suffix = " (MACD+)" if macd > 0 else ""
            return Evaluation(True, strength, f"Hist {histogram:+.5f}{suffix}")
        return Evaluation(False, "weak", f"Hist {histogram:+.5f} (bearish)")

    if histogram < -dead_zone:
        strength = "strong" if histogram < -0.0005 else "moderate" if histogram < -0.0001 else "weak"
        suffix = " (MACD-)" if macd < 0 else ""
        return Evaluation(True, strength, f"Hist {histogram:+.5f}{suffix}")
    return Evaluation(False, "weak", f"Hist {histogram:+.5f} (bullish)")


def evaluate_btc_alignment(
    direction: Direction,
    btc_trend: str,
    btc_change: float,
    setup_quality: Quality,
) -> Evaluation:
    """BTC aligned passes; neutral passes unless the 1H setup is weak."""
    favoured = "bull" if direction == "long" else "bear"
    if btc_trend == favoured:
        return Evaluation(True, "aligned", f"BTC {btc_trend} {btc_change:.1f}%")
    if btc_trend == "neut":
        return Evaluation(setup_quality != "weak", "neutral", f"BTC neut {btc_change:.1f}%")
    return Evaluation(False, "opposing", f"BTC {btc_trend} {btc_change:.1f}% (opposing)")


# ── Key levels / rejection ───────────────────────────────────────────────


def collect_levels(context: Optional[ChartContext]) -> list[PriceLevel]:
    """Confluent levels first, then the 15m and 1h key levels."""
    if context is None:
        return []
    levels = list(context.confluent_levels)
    for interval in ("15m", "1h"):
        tf = context.timeframes.get(interval)
        if tf is not None:
            levels.extend(tf.key_levels)
    return levels


def _qualifies(level: PriceLevel, min_strength: str, min_touches: int) -> bool:
    return (
        _STRENGTH_RANK.get(level.strength, 0) >= _STRENGTH_RANK.get(min_strength, 0)
        and level.touches >= min_touches
    )


def _nearest(levels: list[PriceLevel], price: float) -> Optional[PriceLevel]:
    return min(levels, key=lambda lv: abs(lv.price - price), default=None)


@dataclass(frozen=True)
class KeyLevelEvaluation:
    value: float  # 0..1 signal value
    description: str
    warning: Optional[str] = None
    reward_risk: Optional[float] = None


def evaluate_key_level_proximity(
    direction: Direction,
    price: float,
    levels: list[PriceLevel],
    config: KeyLevelConfig,
) -> KeyLevelEvaluation:
    """Score how well *price* sits against qualifying support/resistance.

    An aligned level (support for LONG, resistance for SHORT) within
    ``strongProximityPct`` scores 1.0, within ``nearProximityPct`` 0.8.
    Without one, an opposing level within ``nearProximityPct`` scores 0.2
    with a warning.  Reward/risk to the nearest levels on either side caps
    the score at 0.6 below ``rrMinRatio`` and 0.3 below ``rrWarningRatio``.
    """
    if price <= 0:
        return KeyLevelEvaluation(0.5, "No price")

    usable = [lv for lv in levels if _qualifies(lv, config.min_strength, config.min_touches)]
    supports = [lv for lv in usable if lv.price < price]
    resistances = [lv for lv in usable if lv.price > price]
    backing, blocking = (supports, resistances) if direction == "long" else (resistances, supports)

    value = 0.5
    description = "No key level nearby"
    warning: Optional[str] = None

    back = _nearest(backing, price)
    block = _nearest(blocking, price)
    if back is not None and _distance_pct(back.price, price) <= config.near_proximity_pct:
        dist = _distance_pct(back.price, price)
        value = 1.0 if dist <= config.strong_proximity_pct else 0.8
        description = f"{back.type.capitalize()} {back.price:.5f} ({dist:.2f}% away, {back.strength})"
    elif block is not None and _distance_pct(block.price, price) <= config.near_proximity_pct:
        dist = _distance_pct(block.price, price)
        value = 0.2
        description = f"{block.type.capitalize()} {block.price:.5f} ({dist:.2f}% ahead)"
        warning = f"Entering into {block.type} {block.price:.5f}"

    rr: Optional[float] = None
    if back is not None and block is not None:
        risk = abs(price - back.price)
        reward = abs(block.price - price)
        if risk > 0:
            rr = reward / risk
            if rr < config.rr_warning_ratio:
                value = min(value, 0.3)
                warning = warning or f"Poor reward/risk {rr:.2f}"
            elif rr < config.rr_min_ratio:
                value = min(value, 0.6)

    return KeyLevelEvaluation(value, description, warning, rr)


@dataclass(frozen=True)
class RejectionEvaluation:
    passed: bool
    description: str
    level: Optional[PriceLevel] = None
    pattern: Optional[str] = None


def evaluate_rejection(
    direction: Direction,
    ind15m: IndicatorSet,
    levels: list[PriceLevel],
    config: RejectionConfig,
) -> RejectionEvaluation:
    """Rejection at a key level: aligned level close by, plus a confirming candle.

    Requires a qualifying support (LONG) or resistance (SHORT) within
    ``proximityPct``, the latest 15m directional pattern agreeing with
    *direction* at ``minCandleStrength`` or better, and volume at
    ``minVolumeRatio``.  MACD alignment is required only when configured.
    """
    price = ind15m.price
    wanted = "support" if direction == "long" else "resistance"
    near = [
        lv for lv in levels
        if lv.type == wanted
        and _qualifies(lv, config.min_level_strength, config.min_level_touches)
        and _distance_pct(lv.price, price) <= config.proximity_pct
    ]
    level = _nearest(near, price)
    if level is None:
        return RejectionEvaluation(False, f"No {wanted} within {config.proximity_pct}%")

    directional = [p for p in ind15m.patterns if p.direction != "neutral"]
    latest = max(directional, key=lambda p: p.index, default=None)
    if latest is None or latest.direction != aligned_trend(direction) or latest.strength < config.min_candle_strength:
        return RejectionEvaluation(False, f"At {wanted} {level.price:.5f}, no rejection candle", level)

    if ind15m.volume_ratio < config.min_volume_ratio:
        return RejectionEvaluation(
            False, f"{latest.name} at {level.price:.5f}, volume {ind15m.volume_ratio:.2f}x", level, latest.name,
        )

    if config.require_macd_alignment:
        hist = ind15m.histogram if direction == "long" else -ind15m.histogram
        if hist < config.min_macd_hist_magnitude:
            return RejectionEvaluation(False, f"{latest.name} at {level.price:.5f}, MACD not aligned", level, latest.name)

    return RejectionEvaluation(
        True, f"{latest.name} at {wanted} {level.price:.5f}, vol {ind15m.volume_ratio:.1f}x", level, latest.name,
    )


# ── Checklist ────────────────────────────────────────────────────────────

CHECKLIST_KEYS: tuple[str, ...] = (
    "trend_1d",
    "trend_4h",
    "setup_1h",
    "entry_15m",
    "volume",
    "btc_align",
    "macd_momentum",
    "flow_confirm",
    "liq_bias",
    "rejection",
)


@dataclass(frozen=True)
class ChecklistItem:
    key: str
    passed: bool
    value: str
    available: bool = True


def format_ema_info(ind: IndicatorSet) -> str:
    slope = "rising" if ind.ema20_slope > 0.1 else "falling" if ind.ema20_slope < -0.1 else "flat"
    text = f"{ind.trend} ({ind.ema_alignment} stack) EMA20 {ind.price_vs_ema20:+.1f}% {slope}"
    if ind.trend_strength == "strong":
        text += " [strong]"
    return text


def build_checklist(
    direction: Direction,
    ind4h: IndicatorSet,
    ind1h: IndicatorSet,
    ind15m: IndicatorSet,
    ind1d: Optional[IndicatorSet],
    btc_trend: str,
    btc_change: float,
    macd_dead_zone: float,
    flow: Optional[FlowAnalysis] = None,
    liquidation: Optional[LiquidationAnalysis] = None,
    rejection: Optional[RejectionEvaluation] = None,
) -> tuple[ChecklistItem, ...]:
    """Evaluate every checklist condition for *direction*, in fixed key order.

    Optional items (daily trend, flow, liquidation, rejection) are present
    with ``available=False`` when their input was not supplied.
    """
    setup = evaluate_1h_setup(direction, ind1h)
    entry = evaluate_15m_entry(direction, ind15m)
    volume = evaluate_volume(ind15m.volume_ratio, determine_entry_context(ind15m, ind1h, direction))
    macd = evaluate_macd_momentum(direction, ind15m.histogram, ind15m.macd, macd_dead_zone)
    btc = evaluate_btc_alignment(direction, btc_trend, btc_change, setup.quality)

    items: dict[str, ChecklistItem] = {}

    if ind1d is not None:
        items["trend_1d"] = ChecklistItem("trend_1d", ind1d.trend != opposite_trend(direction), format_ema_info(ind1d))
    else:
        items["trend_1d"] = ChecklistItem("trend_1d", False, "No daily data", available=False)

    items["trend_4h"] = ChecklistItem("trend_4h", ind4h.trend == aligned_trend(direction), format_ema_info(ind4h))

    top = setup.signals[0] if setup.signals else ""
    items["setup_1h"] = ChecklistItem("setup_1h", setup.passed, f"{setup.score}/10 {setup.quality} {top}".rstrip())

    top_entry = ", ".join(entry.signals[:2])
    if entry.passed:
        entry_value = f"{entry.score:.1f}/3 ({top_entry})"
    else:
        entry_value = f"{entry.score:.1f}/3 - {top_entry or 'weak signals'}"
    items["entry_15m"] = ChecklistItem("entry_15m", entry.passed, entry_value)

    items["volume"] = ChecklistItem("volume", volume.passed, volume.description)
    items["btc_align"] = ChecklistItem("btc_align", btc.passed, btc.description)
    items["macd_momentum"] = ChecklistItem("macd_momentum", macd.passed, macd.description)

    if flow is not None:
        items["flow_confirm"] = ChecklistItem(
            "flow_confirm", flow.confirm_pass, f"Imb {flow.imbalance * 100:.0f}%, CVD {flow.cvd_trend}",
        )
    else:
        items["flow_confirm"] = ChecklistItem("flow_confirm", True, "No flow data", available=False)

    if liquidation is not None:
        label = {"short_squeeze": "Short squeeze (up)", "long_squeeze": "Long squeeze (down)"}.get(
            liquidation.bias, "Neutral"
        )
        if liquidation.funding_rate is not None:
            label += f" FR: {liquidation.funding_rate * 100:.3f}%"
        items["liq_bias"] = ChecklistItem("liq_bias", liquidation.aligned, label)
    else:
        items["liq_bias"] = ChecklistItem("liq_bias", True, "No liquidation data", available=False)

    if rejection is not None:
        items["rejection"] = ChecklistItem("rejection", rejection.passed, rejection.description)
    else:
        items["rejection"] = ChecklistItem("rejection", False, "Not evaluated", available=False)

    return tuple(items[k] for k in CHECKLIST_KEYS)


def count_passed(checklist: tuple[ChecklistItem, ...]) -> tuple[int, int]:
    """``(passed, total)`` over the available checklist items."""
    available = [item for item in checklist if item.available]
    return sum(1 for item in available if item.passed), len(available)
