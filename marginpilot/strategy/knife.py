"""Falling / rising knife detection and the counter-trend entry gate.

A knife is an impulsive break of a key level.  Its life runs through
impulse → capitulation → stabilizing → confirming → safe, and entries
against it are blocked until it has stabilized and been confirmed.

The module keeps no state between calls: the phase is rebuilt every time by
replaying the phase machine over the 15m candles since the break, one
candle per step.
"""

import bisect
import logging
import math
from dataclasses import dataclass, replace
from typing import Literal, Optional, Sequence

import numpy as np

from marginpilot.strategy.chart_context import find_swing_points
from marginpilot.strategy.indicators import calculate_atr
from marginpilot.strategy.models import INTERVAL_MINUTES, Candle

logger = logging.getLogger("marginpilot.strategy")

KnifeDirection = Literal["falling", "rising"]
KnifePhase = Literal["none", "impulse", "capitulation", "stabilizing", "confirming", "safe"]
RetestQuality = Literal["good", "poor", "none"]

MIN_CANDLES_15M = 50
MIN_CANDLES_5M = 30

_BAR_SECONDS = INTERVAL_MINUTES["15m"] * 60

# Recency decay of a level's last touch, per source timeframe
_TAU_SECONDS = {"15m": 18 * 3600, "1h": 3 * 24 * 3600, "4h": 10 * 24 * 3600}


@dataclass(frozen=True)
class KnifeConfig:
    close_break_atr: float = 0.35
    wick_break_atr: float = 0.6
    wick_accept_atr: float = 0.2
    fast_velocity_atr: float = 2.0
    fast_body_atr: float = 1.2
    decisive_range_atr: float = 1.2
    volume_expansion: float = 1.5
    cap_range_atr: float = 2.0
    cap_vol_multiple: float = 1.5
    retest_touch_atr: float = 0.3
    retest_hold_atr: float = 0.3
    retest_window: int = 8
    break_lookback: int = 50
    max_age_candles: int = 48


@dataclass(frozen=True)
class KnifeLevel:
    price: float
    type: str  # "support" or "resistance"
    touches: int
    score: float
    last_touch_time: int
    source: str  # contributing timeframes, e.g. "15m+1h"


@dataclass(frozen=True)
class BrokenLevel:
    level: KnifeLevel
    break_index: int
    break_time: int
    break_distance_atr: float
    break_type: str  # "close" or "wick_accept"


@dataclass(frozen=True)
class KnifeSignals:
    decisive_break: bool = False
    fast_velocity: bool = False
    volume_expansion: bool = False
    capitulation_candle: bool = False
    no_new_extreme: bool = False
    atr_contraction: bool = False
    volume_fading: bool = False
    hl_sequence: bool = False  # higher lows when falling, lower highs when rising
    clv_drift: bool = False
    reclaimed: bool = False
    micro_structure_shift: bool = False
    retest_quality: RetestQuality = "none"
    bounce_sold: bool = False

    @property
    def stabilization_count(self) -> int:
        return sum((
            self.no_new_extreme, self.atr_contraction, self.volume_fading, self.hl_sequence, self.clv_drift,
        ))


@dataclass(frozen=True)
class KnifeMetrics:
    velocity_atr: float = 0.0
    break_distance_atr: float = 0.0
    rel_volume: float = 0.0
    range_atr: float = 0.0
    body_atr: float = 0.0
    clv: float = 0.0


@dataclass(frozen=True)
class KnifeAnalysis:
    is_knife: bool
    direction: Optional[KnifeDirection]
    phase: KnifePhase
    broken_level: Optional[float]
    knife_score: int  # 0-100, impulse / capitulation strength
    reversal_readiness: int  # 0-100, stabilization + confirmation progress
    gate_action: str  # "block", "warn" or "allow"
    size_multiplier: float
    flip_suggestion: bool
    signals: KnifeSignals
    metrics: KnifeMetrics
    wait_for: tuple[str, ...] = ()
    reasons: tuple[str, ...] = ()


NO_KNIFE = KnifeAnalysis(
    is_knife=False,
    direction=None,
    phase="none",
    broken_level=None,
    knife_score=0,
    reversal_readiness=0,
    gate_action="allow",
    size_multiplier=1.0,
    flip_suggestion=False,
    signals=KnifeSignals(),
    metrics=KnifeMetrics(),
)


@dataclass(frozen=True)
class KnifeGate:
    action: str
    warnings: tuple[str, ...]
    size_multiplier: float
    flip_suggestion: bool


@dataclass(frozen=True)
class _KnifeState:
    direction: KnifeDirection
    phase: KnifePhase
    broken_level: float
    break_index: int
    break_time: int
    impulse_vol_baseline: float  # median volume of the break and the 3 candles before it


# ── Candle metrics ───────────────────────────────────────────────────────


def _rel_volume(candles: Sequence[Candle], index: int) -> Optional[float]:
    """Volume over its 20-candle SMA (the candle itself included)."""
    if index < 20:
        return None
    sma = float(np.mean([c.volume for c in candles[index - 19:index + 1]]))
    if sma == 0:
        return None
    return candles[index].volume / sma


def _range_atr(candle: Candle, atr: float) -> float:
    return (candle.high - candle.low) / atr


def _body_atr(candle: Candle, atr: float) -> float:
    return abs(candle.close - candle.open) / atr


def _velocity_atr(candles: Sequence[Candle], n: int, atr: float) -> Optional[float]:
    if len(candles) <= n:
        return None
    return abs(candles[-1].close - candles[-1 - n].close) / atr


def _clv(candle: Candle) -> Optional[float]:
    """Close location value: -1 at the low, +1 at the high."""
    span = candle.high - candle.low
    if span == 0:
        return None
    return (candle.close - candle.low) / span * 2 - 1


# ── Levels ───────────────────────────────────────────────────────────────


def _level_score(touches: int, last_touch: int, level: float, price: float, now: int, tau: float) -> float:
    touches_score = min(touches, 6)
    recency = math.exp(-(now - last_touch) / tau)
    proximity = 1 / (1 + abs(level - price) / price * 50)
    return touches_score * 1.2 + recency * 2.0 + proximity * 0.8


def find_knife_levels(candles: Sequence[Candle], interval: str, lookback: int = 3) -> list[KnifeLevel]:
    """Swing highs / lows of one timeframe as scored levels, best 30 first."""
    if len(candles) < 20:
        return []
    price = candles[-1].close
    now = candles[-1].time
    tau = _TAU_SECONDS.get(interval, _TAU_SECONDS["15m"])

    levels = [
        KnifeLevel(
            price=swing.price,
            type="support" if swing.type == "low" else "resistance",
            touches=1,
            score=_level_score(1, swing.time, swing.price, price, now, tau),
            last_touch_time=swing.time,
            source=interval,
        )
        for swing in find_swing_points(list(candles), lookback)
    ]
    levels.sort(key=lambda lvl: lvl.score, reverse=True)
    return levels[:30]


def merge_knife_levels(
    levels_by_interval: Sequence[tuple[str, Sequence[KnifeLevel]]],
    atr15m: float,
    price: float,
    now: int,
) -> list[KnifeLevel]:
    """Cluster same-type levels within an ATR-based tolerance and rescore them.

    The tolerance is ``0.15 × ATR / price`` clamped to 0.15 %–0.6 %.  Each
    extra contributing timeframe adds 1.5 to the score.
    """
    if price <= 0:
        return []
    tolerance = max(0.0015, min(0.006, 0.15 * atr15m / price))

    clusters: list[dict] = []
    for interval, levels in levels_by_interval:
        for lvl in levels:
            hit = next(
                (
                    c for c in clusters
                    if c["type"] == lvl.type and abs(c["sum"] / c["count"] - lvl.price) / lvl.price < tolerance
                ),
                None,
            )
            if hit is None:
                clusters.append({
                    "sum": lvl.price, "count": 1, "touches": lvl.touches,
                    "last": lvl.last_touch_time, "intervals": [interval], "type": lvl.type,
                })
                continue
            hit["sum"] += lvl.price
            hit["count"] += 1
            hit["touches"] += lvl.touches
            hit["last"] = max(hit["last"], lvl.last_touch_time)
            if interval not in hit["intervals"]:
                hit["intervals"].append(interval)

    merged = []
    for c in clusters:
        avg = c["sum"] / c["count"]
        intervals = c["intervals"]
        tau = _TAU_SECONDS["4h" if "4h" in intervals else "1h" if "1h" in intervals else "15m"]
        score = _level_score(c["touches"], c["last"], avg, price, now, tau) + (len(intervals) - 1) * 1.5
        merged.append(KnifeLevel(avg, c["type"], c["touches"], score, c["last"], "+".join(intervals)))
    merged.sort(key=lambda lvl: lvl.score, reverse=True)
    return merged


def select_broken_level(
    levels: Sequence[KnifeLevel],
    candles15m: Sequence[Candle],
    atr15m: float,
    direction: str,
    config: Optional[KnifeConfig] = None,
) -> Optional[BrokenLevel]:
    """The most recently broken support (``"down"``) or resistance (``"up"``).

    A break is a close beyond the level by ``closeBreakATR``, or a wick
    beyond it by ``wickBreakATR`` accepted by the next close beyond it by
    ``wickAcceptATR``.  Ties on recency go to the higher-scored level.
    """
    config = config or KnifeConfig()
    lookback = config.break_lookback
    if not levels or len(candles15m) < lookback or atr15m <= 0:
        return None

    wanted = "support" if direction == "down" else "resistance"
    sign = 1 if direction == "down" else -1
    last = len(candles15m) - 1
    start = max(0, last - lookback)

    matches: list[tuple[int, float, BrokenLevel]] = []
    for level in [lvl for lvl in levels[:20] if lvl.type == wanted]:
        for i in range(last, start - 1, -1):
            candle = candles15m[i]
            close_distance = (level.price - candle.close) * sign / atr15m
            if close_distance >= config.close_break_atr:
                matches.append((last - i, -level.score, BrokenLevel(level, i, candle.time, close_distance, "close")))
                break
            extreme = candle.low if direction == "down" else candle.high
            if (level.price - extreme) * sign / atr15m >= config.wick_break_atr and i < last:
                accept = candles15m[i + 1]
                accept_distance = (level.price - accept.close) * sign / atr15m
                if accept_distance >= config.wick_accept_atr:
                    broken = BrokenLevel(level, i + 1, accept.time, accept_distance, "wick_accept")
                    matches.append((last - i - 1, -level.score, broken))
                    break

    if not matches:
        return None
    matches.sort(key=lambda m: (m[0], m[1]))
    return matches[0][2]


# ── Signals ──────────────────────────────────────────────────────────────


def _is_impulse(candles: Sequence[Candle], atr: float, config: KnifeConfig) -> bool:
    last = candles[-1]
    rel_volume = _rel_volume(candles, len(candles) - 1)
    velocity = _velocity_atr(candles, 5, atr) or 0.0
    fast = velocity >= config.fast_velocity_atr or _body_atr(last, atr) >= config.fast_body_atr
    decisive = _range_atr(last, atr) >= config.decisive_range_atr
    return rel_volume is not None and rel_volume >= config.volume_expansion and (fast or decisive)


def _has_follow_through(candles: Sequence[Candle], index: int, direction: KnifeDirection, atr: float) -> bool:
    cap = candles[index]
    step = 0.2 * atr
    for c in candles[index + 1:min(index + 3, len(candles) - 1) + 1]:
        if direction == "falling" and c.low <= cap.low - step:
            return True
        if direction == "rising" and c.high >= cap.high + step:
            return True
    return False


def _capitulation(candles: Sequence[Candle], atr: float, direction: KnifeDirection, config: KnifeConfig) -> bool:
    """A wide, heavy candle in the last 10 that the next 3 failed to extend."""
    last = len(candles) - 1
    for i in range(last, max(0, last - 10) - 1, -1):
        rel_volume = _rel_volume(candles, i)
        if _range_atr(candles[i], atr) < config.cap_range_atr or rel_volume is None:
            continue
        if rel_volume < config.cap_vol_multiple:
            continue
        if i == last:
            return False  # follow-through cannot be judged yet
        if not _has_follow_through(candles, i, direction, atr):
            return True
    return False


def _stabilization(candles: Sequence[Candle], direction: KnifeDirection, state: _KnifeState) -> dict[str, bool]:
    last = len(candles) - 1
    falling = direction == "falling"

    no_new_extreme = False
    if last - state.break_index >= 4:
        anchor = candles[state.break_index]
        after = candles[state.break_index + 1:]
        if falling:
            no_new_extreme = all(c.low >= anchor.low for c in after)
        else:
            no_new_extreme = all(c.high <= anchor.high for c in after)

    atr_contraction = False
    if len(candles) >= 22:
        atr7 = calculate_atr(list(candles[-8:]), 7)
        atr21 = calculate_atr(list(candles[-22:]), 21)
        if atr7 is not None and atr21:
            atr_contraction = atr7 / atr21 <= 0.85

    volume_fading = False
    if len(candles) >= 30:
        rel = [_rel_volume(candles, i) for i in range(last - 9, last + 1)]
        if all(r is not None for r in rel):
            volume_fading = float(np.mean(rel[-3:])) < float(np.mean(rel))

    recent = candles[-4:]
    if falling:
        hl_sequence = all(b.low >= a.low for a, b in zip(recent, recent[1:]))
    else:
        hl_sequence = all(b.high <= a.high for a, b in zip(recent, recent[1:]))

    clv_drift = False
    clvs = [_clv(c) for c in recent]
    if len(clvs) == 4 and all(v is not None for v in clvs):
        clv_drift = clvs[3] > clvs[0] + 0.2 if falling else clvs[3] < clvs[0] - 0.2

    return {
        "no_new_extreme": no_new_extreme,
        "atr_contraction": atr_contraction,
        "volume_fading": volume_fading,
        "hl_sequence": len(recent) == 4 and hl_sequence,
        "clv_drift": clv_drift,
    }


def _reclaimed(candles: Sequence[Candle], level: float, atr: float, direction: KnifeDirection, config: KnifeConfig) -> bool:
    close = candles[-1].close
    margin = config.retest_touch_atr * atr
    return close >= level + margin if direction == "falling" else close <= level - margin


def _micro_structure_shift(candles5m: Sequence[Candle], direction: KnifeDirection) -> bool:
    """5m higher low (lower high) followed by a break of the swing between."""
    if len(candles5m) < 15:
        return False
    swings = find_swing_points(list(candles5m), 2)
    pivot_type, counter_type = ("low", "high") if direction == "falling" else ("high", "low")
    pivots = [s for s in swings if s.type == pivot_type]
    counters = [s for s in swings if s.type == counter_type]
    if len(pivots) < 2:
        return False
    first, second = pivots[-2], pivots[-1]
    if direction == "falling" and second.price <= first.price:
        return False
    if direction == "rising" and second.price >= first.price:
        return False

    between = [s for s in counters if first.index < s.index < second.index]
    after = [s for s in counters if s.index > second.index]
    target = between[-1] if between else after[0] if after else None
    if target is None:
        return False
    close = candles5m[-1].close
    return close > target.price if direction == "falling" else close < target.price


def _retest_quality(
    candles: Sequence[Candle],
    level: float,
    atr: float,
    baseline: float,
    direction: KnifeDirection,
    config: KnifeConfig,
) -> RetestQuality:
    """Touch of the broken level that holds on falling volume is a good retest."""
    last = len(candles) - 1
    touch = config.retest_touch_atr * atr
    hold = config.retest_hold_atr * atr

    touched = next(
        (
            i for i in range(max(0, last - config.retest_window), last + 1)
            if abs((candles[i].high if direction == "falling" else candles[i].low) - level) <= touch
        ),
        None,
    )
    if touched is None:
        return "none"

    for c in candles[touched:]:
        if direction == "falling" and c.close > level + hold:
            return "poor"
        if direction == "rising" and c.close < level - hold:
            return "poor"

    avg_volume = sum(c.volume for c in candles[-20:]) / 20
    retest_volume = float(np.mean([c.volume for c in candles[touched:]]))
    if retest_volume >= min(0.7 * baseline, 0.9 * avg_volume):
        return "poor"
    return "good"


def _bounce_sold(candles: Sequence[Candle], level: float, atr: float, direction: KnifeDirection) -> bool:
    """After a reclaim, price fell back through the level (rose, for a rising knife)."""
    if len(candles) < 4:
        return False
    candle, prev = candles[-1], candles[-2]
    sign = 1 if direction == "falling" else -1
    if (level - candle.close) * sign >= 0.3 * atr:
        return True
    if (level - candle.close) * sign > 0 and (level - prev.close) * sign > 0:
        return True
    velocity = _velocity_atr(candles, 3, atr)
    return velocity is not None and velocity >= 1.5 and (candles[-4].close - candle.close) * sign > 0


def _signals(
    candles: Sequence[Candle],
    candles5m: Sequence[Candle],
    atr: float,
    state: _KnifeState,
    config: KnifeConfig,
) -> tuple[KnifeSignals, KnifeMetrics]:
    last = candles[-1]
    metrics = KnifeMetrics(
        velocity_atr=_velocity_atr(candles, 5, atr) or 0.0,
        break_distance_atr=abs(last.close - state.broken_level) / atr,
        rel_volume=_rel_volume(candles, len(candles) - 1) or 1.0,
        range_atr=_range_atr(last, atr),
        body_atr=_body_atr(last, atr),
        clv=_clv(last) or 0.0,
    )
    direction = state.direction
    reclaimed = _reclaimed(candles, state.broken_level, atr, direction, config)
    signals = KnifeSignals(
        decisive_break=True,
        fast_velocity=metrics.velocity_atr >= config.fast_velocity_atr,
        volume_expansion=metrics.rel_volume >= config.volume_expansion,
        capitulation_candle=_capitulation(candles, atr, direction, config),
        reclaimed=reclaimed,
        micro_structure_shift=_micro_structure_shift(candles5m, direction),
        retest_quality=(
            _retest_quality(candles, state.broken_level, atr, state.impulse_vol_baseline, direction, config)
            if reclaimed else "none"
        ),
        bounce_sold=reclaimed and _bounce_sold(candles, state.broken_level, atr, direction),
        **_stabilization(candles, direction, state),
    )
    return signals, metrics


# ── Phase machine ────────────────────────────────────────────────────────


def _next_phase(state: _KnifeState, signals: KnifeSignals, metrics: KnifeMetrics, length: int) -> KnifePhase:
    phase = state.phase
    if signals.volume_expansion and metrics.rel_volume >= 1.2:
        phase = "impulse"
    if signals.bounce_sold and phase in ("confirming", "safe"):
        phase = "impulse"

    if state.phase == "impulse":
        if signals.capitulation_candle or length - state.break_index >= 3:
            phase = "capitulation"
    elif state.phase == "capitulation":
        if signals.stabilization_count >= 2:
            phase = "stabilizing"
    elif state.phase == "stabilizing":
        if signals.reclaimed or signals.micro_structure_shift:
            phase = "confirming"
    elif state.phase == "confirming":
        if signals.retest_quality == "good":
            phase = "safe"
    return phase


def _form_knife(
    candles: Sequence[Candle],
    candles1h: Sequence[Candle],
    candles4h: Sequence[Candle],
    atr: float,
    config: KnifeConfig,
) -> Optional[_KnifeState]:
    price = candles[-1].close
    now = candles[-1].time
    levels = merge_knife_levels(
        [
            ("15m", find_knife_levels(candles, "15m", 2)),
            ("1h", find_knife_levels(candles1h, "1h", 3)),
            ("4h", find_knife_levels(candles4h, "4h", 3)),
        ],
        atr,
        price,
        now,
    )
    falling = select_broken_level(levels, candles, atr, "down", config)
    rising = select_broken_level(levels, candles, atr, "up", config)
    if falling is not None and (rising is None or falling.break_index >= rising.break_index):
        broken, direction = falling, "falling"
    elif rising is not None:
        broken, direction = rising, "rising"
    else:
        return None

    if not _is_impulse(candles, atr, config):
        return None

    start = max(0, broken.break_index - 3)
    return _KnifeState(
        direction=direction,
        phase="impulse",
        broken_level=broken.level.price,
        break_index=broken.break_index,
        break_time=broken.break_time,
        impulse_vol_baseline=float(np.median([c.volume for c in candles[start:broken.break_index + 1]])),
    )


def _until(candles: Sequence[Candle], times: list[int], cutoff: int) -> Sequence[Candle]:
    return candles[:bisect.bisect_left(times, cutoff)]


def _gate_profile(
    state: _KnifeState, signals: KnifeSignals,
) -> tuple[str, float, bool, tuple[str, ...], tuple[str, ...]]:
    direction = state.direction
    if state.phase == "impulse":
        return "block", 0.0, True, ("capitulation", "stabilization"), (f"{direction} knife impulse active",)
    if state.phase == "capitulation":
        return (
            "block", 0.0, True,
            ("stabilization signals (2+ of: no new extreme, ATR contraction, volume fading, "
             "higher lows, CLV drift)",),
            (f"{direction} knife capitulation - wait for stabilization",),
        )
    if state.phase == "stabilizing":
        if not signals.reclaimed and not signals.micro_structure_shift:
            return "block", 0.0, False, ("reclaim or micro structure shift",), ("Stabilizing, no confirmation yet",)
        return "warn", 0.4, False, (), ("Early confirmation, reduced size",)
    if state.phase == "confirming":
        if signals.retest_quality == "good":
            return "warn", 0.8, False, (), ()
        return "warn", 0.5, False, ("quality retest",), ("Awaiting quality retest",)
    return "allow", 1.0, False, (), (f"{direction} knife resolved - safe to trade",)


def detect_knife(
    candles15m: Sequence[Candle],
    candles5m: Sequence[Candle],
    candles1h: Sequence[Candle] = (),
    candles4h: Sequence[Candle] = (),
    config: Optional[KnifeConfig] = None,
) -> KnifeAnalysis:
    """Detect a falling or rising knife on the 15m chart.

    Levels come from 15m, 1H and 4H swing points.  The 5m chart feeds the
    micro-structure shift that can confirm a stabilizing knife.  A knife
    older than ``max_age_candles`` since its break expires.

    Returns:
        ``NO_KNIFE`` (with a reason when data is short) unless a knife is
        active on the last 15m candle.
    """
    config = config or KnifeConfig()
    if len(candles15m) < MIN_CANDLES_15M:
        return replace(NO_KNIFE, reasons=(f"Need {MIN_CANDLES_15M}+ 15m candles",))
    if len(candles5m) < MIN_CANDLES_5M:
        return replace(NO_KNIFE, reasons=(f"Need {MIN_CANDLES_5M}+ 5m candles",))
    atr_now = calculate_atr(list(candles15m))
    if not atr_now or not math.isfinite(atr_now):
        return replace(NO_KNIFE, reasons=("Invalid ATR",))

    times5m = [c.time for c in candles5m]
    times1h = [c.time for c in candles1h]
    times4h = [c.time for c in candles4h]

    state: Optional[_KnifeState] = None
    signals, metrics = KnifeSignals(), KnifeMetrics()
    first = max(MIN_CANDLES_15M - 1, len(candles15m) - 1 - config.max_age_candles)
    for end in range(first, len(candles15m)):
        window = candles15m[:end + 1]
        bar_time = window[-1].time
        atr = calculate_atr(list(window))
        if not atr:
            continue
        if state is not None and (bar_time - state.break_time) // _BAR_SECONDS > config.max_age_candles:
            state = None
        if state is None:
            state = _form_knife(
                window,
                _until(candles1h, times1h, bar_time + 1),
                _until(candles4h, times4h, bar_time + 1),
                atr,
                config,
            )
            if state is None:
                continue
        signals, metrics = _signals(window, _until(candles5m, times5m, bar_time + _BAR_SECONDS), atr, state, config)
        phase = _next_phase(state, signals, metrics, len(window))
        if phase != state.phase:
            logger.debug(
                "Knife %s: %s -> %s at level %.5f (%.2f ATR away)",
                state.direction, state.phase, phase, state.broken_level, metrics.break_distance_atr,
            )
            state = replace(state, phase=phase)

    if state is None:
        return NO_KNIFE

    knife_score = 25 * sum((
        signals.decisive_break, signals.fast_velocity, signals.volume_expansion, signals.capitulation_candle,
    ))
    readiness = 10 * signals.stabilization_count
    readiness += 20 if signals.reclaimed else 0
    readiness += 15 if signals.micro_structure_shift else 0
    readiness += {"good": 15, "poor": 5, "none": 0}[signals.retest_quality]

    gate_action, multiplier, flip, wait_for, reasons = _gate_profile(state, signals)
    return KnifeAnalysis(
        is_knife=True,
        direction=state.direction,
        phase=state.phase,
        broken_level=state.broken_level,
        knife_score=knife_score,
        reversal_readiness=readiness,
        gate_action=gate_action,
        size_multiplier=multiplier,
        flip_suggestion=flip,
        signals=signals,
        metrics=metrics,
        wait_for=wait_for,
        reasons=reasons,
    )


# ── Gate ─────────────────────────────────────────────────────────────────


def apply_knife_gate(action: str, knife: Optional[KnifeAnalysis]) -> KnifeGate:
    """Gate a LONG / SHORT against an active knife.

    Entries against the knife are blocked (turned into WAIT) through impulse
    and capitulation, and through stabilizing until a reclaim or a 5m
    structure shift.  Later phases only shrink the size.  Entries with the
    knife pass, at half size during capitulation.
    """
    if knife is None or not knife.is_knife or action not in ("LONG", "SHORT"):
        return KnifeGate(action, (), 1.0, False)

    counter = (action == "LONG") == (knife.direction == "falling")
    if not counter:
        if knife.phase == "capitulation":
            return KnifeGate(action, ("Late trend entry - reduced size",), 0.5, False)
        return KnifeGate(action, (), 1.0, False)

    if knife.phase in ("impulse", "capitulation"):
        return KnifeGate("WAIT", (f"{knife.direction} knife: {knife.phase} - BLOCKED",), 0.0, True)
    if knife.phase == "stabilizing":
        if not knife.signals.reclaimed and not knife.signals.micro_structure_shift:
            return KnifeGate("WAIT", ("Stabilizing, no confirmation yet",), 0.0, False)
        return KnifeGate(action, ("Early confirmation, reduced size",), 0.4, False)
    if knife.phase == "confirming":
        if knife.signals.retest_quality == "good":
            return KnifeGate(action, (), 0.8, False)
        return KnifeGate(action, ("Awaiting quality retest",), 0.5, False)
    return KnifeGate(action, (), 1.0, False)
