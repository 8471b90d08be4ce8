"""Tests for knife detection and the counter-trend entry gate.

The 15m fixture is a flat market around 1.00 with one swing low at 0.990,
broken by a 3x-volume candle that closes at 0.965.
"""

import dataclasses

import pytest

from marginpilot.strategy.knife import (
    NO_KNIFE,
    KnifeLevel,
    KnifeSignals,
    apply_knife_gate,
    detect_knife,
    merge_knife_levels,
    select_broken_level,
)
from marginpilot.strategy.loader import PRESET_DIR, load_strategy_file
from marginpilot.strategy.models import Candle, IndicatorSet, TimeframeSnapshot
from marginpilot.strategy.recommendation import generate_recommendation


STRATEGY = load_strategy_file(PRESET_DIR / "aggressive_swing_10x.json").strategy


def _flat(i: int, low: float = 0.995, seconds: int = 900) -> Candle:
    return Candle(time=i * seconds, open=1.0, high=1.005, low=low, close=1.0, volume=1000.0)


PRE_BREAK = [_flat(i, low=0.990 if i == 50 else 0.995) for i in range(60)]
BREAK = Candle(time=60 * 900, open=1.0, high=1.0, low=0.96, close=0.965, volume=3000.0)
AFTER_BREAK = [
    Candle(time=61 * 900, open=0.965, high=0.97, low=0.955, close=0.96, volume=1500.0),
    Candle(time=62 * 900, open=0.96, high=0.962, low=0.952, close=0.958, volume=1200.0),
]
KNIFE_15M = tuple(PRE_BREAK + [BREAK] + AFTER_BREAK)
FLAT_5M = tuple(_flat(k + 147, seconds=300) for k in range(40))


def _knife(**overrides):
    values = dict(is_knife=True, direction="falling", phase="capitulation")
    values.update(overrides)
    return dataclasses.replace(NO_KNIFE, **values)


def _ind(**overrides) -> IndicatorSet:
    values = dict(
        price=1.0, rsi=50.0, macd=0.0, macd_signal=0.0, histogram=0.0,
        bb_upper=1.02, bb_middle=1.0, bb_lower=0.98, bb_position=0.5, bb_width_percent=1.5,
        atr=0.01, volume_ratio=1.0, adx=20.0, plus_di=20.0, minus_di=20.0,
        ema20=1.0, ema50=1.0, ema200=None, ema20_slope=0.0, ema50_slope=0.0,
        price_vs_ema20=0.0, price_vs_ema50=0.0, price_vs_ema200=None,
        ema_alignment="mixed", trend="neutral", trend_score=0.0, trend_strength="weak",
        entry_score=0, bias="neutral",
    )
    values.update(overrides)
    return IndicatorSet(**values)


# ── Levels ───────────────────────────────────────────────────────────────


class TestLevels:
    def test_merge_across_timeframes(self):
        a = KnifeLevel(1.000, "support", 1, 0.0, 0, "15m")
        b = KnifeLevel(1.001, "support", 1, 0.0, 0, "1h")
        c = KnifeLevel(1.001, "resistance", 1, 0.0, 0, "1h")
        merged = merge_knife_levels([("15m", [a]), ("1h", [b, c])], atr15m=0.01, price=1.0, now=0)
        support = next(lvl for lvl in merged if lvl.type == "support")
        assert len(merged) == 2
        assert support.price == pytest.approx(1.0005)
        assert support.touches == 2
        assert support.source == "15m+1h"

    def test_wick_then_accept_break(self):
        candles = [Candle(i * 900, 1.02, 1.025, 1.015, 1.02, 1000.0) for i in range(49)]
        candles.append(Candle(49 * 900, 1.02, 1.02, 0.99, 1.005, 1000.0))
        candles.append(Candle(50 * 900, 1.005, 1.006, 0.995, 0.997, 1000.0))
        support = KnifeLevel(1.0, "support", 1, 5.0, 0, "15m")
        broken = select_broken_level([support], candles, 0.01, "down")
        assert broken.break_type == "wick_accept"
        assert broken.break_index == 50
        assert broken.break_distance_atr == pytest.approx(0.3)

    def test_no_break_without_history(self):
        support = KnifeLevel(1.0, "support", 1, 5.0, 0, "15m")
        assert select_broken_level([support], KNIFE_15M[:40], 0.01, "down") is None


# ── Detection ────────────────────────────────────────────────────────────


class TestDetectKnife:
    def test_flat_market_has_no_knife(self):
        assert detect_knife(PRE_BREAK, FLAT_5M) == NO_KNIFE

    @pytest.mark.parametrize(
        "candles15m, candles5m, reason",
        [
            (KNIFE_15M[:40], FLAT_5M, "Need 50+ 15m candles"),
            (KNIFE_15M, FLAT_5M[:20], "Need 30+ 5m candles"),
        ],
    )
    def test_needs_history(self, candles15m, candles5m, reason):
        knife = detect_knife(candles15m, candles5m)
        assert knife.is_knife is False
        assert knife.reasons == (reason,)

    def test_impulse_on_the_break(self):
        knife = detect_knife(KNIFE_15M[:61], FLAT_5M)
        assert knife.is_knife is True
        assert knife.direction == "falling"
        assert knife.phase == "impulse"
        assert knife.broken_level == pytest.approx(0.990)
        assert knife.knife_score == 75  # decisive break, velocity, volume
        assert knife.gate_action == "block"

    def test_capitulation_three_candles_after_break(self):
        knife = detect_knife(KNIFE_15M, FLAT_5M)
        assert knife.phase == "capitulation"
        assert knife.signals.volume_expansion is False
        assert knife.knife_score == 50
        assert knife.reversal_readiness == 0
        assert knife.size_multiplier == 0
        assert knife.flip_suggestion is True
        assert knife.reasons == ("falling knife capitulation - wait for stabilization",)


# ── Gate ─────────────────────────────────────────────────────────────────


class TestKnifeGate:
    def test_blocks_long_into_capitulation(self):
        gate = apply_knife_gate("LONG", _knife())
        assert gate.action == "WAIT"
        assert gate.size_multiplier == 0
        assert gate.flip_suggestion is True
        assert gate.warnings == ("falling knife: capitulation - BLOCKED",)

    def test_late_trend_entry(self):
        gate = apply_knife_gate("SHORT", _knife())
        assert (gate.action, gate.size_multiplier) == ("SHORT", 0.5)
        assert gate.warnings == ("Late trend entry - reduced size",)

    def test_with_trend_in_impulse_passes(self):
        assert apply_knife_gate("SHORT", _knife(phase="impulse")).size_multiplier == 1.0
        assert apply_knife_gate("LONG", _knife(direction="rising", phase="impulse")).action == "LONG"

    def test_stabilizing_needs_confirmation(self):
        assert apply_knife_gate("LONG", _knife(phase="stabilizing")).action == "WAIT"
        confirmed = _knife(phase="stabilizing", signals=KnifeSignals(reclaimed=True))
        gate = apply_knife_gate("LONG", confirmed)
        assert (gate.action, gate.size_multiplier) == ("LONG", 0.4)

    @pytest.mark.parametrize("quality, multiplier", [("good", 0.8), ("poor", 0.5), ("none", 0.5)])
    def test_confirming_scales_by_retest(self, quality, multiplier):
        knife = _knife(phase="confirming", signals=KnifeSignals(reclaimed=True, retest_quality=quality))
        assert apply_knife_gate("LONG", knife).size_multiplier == multiplier

    def test_passes_without_knife(self):
        assert apply_knife_gate("LONG", None).action == "LONG"
        assert apply_knife_gate("LONG", NO_KNIFE).size_multiplier == 1.0
        assert apply_knife_gate("WAIT", _knife()).action == "WAIT"


# ── Recommendation ───────────────────────────────────────────────────────


class TestRecommendationGate:
    BULL_HTF = _ind(trend="bullish", trend_score=80.0, ema_alignment="bullish", ema20_slope=0.1, trend_strength="strong")
    BULL_1H = _ind(
        trend="bullish", trend_score=70.0, ema_alignment="bullish", price_vs_ema20=1.0,
        macd=0.002, histogram=0.0005, ema20_slope=0.1,
    )
    PULLBACK_15M = _ind(
        rsi=35.0, volume_ratio=1.3, histogram=0.0003, macd=0.001, bb_position=0.2, price_vs_ema20=0.5,
    )

    def _snapshots(self) -> dict[str, TimeframeSnapshot]:
        return {
            "1d": TimeframeSnapshot("1d", (), self.BULL_HTF),
            "4h": TimeframeSnapshot("4h", (), self.BULL_HTF),
            "1h": TimeframeSnapshot("1h", (), self.BULL_1H),
            "15m": TimeframeSnapshot("15m", KNIFE_15M, self.PULLBACK_15M),
            "5m": TimeframeSnapshot("5m", FLAT_5M, _ind()),
        }

    def test_long_blocked_during_capitulation(self):
        rec = generate_recommendation(self._snapshots(), STRATEGY, btc_trend="bull", current_price=1.0)
        assert rec.long.strength == 93
        assert rec.action == "WAIT"
        assert rec.knife.phase == "capitulation"
        assert rec.size_multiplier == 0
        assert rec.base_confidence == 65  # 93 × 0.7
        assert rec.reason.startswith("Falling knife (capitulation)")
        assert "Falling knife: capitulation" in rec.warnings
        assert "Consider SHORT instead (trend-follow)" in rec.warnings
        assert "falling knife: capitulation - BLOCKED" in rec.long.warnings

    def test_gating_can_be_disabled(self):
        rec = generate_recommendation(self._snapshots(), STRATEGY, btc_trend="bull", knife_gating=False)
        assert rec.action == "LONG"
        assert rec.knife is None
        assert rec.size_multiplier == 1.0
