"""Tests for the exit pressure engine."""

import dataclasses
import random

import pytest

from marginpilot.models.strategy_config import AntiGreedConfig
from marginpilot.risk.exit_signals import (
    NO_EXIT_SIGNAL,
    analyze_exit_conditions,
    calculate_timebox_pressure,
    detect_anti_greed,
    detect_momentum_fading,
    detect_rsi_exhaustion,
    determine_urgency,
    exit_status_summary,
    get_time_phase,
    is_anti_greed_triggered,
    is_approaching_timebox,
    resolve_timebox_hours,
)
from marginpilot.risk.position import EMPTY_POSITION, MS_PER_HOUR, PositionState
from marginpilot.strategy.loader import PRESET_DIR, load_strategy_file
from marginpilot.strategy.models import IndicatorSet
from marginpilot.strategy.regime import MarketRegimeAnalysis


STRATEGY = load_strategy_file(PRESET_DIR / "aggressive_swing_10x.json").strategy
ANTI_GREED = AntiGreedConfig(enabled=True, drawdown_threshold_percent=30)
STRONG_TREND = MarketRegimeAnalysis(
    regime="strong_trend", confidence=80, adx=40, bb_width_percent=2.5,
    description="", adjusted_action_threshold=60,
    adjusted_timebox_max_hours=72, adjusted_timebox_weight=0.05,
)


def _ind(**overrides) -> IndicatorSet:
    values = dict(
        price=0.5, rsi=50.0, macd=0.0, macd_signal=0.0, histogram=0.0,
        bb_upper=0.51, bb_middle=0.5, bb_lower=0.49, bb_position=0.5, bb_width_percent=1.5,
        atr=0.004, volume_ratio=1.0, adx=20.0, plus_di=20.0, minus_di=20.0,
        ema20=0.5, ema50=0.5, ema200=None, ema20_slope=0.0, ema50_slope=0.0,
        price_vs_ema20=0.0, price_vs_ema50=0.0, price_vs_ema200=None,
        ema_alignment="mixed", trend="neutral", trend_score=0.0, trend_strength="weak",
        entry_score=0, bias="neutral",
    )
    values.update(overrides)
    return IndicatorSet(**values)


def _position(pnl: float, hours: float, hwm: float | None = None) -> PositionState:
    return PositionState(
        is_open=True,
        direction="long",
        phase="exit_watch",
        avg_price=0.5,
        total_volume=4000.0,
        total_margin_used=200.0,
        unrealized_pnl=pnl,
        high_water_mark_pnl=pnl if hwm is None else hwm,
        opened_at=0,
        time_in_trade_ms=int(hours * MS_PER_HOUR),
    )


def _analyze(position, ind15m=None, ind1h=None, ind5m=None, regime=None):
    return analyze_exit_conditions(
        position,
        ind15m or _ind(),
        ind1h or _ind(),
        ind5m or _ind(),
        0.51,
        position.time_in_trade_ms,
        STRATEGY,
        regime,
    )


# ── Timebox ──────────────────────────────────────────────────────────────


class TestTimebox:
    @pytest.mark.parametrize(
        "hours, phase",
        [(0, "normal"), (11.9, "normal"), (12, "monitor"), (24, "escalating"), (36, "urgent"), (48, "overdue")],
    )
    def test_time_phase(self, hours, phase):
        assert get_time_phase(hours) == phase

    @pytest.mark.parametrize("hours, phase", [(17.9, "normal"), (36, "escalating"), (50, "escalating"), (54, "urgent"), (72, "overdue")])
    def test_time_phase_scales_with_timebox(self, hours, phase):
        assert get_time_phase(hours, max_hours=72) == phase

    def test_timebox_hours_in_force(self):
        assert resolve_timebox_hours(STRATEGY) == 48
        assert resolve_timebox_hours(STRATEGY, STRONG_TREND) == 72

    def test_strong_trend_keeps_position_out_of_overdue(self):
        position = _position(pnl=50, hours=50)
        assert _analyze(position).reason == "timebox_expired"
        signal = _analyze(position, regime=STRONG_TREND)
        timebox = next(p for p in signal.pressures if p.source == "timebox_expired")
        assert "(escalating)" in timebox.detail
        assert signal.reason == "timebox_approaching"

    def test_pressure_interpolates_between_steps(self):
        assert calculate_timebox_pressure(0, STRATEGY.timebox) == 0
        assert calculate_timebox_pressure(6, STRATEGY.timebox) == pytest.approx(10.0)
        assert calculate_timebox_pressure(30, STRATEGY.timebox) == pytest.approx(57.5)
        assert calculate_timebox_pressure(60, STRATEGY.timebox) == 100

    def test_pressure_is_monotonic(self):
        values = [calculate_timebox_pressure(h / 2, STRATEGY.timebox) for h in range(0, 130)]
        assert values == sorted(values)


# ── Detectors ────────────────────────────────────────────────────────────


class TestDetectors:
    def test_rsi_exhaustion_long(self):
        assert detect_rsi_exhaustion("long", 78).value == 90
        assert detect_rsi_exhaustion("long", 72).value == 60
        assert detect_rsi_exhaustion("long", 60).active is False

    def test_rsi_exhaustion_short(self):
        assert detect_rsi_exhaustion("short", 22).value == 90
        assert detect_rsi_exhaustion("short", 28).value == 60

    def test_anti_greed_gates(self):
        assert detect_anti_greed(30, 15, ANTI_GREED).active is False  # HWM below tracking
        assert detect_anti_greed(5, 60, ANTI_GREED).active is False  # P&L below activation
        assert detect_anti_greed(30, 60, ANTI_GREED).active is True  # gave back 50 %

    def test_anti_greed_early_warning(self):
        """22 % given back is ≥ 70 % of the 30 % threshold but below it."""
        early = detect_anti_greed(78, 100, ANTI_GREED)
        assert early.active is False
        assert early.value == 30

    def test_anti_greed_disabled(self):
        disabled = AntiGreedConfig(enabled=False, drawdown_threshold_percent=30)
        assert detect_anti_greed(30, 60, disabled).detail == "Anti-greed disabled"

    def test_momentum_fading_needs_two(self):
        assert detect_momentum_fading("long", _ind()).active is True  # RSI 50 + flat EMA
        partial = detect_momentum_fading("long", _ind(rsi=65, ema20_slope=0.01))
        assert partial.active is False
        assert partial.value == 20

    def test_urgency_table(self):
        assert determine_urgency("normal", True, 95) == "immediate"
        assert determine_urgency("overdue", True, 50) == "immediate"
        assert determine_urgency("overdue", False, 50) == "soon"
        assert determine_urgency("urgent", False, 50) == "consider"
        assert determine_urgency("escalating", False, 65) == "soon"
        assert determine_urgency("escalating", False, 40) == "monitor"
        assert determine_urgency("monitor", True, 75) == "consider"
        assert determine_urgency("normal", True, 79) == "monitor"


# ── Full analysis ────────────────────────────────────────────────────────


class TestAnalyzeExit:
    def test_overdue_in_profit_exits_fully(self):
        signal = _analyze(_position(pnl=50, hours=50))
        # timebox 100 × 0.30 + momentum fading 60 × 0.10 → 90
        assert signal.total_pressure == 90
        assert signal.should_exit is True
        assert signal.urgency == "immediate"
        assert signal.reason == "timebox_expired"
        assert signal.suggested_exit_percent == 100
        assert signal.confidence == 90
        assert signal.explanation.startswith("Exit recommended (pressure 90%).")

    def test_never_exits_at_a_loss(self):
        signal = _analyze(_position(pnl=-50, hours=50))
        assert signal.should_exit is False
        assert signal.confidence == 0
        assert signal.suggested_exit_percent == 0
        assert signal.explanation.startswith("At a loss - no exit signal")

    @pytest.mark.parametrize("seed", range(25))
    def test_never_exits_at_a_loss_random(self, seed):
        rng = random.Random(seed)
        for _ in range(20):
            position = dataclasses.replace(
                _position(pnl=-rng.uniform(0.01, 500), hours=rng.uniform(0, 120), hwm=rng.uniform(0, 500)),
                direction=rng.choice(["long", "short"]),
            )
            ind15m = _ind(
                rsi=rng.uniform(0, 100), volume_ratio=rng.uniform(0, 3),
                histogram=rng.uniform(-0.01, 0.01), macd=rng.uniform(-0.01, 0.01),
            )
            ind1h = _ind(
                trend=rng.choice(["bullish", "bearish", "neutral"]),
                ema_alignment=rng.choice(["bullish", "bearish", "mixed"]),
                histogram=rng.uniform(-0.01, 0.01), macd=rng.uniform(-0.01, 0.01),
            )
            ind5m = _ind(volume_ratio=rng.uniform(0, 3))
            signal = _analyze(position, ind15m, ind1h, ind5m, rng.choice([None, STRONG_TREND]))
            assert signal.should_exit is False
            assert signal.suggested_exit_percent == 0

    def test_below_min_profit_does_not_exit(self):
        signal = _analyze(_position(pnl=3, hours=50))
        assert signal.should_exit is False
        assert signal.explanation.startswith("In profit but pressure low")

    def test_anti_greed_is_primary_reason(self):
        signal = _analyze(_position(pnl=30, hours=2, hwm=60))
        assert signal.reason == "anti_greed"
        assert any(p.source == "anti_greed" and p.value == 90 for p in signal.pressures)

    def test_trend_reversal_reason(self):
        reversed_1h = _ind(trend="bearish", ema_alignment="bearish", histogram=-0.001, macd=-0.002)
        signal = _analyze(_position(pnl=20, hours=1), ind1h=reversed_1h)
        assert signal.reason == "trend_reversal"
        assert signal.urgency == "monitor"
        assert signal.should_exit is False

    def test_regime_overrides_timebox_weight(self):
        signal = _analyze(_position(pnl=20, hours=20), regime=STRONG_TREND)
        timebox = next(p for p in signal.pressures if p.source == "timebox_expired")
        assert timebox.weight == 0.05

    def test_missing_indicators(self):
        position = _position(pnl=20, hours=1)
        assert analyze_exit_conditions(position, None, _ind(), _ind(), 0.5, 0, STRATEGY) is None

    def test_no_position(self):
        assert analyze_exit_conditions(EMPTY_POSITION, _ind(), _ind(), _ind(), 0.5, 0, STRATEGY) is NO_EXIT_SIGNAL


class TestHelpers:
    def test_approaching_timebox(self):
        assert is_approaching_timebox(_position(pnl=0, hours=36)) is True
        assert is_approaching_timebox(_position(pnl=0, hours=35)) is False

    def test_approaching_longer_timebox(self):
        position = dataclasses.replace(_position(pnl=0, hours=50), timebox_max_hours=72)
        assert is_approaching_timebox(position) is False

    def test_anti_greed_triggered(self):
        assert is_anti_greed_triggered(_position(pnl=30, hours=1, hwm=60), ANTI_GREED) is True
        assert is_anti_greed_triggered(_position(pnl=55, hours=1, hwm=60), ANTI_GREED) is False

    def test_status_summary(self):
        assert exit_status_summary(NO_EXIT_SIGNAL) == "Holding"
        assert exit_status_summary(_analyze(_position(pnl=50, hours=50))) == "EXIT NOW"
