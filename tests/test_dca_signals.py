"""Tests for DCA opportunity detection — gates and exhaustion scoring."""

import dataclasses

import pytest

from marginpilot.risk.dca_signals import (
    adverse_move_percent,
    analyze_dca_opportunity,
    count_stabilizing_candles,
)
from marginpilot.risk.position import MS_PER_HOUR, EntryRecord, PositionState
from marginpilot.strategy.loader import PRESET_DIR, load_strategy_file
from marginpilot.strategy.models import Candle, IndicatorSet


STRATEGY = load_strategy_file(PRESET_DIR / "aggressive_swing_10x.json").strategy


def _ind(**overrides) -> IndicatorSet:
    values = dict(
        price=0.48, rsi=50.0, macd=0.0, macd_signal=0.0, histogram=0.0,
        bb_upper=0.49, bb_middle=0.48, bb_lower=0.47, bb_position=0.5, bb_width_percent=1.5,
        atr=0.004, volume_ratio=1.0, adx=20.0, plus_di=20.0, minus_di=20.0,
        ema20=0.48, ema50=0.48, ema200=None, ema20_slope=0.0, ema50_slope=0.0,
        price_vs_ema20=0.0, price_vs_ema50=0.0, price_vs_ema200=None,
        ema_alignment="mixed", trend="neutral", trend_score=0.0, trend_strength="weak",
        entry_score=0, bias="neutral",
    )
    values.update(overrides)
    return IndicatorSet(**values)


def _make_candle(t: int, low: float, high: float) -> Candle:
    mid = (low + high) / 2
    return Candle(time=t, open=mid, high=high, low=low, close=mid, volume=1000.0)


def _rising_lows(n: int = 7) -> list[Candle]:
    return [_make_candle(i * 300, 0.470 + i * 0.001, 0.480 + i * 0.001) for i in range(n)]


def _falling_lows(n: int = 7) -> list[Candle]:
    return [_make_candle(i * 300, 0.480 - i * 0.001, 0.490 - i * 0.001) for i in range(n)]


def _position(dca_count: int = 0, progress: float = 0.1, direction: str = "long") -> PositionState:
    entry = EntryRecord(
        id="initial-0", kind="initial", dca_level=0, price=0.5, volume=4000.0,
        margin_used=200.0, margin_percent=20.0, timestamp=0, confidence=82, mode="full",
    )
    return PositionState(
        is_open=True,
        direction=direction,
        phase="dca_watch",
        entries=(entry,),
        avg_price=0.5,
        total_volume=4000.0,
        total_margin_used=200.0,
        dca_count=dca_count,
        opened_at=0,
        timebox_progress=progress,
        liquidation_price=0.49,
        liquidation_distance_percent=2.0,
    )


EXHAUSTED_5M = _ind(volume_ratio=0.5, bb_position=0.5)
EXHAUSTED_15M = _ind(rsi=28.0, volume_ratio=0.8, histogram=0.00005)
NOW = 5 * MS_PER_HOUR


class TestDCAGates:
    def test_blocked_at_max_count(self):
        signal = analyze_dca_opportunity(
            _position(dca_count=3), 0.48, EXHAUSTED_5M, EXHAUSTED_15M, _rising_lows(), NOW, STRATEGY,
        )
        assert signal.should_dca is False
        assert signal.reason == "Max 3 DCAs reached"

    def test_blocked_below_min_drawdown(self):
        signal = analyze_dca_opportunity(
            _position(), 0.495, EXHAUSTED_5M, EXHAUSTED_15M, _rising_lows(), NOW, STRATEGY,
        )
        assert signal.should_dca is False
        assert "below minimum" in signal.reason
        assert signal.drawdown_percent == pytest.approx(1.0)

    def test_blocked_by_spacing(self):
        """Level 1 needs max(4h, 2h) since the last entry."""
        signal = analyze_dca_opportunity(
            _position(), 0.48, EXHAUSTED_5M, EXHAUSTED_15M, _rising_lows(), 3 * MS_PER_HOUR, STRATEGY,
        )
        assert signal.should_dca is False
        assert "since last entry" in signal.reason

    def test_blocked_after_midpoint_when_disallowed(self):
        strict = dataclasses.replace(
            STRATEGY, dca=dataclasses.replace(STRATEGY.dca, allow_dca_after_midpoint=False)
        )
        signal = analyze_dca_opportunity(
            _position(progress=0.6), 0.48, EXHAUSTED_5M, EXHAUSTED_15M, _rising_lows(), NOW, strict,
        )
        assert signal.should_dca is False
        assert signal.reason == "Past timebox midpoint"

    def test_midpoint_allowed_by_default(self):
        signal = analyze_dca_opportunity(
            _position(progress=0.6), 0.48, EXHAUSTED_5M, EXHAUSTED_15M, _rising_lows(), NOW, STRATEGY,
        )
        assert signal.should_dca is True

    def test_no_position(self):
        closed = dataclasses.replace(_position(), is_open=False)
        signal = analyze_dca_opportunity(closed, 0.48, EXHAUSTED_5M, EXHAUSTED_15M, [], NOW, STRATEGY)
        assert signal.should_dca is False
        assert signal.reason == "No open position"

    def test_missing_indicators(self):
        signal = analyze_dca_opportunity(_position(), 0.48, None, EXHAUSTED_15M, [], NOW, STRATEGY)
        assert signal.should_dca is False
        assert signal.reason == "Insufficient data"


class TestExhaustionScoring:
    def test_all_signals_active(self):
        signal = analyze_dca_opportunity(
            _position(), 0.48, EXHAUSTED_5M, EXHAUSTED_15M, _rising_lows(), NOW, STRATEGY,
        )
        assert signal.should_dca is True
        assert signal.confidence == 100
        assert signal.exhaustion_type == "multi_signal"
        assert signal.dca_level == 1
        assert signal.suggested_margin_percent == pytest.approx(15.0)
        assert signal.drawdown_percent == pytest.approx(4.0)

    def test_single_signal_below_threshold(self):
        quiet_5m = _ind(volume_ratio=1.2, bb_position=0.9)
        oversold_15m = _ind(rsi=28.0, volume_ratio=1.2, histogram=0.001, macd=0.002, macd_signal=0.001)
        signal = analyze_dca_opportunity(
            _position(), 0.48, quiet_5m, oversold_15m, _falling_lows(), NOW, STRATEGY,
        )
        assert signal.confidence == 25
        assert signal.exhaustion_type == "rsi_extreme"
        assert signal.should_dca is False
        assert signal.suggested_margin_percent == 0.0

    def test_close_liquidation_warns(self):
        signal = analyze_dca_opportunity(
            _position(), 0.48, EXHAUSTED_5M, EXHAUSTED_15M, _rising_lows(), NOW, STRATEGY,
        )
        assert any("Liquidation" in w for w in signal.warnings)

    def test_short_uses_overbought_rsi(self):
        overbought_15m = _ind(rsi=75.0, volume_ratio=1.2, histogram=0.001, macd=0.002, macd_signal=0.001)
        signal = analyze_dca_opportunity(
            _position(direction="short"), 0.52, _ind(volume_ratio=1.2, bb_position=0.9),
            overbought_15m, _rising_lows(), NOW, STRATEGY,
        )
        assert signal.drawdown_percent == pytest.approx(4.0)
        rsi = next(s for s in signal.signals if s.name == "rsi_extreme")
        assert rsi.active is True

    def test_signal_weights_sum_to_one(self):
        signal = analyze_dca_opportunity(
            _position(), 0.48, EXHAUSTED_5M, EXHAUSTED_15M, _rising_lows(), NOW, STRATEGY,
        )
        assert sum(s.weight for s in signal.signals) == pytest.approx(1.0)


class TestHelpers:
    def test_adverse_move(self):
        assert adverse_move_percent(_position(), 0.45) == pytest.approx(10.0)
        assert adverse_move_percent(_position(direction="short"), 0.45) == pytest.approx(-10.0)

    def test_stabilizing_count(self):
        assert count_stabilizing_candles("long", _rising_lows(), 6) == 6
        assert count_stabilizing_candles("long", _falling_lows(), 6) == 0
        assert count_stabilizing_candles("short", _falling_lows(), 6) == 6
