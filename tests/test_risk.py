"""Tests for the risk package.

Covers entry and DCA sizing, DCA capacity, liquidation estimates, position
transitions and the DCA scenario planner.
"""

import pytest

from marginpilot.models.strategy_config import PositionSizingConfig
from marginpilot.risk.liquidation import (
    calculate_cross_margin_liquidation_price,
    calculate_liquidation_price,
    liquidation_distance_percent,
)
from marginpilot.risk.position import (
    EMPTY_POSITION,
    MS_PER_HOUR,
    EntryRecord,
    PositionState,
    add_entry,
    add_fees,
    calculate_avg_entry_price,
    calculate_new_avg_price,
    calculate_unrealized_pnl,
    close_position,
    mark_phase,
    open_position,
    refresh_tick,
)
from marginpilot.risk.scenario import (
    ScenarioRejection,
    estimate_fees,
    plan_multi_level,
    solve_target_average,
    what_if_buy,
)
from marginpilot.risk.sizing import (
    calculate_dca_capacity,
    calculate_dca_size,
    calculate_entry_size,
    format_margin_info,
)


SIZING = PositionSizingConfig(
    leverage=10,
    full_entry_margin_percent=20,
    cautious_entry_margin_percent=10,
    min_entry_confidence=65,
    full_entry_confidence=80,
    max_dca_count=3,
    dca_margin_percent=15,
    max_total_margin_percent=80,
    min_free_margin_percent=20,
)


def _entry(price: float, volume: float, margin: float, ts: int = 0, kind: str = "initial", level: int = 0) -> EntryRecord:
    return EntryRecord(
        id=f"{kind}-{level}",
        kind=kind,
        dca_level=level,
        price=price,
        volume=volume,
        margin_used=margin,
        margin_percent=20.0,
        timestamp=ts,
        confidence=82,
        mode="full",
    )


def _open_position(direction: str = "long", avg: float = 0.5, volume: float = 1000.0, margin: float = 50.0) -> PositionState:
    return PositionState(
        is_open=True,
        direction=direction,
        phase="entry",
        entries=(_entry(avg, volume, margin),),
        avg_price=avg,
        total_volume=volume,
        total_margin_used=margin,
        opened_at=0,
        leverage=10,
    )


# ── Entry sizing ─────────────────────────────────────────────────────────


class TestEntrySizing:
    """Unit tests for calculate_entry_size()."""

    def test_full_entry(self):
        """1000 free, confidence 85 → 20 % margin = 200, 2000 notional."""
        result = calculate_entry_size(85, price=0.5, available_margin=1000, sizing=SIZING)
        assert result.should_enter is True
        assert result.entry_mode == "full"
        assert result.margin_to_use == pytest.approx(200.0)
        assert result.position_value == pytest.approx(2000.0)
        assert result.volume == pytest.approx(4000.0)
        assert result.margin_percent == pytest.approx(20.0)

    def test_cautious_entry(self):
        result = calculate_entry_size(70, price=0.5, available_margin=1000, sizing=SIZING)
        assert result.entry_mode == "cautious"
        assert result.margin_to_use == pytest.approx(100.0)

    def test_size_multiplier_scales_margin(self):
        result = calculate_entry_size(85, price=0.5, available_margin=1000, sizing=SIZING, size_multiplier=0.4)
        assert result.margin_to_use == pytest.approx(80.0)
        assert result.volume == pytest.approx(1600.0)

    def test_skip_below_min_confidence(self):
        result = calculate_entry_size(60, price=0.5, available_margin=1000, sizing=SIZING)
        assert result.should_enter is False
        assert result.entry_mode == "skip"
        assert result.skip_reason == "Confidence 60% below minimum 65%"
        assert result.volume == 0

    def test_skip_without_free_margin(self):
        result = calculate_entry_size(90, price=0.5, available_margin=0, sizing=SIZING)
        assert result.should_enter is False
        assert result.skip_reason == "Insufficient free margin"

    def test_clamped_to_free_margin_reserve(self):
        greedy = PositionSizingConfig(
            leverage=10,
            full_entry_margin_percent=95,
            cautious_entry_margin_percent=10,
            min_entry_confidence=65,
            full_entry_confidence=80,
            max_dca_count=3,
            dca_margin_percent=15,
            max_total_margin_percent=80,
            min_free_margin_percent=20,
        )
        result = calculate_entry_size(90, price=0.5, available_margin=1000, sizing=greedy)
        assert result.margin_to_use == pytest.approx(800.0)

    def test_reports_remaining_capacity(self):
        result = calculate_entry_size(85, price=0.5, available_margin=1000, sizing=SIZING)
        # equity 1200, max 960, headroom 760, 180 per DCA → 4, capped at 3
        assert result.remaining_dca_capacity.dcas_remaining == 3


# ── DCA sizing ───────────────────────────────────────────────────────────


class TestDCASizing:
    """Unit tests for calculate_dca_size() and calculate_dca_capacity()."""

    def test_dca_uses_percent_of_equity(self):
        position = _open_position(margin=200.0, volume=4000.0)
        result = calculate_dca_size(1, 0.45, position, available_margin=800, sizing=SIZING)
        assert result.should_enter is True
        assert result.margin_to_use == pytest.approx(150.0)
        assert result.margin_percent == pytest.approx(15.0)
        assert result.volume == pytest.approx(1500.0 / 0.45)
        assert result.remaining_dca_capacity.dcas_remaining == 2

    def test_dca_capped_by_headroom(self):
        position = _open_position(margin=790.0)
        result = calculate_dca_size(1, 0.45, position, available_margin=210, sizing=SIZING)
        assert result.margin_to_use == pytest.approx(10.0)

    def test_dca_beyond_max_count(self):
        result = calculate_dca_size(4, 0.45, _open_position(), available_margin=800, sizing=SIZING)
        assert result.should_enter is False
        assert result.skip_reason == "Max 3 DCAs reached"

    def test_dca_over_max_utilization(self):
        position = _open_position(margin=850.0)
        result = calculate_dca_size(1, 0.45, position, available_margin=150, sizing=SIZING)
        assert result.should_enter is False
        assert result.skip_reason == "Margin utilization 85% exceeds max 80%"

    def test_dca_without_margin(self):
        position = _open_position(margin=0.0)
        result = calculate_dca_size(1, 0.45, position, available_margin=0, sizing=SIZING)
        assert result.skip_reason == "Insufficient margin for DCA"

    def test_capacity_counts(self):
        assert calculate_dca_capacity(0, 1000, SIZING).dcas_remaining == 3
        capacity = calculate_dca_capacity(600, 400, SIZING)
        assert capacity.margin_available == pytest.approx(200.0)
        assert capacity.margin_per_dca == pytest.approx(150.0)
        assert capacity.dcas_remaining == 1

    def test_capacity_never_negative(self):
        capacity = calculate_dca_capacity(900, 100, SIZING)
        assert capacity.margin_available == 0
        assert capacity.dcas_remaining == 0

    @pytest.mark.parametrize(
        "used, free, status",
        [(100, 900, "healthy"), (400, 600, "moderate"), (700, 300, "high"), (850, 150, "critical")],
    )
    def test_margin_info_status(self, used, free, status):
        info = format_margin_info(_open_position(margin=used), free, SIZING)
        assert info.status == status
        assert info.utilization_percent == pytest.approx(used / 10)


# ── Liquidation ──────────────────────────────────────────────────────────


class TestLiquidation:
    def test_long_at_10x(self):
        """0.2 / 10 = 2 % below the average entry."""
        price, distance = calculate_liquidation_price(0.5, 200, 2000, "long", 10)
        assert price == pytest.approx(0.49)
        assert distance == pytest.approx(2.0)

    def test_short_at_10x(self):
        price, distance = calculate_liquidation_price(0.5, 200, 2000, "short", 10)
        assert price == pytest.approx(0.51)
        assert distance == pytest.approx(2.0)

    def test_non_positive_inputs(self):
        assert calculate_liquidation_price(0, 200, 2000, "long") == (0.0, 0.0)
        assert calculate_liquidation_price(0.5, 0, 2000, "long") == (0.0, 0.0)

    def test_cross_margin_model(self):
        assert calculate_cross_margin_liquidation_price(0.5, 10, "long") == pytest.approx(0.452)
        assert calculate_cross_margin_liquidation_price(0.5, 10, "short") == pytest.approx(0.548)

    def test_cross_margin_rejects_zero_leverage(self):
        with pytest.raises(ValueError, match="leverage"):
            calculate_cross_margin_liquidation_price(0.5, 0, "long")

    def test_distance_from_current_price(self):
        assert liquidation_distance_percent(0.49, 0.5, "long") == pytest.approx(2.0)
        assert liquidation_distance_percent(0.51, 0.5, "short") == pytest.approx(2.0)
        assert liquidation_distance_percent(0.0, 0.5, "long") == 100.0


# ── Position transitions ─────────────────────────────────────────────────


class TestPositionMath:
    def test_avg_entry_price(self):
        entries = [_entry(0.5, 1000, 50), _entry(0.4, 1000, 40)]
        assert calculate_avg_entry_price(entries) == pytest.approx(0.45)
        assert calculate_avg_entry_price([]) == 0.0

    def test_new_avg_price(self):
        assert calculate_new_avg_price(0.5, 1000, 0.4, 3000) == pytest.approx(0.425)

    def test_unrealized_pnl_long(self):
        pnl = calculate_unrealized_pnl(0.55, 0.5, 4000, "long", 10, 200)
        assert pnl.pnl == pytest.approx(200.0)
        assert pnl.pnl_percent == pytest.approx(10.0)
        assert pnl.levered_pnl_percent == pytest.approx(100.0)

    def test_unrealized_pnl_short(self):
        pnl = calculate_unrealized_pnl(0.55, 0.5, 4000, "short", 10, 200)
        assert pnl.pnl == pytest.approx(-200.0)

    def test_zero_notional(self):
        pnl = calculate_unrealized_pnl(0.55, 0.0, 4000, "long", 10, 200)
        assert pnl.pnl == 0.0
        assert pnl.levered_pnl_percent == 0.0


class TestPositionLifecycle:
    def test_open_position(self):
        state = open_position("long", _entry(0.5, 4000, 200), leverage=10)
        assert state.is_open is True
        assert state.phase == "entry"
        assert state.avg_price == 0.5
        assert state.total_volume == 4000
        assert state.liquidation_price == pytest.approx(0.49)
        assert state.hours_remaining == 48
        assert EMPTY_POSITION.phase == "idle"

    def test_open_rejects_zero_volume(self):
        with pytest.raises(ValueError, match="volume"):
            open_position("long", _entry(0.5, 0, 200), leverage=10)

    def test_refresh_tick_updates_pnl_and_timebox(self):
        state = open_position("long", _entry(0.5, 4000, 200), leverage=10)
        state = refresh_tick(state, 0.55, 12 * MS_PER_HOUR, timebox_max_hours=48)
        assert state.unrealized_pnl == pytest.approx(200.0)
        assert state.unrealized_pnl_percent == pytest.approx(10.0)
        assert state.unrealized_pnl_levered_percent == pytest.approx(100.0)
        assert state.high_water_mark_pnl == pytest.approx(200.0)
        assert state.hours_remaining == pytest.approx(36.0)
        assert state.timebox_progress == pytest.approx(0.25)
        assert state.liquidation_distance_percent == pytest.approx((0.55 - 0.49) / 0.55 * 100)

    def test_refresh_tick_tracks_drawdown_from_hwm(self):
        state = open_position("long", _entry(0.5, 4000, 200), leverage=10)
        state = refresh_tick(state, 0.55, MS_PER_HOUR)
        state = refresh_tick(state, 0.52, 2 * MS_PER_HOUR)
        assert state.unrealized_pnl == pytest.approx(80.0)
        assert state.high_water_mark_pnl == pytest.approx(200.0)
        assert state.drawdown_from_hwm == pytest.approx(120.0)
        assert state.drawdown_from_hwm_percent == pytest.approx(60.0)

    def test_refresh_tick_nets_fees(self):
        state = add_fees(open_position("long", _entry(0.5, 4000, 200), leverage=10), 5.0)
        state = refresh_tick(state, 0.55, MS_PER_HOUR)
        assert state.unrealized_pnl == pytest.approx(195.0)

    def test_refresh_tick_ignores_closed_position(self):
        assert refresh_tick(EMPTY_POSITION, 0.5, 0) is EMPTY_POSITION

    def test_timebox_progress_capped(self):
        state = open_position("long", _entry(0.5, 4000, 200), leverage=10)
        state = refresh_tick(state, 0.5, 60 * MS_PER_HOUR, timebox_max_hours=48)
        assert state.timebox_progress == 1.0
        assert state.hours_remaining == 0.0

    def test_timebox_from_entry_is_kept(self):
        state = open_position("long", _entry(0.5, 4000, 200), leverage=10, timebox_max_hours=72)
        state = refresh_tick(state, 0.5, 36 * MS_PER_HOUR)
        assert state.timebox_max_hours == 72
        assert state.timebox_progress == pytest.approx(0.5)
        assert state.hours_remaining == pytest.approx(36.0)

    def test_refresh_tick_timebox_override(self):
        state = open_position("long", _entry(0.5, 4000, 200), leverage=10, timebox_max_hours=72)
        state = refresh_tick(state, 0.5, 36 * MS_PER_HOUR, timebox_max_hours=36)
        assert state.timebox_max_hours == 36
        assert state.timebox_progress == 1.0

    def test_add_entry_recomputes_average(self):
        state = open_position("long", _entry(0.5, 4000, 200), leverage=10)
        dca = _entry(0.45, 10_000 / 3, 150, ts=5 * MS_PER_HOUR, kind="dca", level=1)
        state = add_entry(state, dca, available_margin_before=800, max_dca_count=3)
        assert state.phase == "in_dca"
        assert state.dca_count == 1
        assert len(state.entries) == 2
        assert state.avg_price == pytest.approx(3500 / (4000 + 10_000 / 3))
        assert state.total_margin_used == pytest.approx(350.0)
        assert state.total_margin_percent == pytest.approx(35.0)
        assert state.liquidation_price == pytest.approx(state.avg_price * 0.98)

    def test_add_entry_beyond_max(self):
        state = open_position("long", _entry(0.5, 4000, 200), leverage=10)
        with pytest.raises(ValueError, match="max_dca_count"):
            add_entry(state, _entry(0.45, 1000, 50, kind="dca", level=1), 800, max_dca_count=0)

    def test_transitions_return_new_values(self):
        state = open_position("long", _entry(0.5, 4000, 200), leverage=10)
        watched = mark_phase(state, "exit_watch")
        closed = close_position(watched)
        assert state.phase == "entry"
        assert watched.phase == "exit_watch"
        assert closed.phase == "closed"
        assert closed.is_open is False
        assert closed.entries == state.entries

    def test_mark_phase_rejects_unknown(self):
        with pytest.raises(ValueError, match="phase"):
            mark_phase(EMPTY_POSITION, "sleeping")


# ── Scenario planner ─────────────────────────────────────────────────────


class TestScenario:
    def test_target_average_long(self):
        """1000 @ 0.50, target 0.46 buying at 0.40 → 666.67 more."""
        step = solve_target_average(_open_position(), target_avg=0.46, dca_price=0.40, free_margin=100)
        assert step.dca_volume == pytest.approx(666.6667, rel=1e-4)
        assert step.new_avg_price == pytest.approx(0.46)
        assert step.margin_required == pytest.approx(26.6667, rel=1e-4)
        assert step.liquidation_price == pytest.approx(0.46 * 0.98)
        assert step.breakeven_price == pytest.approx(0.46 * 1.0052)
        assert step.can_afford is True

    def test_target_average_short(self):
        step = solve_target_average(_open_position("short"), target_avg=0.54, dca_price=0.60, free_margin=100)
        assert step.dca_volume == pytest.approx(666.6667, rel=1e-4)
        assert step.breakeven_price == pytest.approx(step.new_avg_price * 0.9948)

    def test_long_cannot_raise_average(self):
        with pytest.raises(ScenarioRejection, match="Cannot raise average"):
            solve_target_average(_open_position(), target_avg=0.55, dca_price=0.40, free_margin=100)

    def test_long_target_below_dca_price(self):
        with pytest.raises(ScenarioRejection, match="Mathematically impossible"):
            solve_target_average(_open_position(), target_avg=0.39, dca_price=0.40, free_margin=100)

    def test_short_cannot_lower_average(self):
        with pytest.raises(ScenarioRejection, match="Cannot lower average"):
            solve_target_average(_open_position("short"), target_avg=0.45, dca_price=0.60, free_margin=100)

    def test_rejects_non_positive_price(self):
        with pytest.raises(ValueError, match="dca_price"):
            solve_target_average(_open_position(), target_avg=0.46, dca_price=0, free_margin=100)

    def test_unaffordable_step(self):
        step = solve_target_average(_open_position(), target_avg=0.46, dca_price=0.40, free_margin=10)
        assert step.can_afford is False

    def test_fee_estimate(self):
        fees = estimate_fees(1000.0, "market", 10)
        assert fees.trading_fee == pytest.approx(2.6)
        assert fees.margin_open_fee == pytest.approx(0.2)
        assert fees.rollover_per_4h == pytest.approx(0.2)
        assert fees.total == pytest.approx(2.8)
        assert estimate_fees(1000.0, "limit", 10).trading_fee == pytest.approx(1.6)

    def test_what_if_buy_by_amount(self):
        step = what_if_buy(_open_position(), dca_price=0.40, free_margin=100, amount=100)
        assert step.dca_volume == pytest.approx(250.0)
        assert step.new_avg_price == pytest.approx(600 / 1250)

    def test_what_if_buy_requires_size(self):
        with pytest.raises(ValueError, match="volume"):
            what_if_buy(_open_position(), dca_price=0.40, free_margin=100)

    def test_multi_level_is_progressive(self):
        plan = plan_multi_level(
            _open_position(), [0.40, 0.45], free_margin=1000, dca_margin_percent=15, volume_per_level=1000,
        )
        assert [s.dca_price for s in plan.steps] == [0.45, 0.40]
        assert plan.steps[0].new_avg_price == pytest.approx(0.475)
        assert plan.steps[1].new_avg_price == pytest.approx(0.45)
        assert plan.total_volume == pytest.approx(2000.0)
        assert plan.total_cost == pytest.approx(850.0)
        assert plan.first_unaffordable_level is None

    def test_multi_level_short_ascending(self):
        plan = plan_multi_level(
            _open_position("short"), [0.60, 0.55], free_margin=1000, dca_margin_percent=15, volume_per_level=100,
        )
        assert [s.dca_price for s in plan.steps] == [0.55, 0.60]

    def test_multi_level_default_sizing(self):
        plan = plan_multi_level(_open_position(), [0.45], free_margin=950, dca_margin_percent=15)
        # equity 1000 → 150 margin → 1500 notional at 0.45
        assert plan.steps[0].dca_volume == pytest.approx(1500 / 0.45)

    def test_requires_open_position(self):
        with pytest.raises(ValueError, match="open position"):
            what_if_buy(EMPTY_POSITION, dca_price=0.40, free_margin=100, volume=10)
