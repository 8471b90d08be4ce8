"""Position lifecycle — pure state transitions, no I/O.

A ``PositionState`` is an immutable value.  Every transition
(``open_position``, ``add_entry``, ``refresh_tick``, ``mark_phase``,
``close_position``) returns a new state; the caller owns the single
current value per position.

Phases::

    idle → entry → dca_watch / in_dca → exit_watch / exiting → closed
"""

import logging
from dataclasses import dataclass, replace
from typing import Literal, Optional, Sequence

from marginpilot.risk.liquidation import (
    Direction,
    calculate_liquidation_price,
    liquidation_distance_percent,
)

logger = logging.getLogger("marginpilot.risk")

Phase = Literal["idle", "entry", "dca_watch", "in_dca", "exit_watch", "exiting", "closed"]

PHASES: tuple[str, ...] = ("idle", "entry", "dca_watch", "in_dca", "exit_watch", "exiting", "closed")

MS_PER_HOUR = 3_600_000
DEFAULT_TIMEBOX_HOURS = 48.0


@dataclass(frozen=True)
class EntryRecord:
    """One fill: the initial entry or a DCA."""

    id: str
    kind: str  # "initial" or "dca"
    dca_level: int  # 0 for the initial entry
    price: float
    volume: float
    margin_used: float
    margin_percent: float
    timestamp: int  # unix ms
    confidence: float
    mode: str  # "full" or "cautious"
    reason: str = ""


@dataclass(frozen=True)
class PnL:
    pnl: float
    pnl_percent: float  # of notional
    levered_pnl: float
    levered_pnl_percent: float  # of margin


@dataclass(frozen=True)
class PositionState:
    is_open: bool
    direction: Optional[Direction]
    phase: Phase
    entries: tuple[EntryRecord, ...] = ()
    avg_price: float = 0.0
    total_volume: float = 0.0
    total_margin_used: float = 0.0
    total_margin_percent: float = 0.0
    dca_count: int = 0
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    unrealized_pnl_levered: float = 0.0
    unrealized_pnl_levered_percent: float = 0.0
    high_water_mark_pnl: float = 0.0
    drawdown_from_hwm: float = 0.0
    drawdown_from_hwm_percent: float = 0.0
    opened_at: Optional[int] = None  # unix ms
    time_in_trade_ms: int = 0
    timebox_max_hours: float = DEFAULT_TIMEBOX_HOURS
    hours_remaining: float = DEFAULT_TIMEBOX_HOURS
    timebox_progress: float = 0.0  # 0..1
    liquidation_price: float = 0.0
    liquidation_distance_percent: float = 100.0
    leverage: float = 10.0
    total_fees: float = 0.0


EMPTY_POSITION = PositionState(is_open=False, direction=None, phase="idle")


# ── Math helpers ─────────────────────────────────────────────────────────


def calculate_avg_entry_price(entries: Sequence[EntryRecord]) -> float:
    """Volume-weighted average price of *entries*; 0 when there are none."""
    total_volume = sum(e.volume for e in entries)
    if total_volume <= 0:
        return 0.0
    return sum(e.price * e.volume for e in entries) / total_volume


def calculate_new_avg_price(
    current_avg: float,
    current_volume: float,
    new_price: float,
    new_volume: float,
) -> float:
    """Average entry after adding *new_volume* at *new_price*."""
    total = current_volume + new_volume
    if total <= 0:
        return 0.0
    return (current_avg * current_volume + new_price * new_volume) / total


def calculate_unrealized_pnl(
    current_price: float,
    avg_price: float,
    volume: float,
    direction: Direction,
    leverage: float,
    margin_used: float,
) -> PnL:
    """Unrealised P&L of a position.

    ``pnl_percent`` is relative to the notional (``avg_price × volume``);
    ``levered_pnl_percent`` is relative to the margin committed.  Zero
    notional gives zero P&L.
    """
    if avg_price <= 0 or volume <= 0:
        return PnL(0.0, 0.0, 0.0, 0.0)

    diff = current_price - avg_price if direction == "long" else avg_price - current_price
    pnl = diff * volume
    notional = avg_price * volume
    return PnL(
        pnl=pnl,
        pnl_percent=pnl / notional * 100,
        levered_pnl=pnl,
        levered_pnl_percent=pnl / margin_used * 100 if margin_used > 0 else 0.0,
    )


# ── Transitions ──────────────────────────────────────────────────────────


def open_position(
    direction: Direction,
    entry: EntryRecord,
    leverage: float,
    timebox_max_hours: float = DEFAULT_TIMEBOX_HOURS,
) -> PositionState:
    """idle → entry.  The first fill defines the average price.

    *timebox_max_hours* is the timebox in force at entry, normally the
    regime-adjusted hours or the strategy's ``timebox.maxHours``.
    """
    if entry.volume <= 0 or entry.price <= 0:
        raise ValueError(f"entry price and volume must be positive, got {entry.price}, {entry.volume}")

    notional = entry.margin_used * leverage
    liq_price, liq_distance = calculate_liquidation_price(
        entry.price, entry.margin_used, notional, direction, leverage
    )
    logger.info(
        "Opened %s @ %.5f vol=%.4f margin=%.2f (%s)",
        direction.upper(), entry.price, entry.volume, entry.margin_used, entry.mode,
    )
    return PositionState(
        is_open=True,
        direction=direction,
        phase="entry",
        entries=(entry,),
        avg_price=entry.price,
        total_volume=entry.volume,
        total_margin_used=entry.margin_used,
        total_margin_percent=entry.margin_percent,
        opened_at=entry.timestamp,
        timebox_max_hours=timebox_max_hours,
        hours_remaining=timebox_max_hours,
        liquidation_price=liq_price,
        liquidation_distance_percent=liq_distance,
        leverage=leverage,
    )


def add_entry(
    state: PositionState,
    entry: EntryRecord,
    available_margin_before: float,
    max_dca_count: int,
) -> PositionState:
    """Apply a DCA fill to an open position.

    Args:
        state: The open position.
        entry: The DCA fill.
        available_margin_before: Free margin before this fill.
        max_dca_count: The strategy's DCA cap.

    Raises:
        ValueError: If the position is not open or the cap would be exceeded.
    """
    if not state.is_open or state.direction is None:
        raise ValueError("cannot add an entry to a position that is not open")
    if state.dca_count >= max_dca_count:
        raise ValueError(f"dca_count would exceed max_dca_count ({max_dca_count})")

    avg = calculate_new_avg_price(state.avg_price, state.total_volume, entry.price, entry.volume)
    volume = state.total_volume + entry.volume
    margin = state.total_margin_used + entry.margin_used
    equity = available_margin_before + state.total_margin_used
    liq_price, liq_distance = calculate_liquidation_price(
        avg, margin, margin * state.leverage, state.direction, state.leverage
    )

    logger.info(
        "DCA %d @ %.5f vol=%.4f → avg %.5f, margin %.2f",
        state.dca_count + 1, entry.price, entry.volume, avg, margin,
    )
    return replace(
        state,
        phase="in_dca",
        entries=state.entries + (entry,),
        avg_price=avg,
        total_volume=volume,
        total_margin_used=margin,
        total_margin_percent=margin / equity * 100 if equity > 0 else 0.0,
        dca_count=state.dca_count + 1,
        liquidation_price=liq_price,
        liquidation_distance_percent=liq_distance,
    )


def refresh_tick(
    state: PositionState,
    current_price: float,
    now_ms: int,
    timebox_max_hours: Optional[float] = None,
) -> PositionState:
    """Recompute P&L, high-water mark, timebox and liquidation distance.

    P&L is net of ``total_fees``.  A closed or idle position is returned
    unchanged.  *timebox_max_hours* replaces the position's timebox when
    given (e.g. after a regime change); otherwise the stored one applies.
    """
    if not state.is_open or state.direction is None:
        return state

    raw = calculate_unrealized_pnl(
        current_price, state.avg_price, state.total_volume,
        state.direction, state.leverage, state.total_margin_used,
    )
    pnl = raw.pnl - state.total_fees
    notional = state.avg_price * state.total_volume
    pnl_percent = pnl / notional * 100 if notional > 0 else 0.0
    levered_percent = pnl / state.total_margin_used * 100 if state.total_margin_used > 0 else 0.0

    hwm = max(state.high_water_mark_pnl, pnl)
    drawdown = hwm - pnl if hwm > 0 else 0.0
    drawdown_percent = drawdown / hwm * 100 if hwm > 0 else 0.0

    time_in_trade = max(0, now_ms - state.opened_at) if state.opened_at is not None else 0
    hours = time_in_trade / MS_PER_HOUR
    if timebox_max_hours is None:
        timebox_max_hours = state.timebox_max_hours
    if timebox_max_hours > 0:
        hours_remaining = max(0.0, timebox_max_hours - hours)
        progress = min(1.0, hours / timebox_max_hours)
    else:
        hours_remaining = 0.0
        progress = 1.0

    return replace(
        state,
        unrealized_pnl=pnl,
        unrealized_pnl_percent=pnl_percent,
        unrealized_pnl_levered=pnl,
        unrealized_pnl_levered_percent=levered_percent,
        high_water_mark_pnl=hwm,
        drawdown_from_hwm=drawdown,
        drawdown_from_hwm_percent=drawdown_percent,
        time_in_trade_ms=time_in_trade,
        timebox_max_hours=timebox_max_hours,
        hours_remaining=hours_remaining,
        timebox_progress=progress,
        liquidation_distance_percent=liquidation_distance_percent(
            state.liquidation_price, current_price, state.direction
        ),
    )


def add_fees(state: PositionState, fees: float) -> PositionState:
    """Accumulate trading, opening or rollover fees into the position."""
    if fees < 0:
        raise ValueError(f"fees must be non-negative, got {fees}")
    return replace(state, total_fees=state.total_fees + fees)


def mark_phase(state: PositionState, phase: Phase) -> PositionState:
    if phase not in PHASES:
        raise ValueError(f"unknown phase {phase!r}")
    return replace(state, phase=phase)


def close_position(state: PositionState) -> PositionState:
    """Any phase → closed.  History and final P&L are kept."""
    logger.info(
        "Closed %s, P&L %.2f after %.1fh",
        (state.direction or "-").upper(), state.unrealized_pnl, state.time_in_trade_ms / MS_PER_HOUR,
    )
    return replace(state, is_open=False, phase="closed")
