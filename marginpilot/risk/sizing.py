"""Position sizing — margin-aware entry and DCA sizing, pure math, no I/O.

Rules:

* Initial entry uses ``fullEntryMarginPercent`` of available margin at or
  above ``fullEntryConfidence``, ``cautiousEntryMarginPercent`` above
  ``minEntryConfidence``, and is skipped below that.
* ``minFreeMarginPercent`` of the available margin always stays unused.
* DCAs are capped by ``maxDCACount`` and by ``maxTotalMarginPercent`` of
  total equity (free margin + margin in use).
"""

from dataclasses import dataclass
from typing import Optional

from marginpilot.models.strategy_config import PositionSizingConfig
from marginpilot.risk.position import PositionState


@dataclass(frozen=True)
class DCACapacity:
    dcas_remaining: int
    margin_available: float
    margin_per_dca: float


@dataclass(frozen=True)
class PositionSizingResult:
    should_enter: bool
    entry_mode: str  # "full", "cautious" or "skip"
    margin_to_use: float
    margin_percent: float
    position_value: float
    volume: float
    remaining_dca_capacity: DCACapacity
    skip_reason: Optional[str] = None


@dataclass(frozen=True)
class MarginInfo:
    utilization_percent: float
    free_margin: float
    dca_capacity: DCACapacity
    status: str  # "healthy", "moderate", "high" or "critical"


_NO_CAPACITY = DCACapacity(dcas_remaining=0, margin_available=0.0, margin_per_dca=0.0)


def _skip(reason: str, capacity: DCACapacity = _NO_CAPACITY) -> PositionSizingResult:
    return PositionSizingResult(
        should_enter=False,
        entry_mode="skip",
        margin_to_use=0.0,
        margin_percent=0.0,
        position_value=0.0,
        volume=0.0,
        remaining_dca_capacity=capacity,
        skip_reason=reason,
    )


def calculate_dca_capacity(
    margin_used: float,
    free_margin: float,
    sizing: PositionSizingConfig,
) -> DCACapacity:
    """How many DCA entries fit in the headroom below ``maxTotalMarginPercent``."""
    equity = margin_used + free_margin
    max_margin = equity * sizing.max_total_margin_percent / 100
    available = max(0.0, max_margin - margin_used)
    per_dca = equity * sizing.dca_margin_percent / 100
    remaining = min(sizing.max_dca_count, int(available // per_dca)) if per_dca > 0 else 0
    return DCACapacity(dcas_remaining=remaining, margin_available=available, margin_per_dca=per_dca)


def calculate_entry_size(
    confidence: float,
    price: float,
    available_margin: float,
    sizing: PositionSizingConfig,
    size_multiplier: float = 1.0,
) -> PositionSizingResult:
    """Size the initial entry of a position.

    Args:
        confidence: Signal confidence, 0–100.
        price: Current price of the asset.
        available_margin: Free margin in quote currency.
        sizing: The strategy's position-sizing section.
        size_multiplier: Scales the margin after the free-margin cap; the
            knife gate passes 0.4-0.8 while a knife is being confirmed.

    Returns:
        A ``PositionSizingResult``; ``should_enter`` is ``False`` with a
        ``skip_reason`` below the minimum confidence or without free margin.
    """
    if confidence < sizing.min_entry_confidence:
        return _skip(
            f"Confidence {confidence:.0f}% below minimum {sizing.min_entry_confidence:.0f}%",
            calculate_dca_capacity(0.0, available_margin, sizing),
        )

    full = confidence >= sizing.full_entry_confidence
    target_percent = sizing.full_entry_margin_percent if full else sizing.cautious_entry_margin_percent

    margin = available_margin * target_percent / 100
    max_allowed = available_margin * (1 - sizing.min_free_margin_percent / 100)
    margin = min(margin, max_allowed)
    margin *= size_multiplier

    if margin <= 0:
        return _skip("Insufficient free margin", calculate_dca_capacity(0.0, available_margin, sizing))

    value = margin * sizing.leverage
    return PositionSizingResult(
        should_enter=True,
        entry_mode="full" if full else "cautious",
        margin_to_use=margin,
        margin_percent=margin / available_margin * 100 if available_margin > 0 else 0.0,
        position_value=value,
        volume=value / price if price > 0 else 0.0,
        remaining_dca_capacity=calculate_dca_capacity(margin, available_margin, sizing),
    )


def calculate_dca_size(
    level: int,
    price: float,
    position: PositionState,
    available_margin: float,
    sizing: PositionSizingConfig,
) -> PositionSizingResult:
    """Size DCA number *level* (1-based) for an open position.

    Margin is ``dcaMarginPercent`` of total equity, capped by the headroom
    below ``maxTotalMarginPercent`` and by the free-margin reserve.
    """
    if level > sizing.max_dca_count:
        return _skip(f"Max {sizing.max_dca_count} DCAs reached")

    equity = available_margin + position.total_margin_used
    utilization = position.total_margin_used / equity * 100 if equity > 0 else 0.0
    if utilization >= sizing.max_total_margin_percent:
        return _skip(
            f"Margin utilization {utilization:.0f}% exceeds max {sizing.max_total_margin_percent:.0f}%"
        )

    target = equity * sizing.dca_margin_percent / 100
    headroom = min(
        equity * sizing.max_total_margin_percent / 100 - position.total_margin_used,
        available_margin * (1 - sizing.min_free_margin_percent / 100),
    )
    margin = min(target, headroom)
    if margin <= 0:
        return _skip("Insufficient margin for DCA")

    value = margin * sizing.leverage
    capacity = calculate_dca_capacity(position.total_margin_used + margin, available_margin - margin, sizing)
    capacity = DCACapacity(
        dcas_remaining=max(0, sizing.max_dca_count - level),
        margin_available=capacity.margin_available,
        margin_per_dca=capacity.margin_per_dca,
    )
    return PositionSizingResult(
        should_enter=True,
        entry_mode="full",
        margin_to_use=margin,
        margin_percent=margin / equity * 100 if equity > 0 else 0.0,
        position_value=value,
        volume=value / price if price > 0 else 0.0,
        remaining_dca_capacity=capacity,
    )


def format_margin_info(
    position: PositionState,
    available_margin: float,
    sizing: PositionSizingConfig,
) -> MarginInfo:
    """Margin utilisation summary: critical ≥ 80 %, high ≥ 60 %, moderate ≥ 30 %."""
    equity = position.total_margin_used + available_margin
    utilization = position.total_margin_used / equity * 100 if equity > 0 else 0.0

    if utilization >= 80:
        status = "critical"
    elif utilization >= 60:
        status = "high"
    elif utilization >= 30:
        status = "moderate"
    else:
        status = "healthy"

    return MarginInfo(
        utilization_percent=utilization,
        free_margin=available_margin,
        dca_capacity=calculate_dca_capacity(position.total_margin_used, available_margin, sizing),
        status=status,
    )
