"""Optional market inputs — order-flow microstructure and liquidation landscape.

These are produced by external collectors; the recommendation engine only
reads them.  ``summarize_liquidation_zones`` turns raw zone estimates into
the squeeze bias the engine consumes.
"""

from dataclasses import dataclass
from typing import Literal, Optional

SqueezeBias = Literal["long_squeeze", "short_squeeze", "neutral"]

# Funding beyond this (per period) marks one side as crowded
FUNDING_CROWDED = 0.0001


@dataclass(frozen=True)
class CvdPoint:
    time: int
    value: float  # cumulative volume delta
    price: float


@dataclass(frozen=True)
class MicrostructureInput:
    """Order-book and trade-flow snapshot."""

    imbalance: float  # -1 (all asks) .. +1 (all bids)
    cvd_history: tuple[CvdPoint, ...] = ()
    spread_percent: float = 0.0
    avg_spread_percent: float = 0.0
    recent_large_buys: int = 0
    recent_large_sells: int = 0


@dataclass(frozen=True)
class LiquidationZone:
    """A price band where leveraged positions are estimated to be liquidated."""

    price_from: float
    price_to: float
    type: str  # "long" (below price) or "short" (above price)
    strength: float  # 0..1, normalised to the strongest zone
    level_count: int = 1


@dataclass(frozen=True)
class LiquidationInput:
    """Liquidation landscape around the current price.

    ``short_squeeze`` means more short liquidations stacked above price
    (upward fuel); ``long_squeeze`` the mirror.
    """

    bias: SqueezeBias
    bias_strength: float  # 0..1
    nearest_upside: Optional[float] = None
    nearest_downside: Optional[float] = None
    funding_rate: Optional[float] = None
    zones: tuple[LiquidationZone, ...] = ()
    upside_strength: float = 0.0
    downside_strength: float = 0.0
    open_interest_change_pct: Optional[float] = None


def summarize_liquidation_zones(
    zones: list[LiquidationZone],
    current_price: float,
    funding_rate: Optional[float] = None,
    open_interest_change_pct: Optional[float] = None,
) -> LiquidationInput:
    """Derive the squeeze bias from liquidation zones and funding.

    The short share of total zone strength decides the bias: above 0.6 is a
    short squeeze, below 0.4 a long squeeze, with strength scaled so a share
    of 0.6 reads 0.2 and a share of 1.0 reads 1.0.  Crowded funding pushes a
    neutral bias toward the crowded side's squeeze.
    """
    above = sorted(
        (z for z in zones if z.type == "short" and z.price_from >= current_price),
        key=lambda z: z.price_from,
    )
    below = sorted(
        (z for z in zones if z.type == "long" and z.price_from <= current_price),
        key=lambda z: -z.price_from,
    )

    short_total = sum(z.strength for z in above)
    long_total = sum(z.strength for z in below)
    total = short_total + long_total

    bias: SqueezeBias = "neutral"
    strength = 0.0
    if total > 0:
        short_ratio = short_total / total
        if short_ratio > 0.6:
            bias = "short_squeeze"
            strength = (short_ratio - 0.5) * 2
        elif short_ratio < 0.4:
            bias = "long_squeeze"
            strength = (0.5 - short_ratio) * 2

    if funding_rate is not None:
        if funding_rate > FUNDING_CROWDED and bias != "long_squeeze":
            strength = min(1.0, strength + abs(funding_rate) * 100)
            if bias == "neutral":
                bias = "long_squeeze"
        elif funding_rate < -FUNDING_CROWDED and bias != "short_squeeze":
            strength = min(1.0, strength + abs(funding_rate) * 100)
            if bias == "neutral":
                bias = "short_squeeze"

    return LiquidationInput(
        bias=bias,
        bias_strength=strength,
        nearest_upside=above[0].price_from if above else None,
        nearest_downside=below[0].price_from if below else None,
        funding_rate=funding_rate,
        zones=tuple(above + below),
        upside_strength=short_total,
        downside_strength=long_total,
        open_interest_change_pct=open_interest_change_pct,
    )
