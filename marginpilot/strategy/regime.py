"""Market regime classifier — labels the market from 4H/1H ADX and 1H BB width.

The regime adjusts the entry threshold and the timebox the rest of the
engine uses.  With only one of the two indicator sets the classification
runs on that set alone; with neither there is no regime.
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from marginpilot.models.strategy_config import RegimeConfig
from marginpilot.strategy.models import IndicatorSet

logger = logging.getLogger("marginpilot.strategy")

Regime = Literal["strong_trend", "trending", "ranging", "low_volatility"]
RegimeBasis = Literal["4h+1h", "4h", "1h"]


@dataclass(frozen=True)
class MarketRegimeAnalysis:
    regime: Regime
    confidence: float
    adx: float  # 4H ADX, or 1H ADX when the 4H set is missing
    bb_width_percent: Optional[float]  # 1H BB width; None without a 1H set
    description: str
    adjusted_action_threshold: float
    adjusted_timebox_max_hours: float
    adjusted_timebox_weight: float
    basis: RegimeBasis = "4h+1h"  # which indicator sets the label rests on


def _width_text(bb_width: Optional[float]) -> str:
    return f"{bb_width:.1f}%" if bb_width is not None else "n/a"


def detect_market_regime(
    ind4h: Optional[IndicatorSet],
    ind1h: Optional[IndicatorSet],
    config: Optional[RegimeConfig] = None,
) -> Optional[MarketRegimeAnalysis]:
    """Classify the market regime.

    Precedence: strong_trend > low_volatility > trending > ranging.

    Without a 4H set the 1H ADX stands in for the trend ADX.  Without a
    1H set there is no width, so low_volatility and the 1H trending path
    cannot fire and strong_trend rests on ADX alone.

    Returns:
        ``None`` when both indicator sets are missing.
    """
    if ind4h is None and ind1h is None:
        logger.debug("Regime skipped: no 4H or 1H indicators")
        return None

    config = config or RegimeConfig()
    if ind4h is not None and ind1h is not None:
        basis = "4h+1h"
    elif ind4h is not None:
        basis = "4h"
    else:
        basis = "1h"

    adx = ind4h.adx if ind4h is not None else ind1h.adx
    adx1h = ind1h.adx if ind1h is not None else None
    bb_width = ind1h.bb_width_percent if ind1h is not None else None

    alt_trend = adx1h is not None and bb_width is not None and adx1h >= 25 and bb_width >= 1.2

    if adx >= config.strong_trend_adx and (bb_width is None or bb_width >= 2.0):
        regime = "strong_trend"
        width_part = (bb_width - 2.0) * 10 if bb_width is not None else 0.0
        confidence = min(95.0, 60 + (adx - config.strong_trend_adx) + width_part)
        description = f"Strong trend: ADX {adx:.0f} with {_width_text(bb_width)} BB width"
    elif bb_width is not None and adx < 15 and bb_width < config.low_vol_bb_width:
        regime = "low_volatility"
        confidence = min(90.0, 50 + (15 - adx) * 2 + (config.low_vol_bb_width - bb_width) * 20)
        description = f"Low volatility: ADX {adx:.0f}, BB width {bb_width:.1f}% - tight range"
    elif adx >= config.trending_adx or alt_trend:
        regime = "trending"
        adx_part = (adx - config.trending_adx) * 2 if adx >= config.trending_adx else 0
        alt_part = 15 if alt_trend else 0
        confidence = min(85.0, 50 + adx_part + alt_part)
        adx1h_text = f"{adx1h:.0f}" if adx1h is not None else "n/a"
        description = f"Trending: ADX {adx:.0f}, 1H ADX {adx1h_text}, BB width {_width_text(bb_width)}"
    else:
        regime = "ranging"
        confidence = min(80.0, 40 + abs(20 - adx) * 2)
        description = f"Ranging: ADX {adx:.0f}, BB width {_width_text(bb_width)} - no clear trend"

    if regime == "strong_trend":
        threshold = config.strong_trend_action_threshold
        max_hours = config.strong_trend_max_hours
        weight = config.strong_trend_timebox_weight
    elif regime == "trending":
        threshold = config.trending_action_threshold
        max_hours = config.trending_max_hours
        weight = config.trending_timebox_weight
    else:
        threshold = config.ranging_action_threshold
        max_hours = config.ranging_max_hours
        weight = config.ranging_timebox_weight

    return MarketRegimeAnalysis(
        regime=regime,
        confidence=confidence,
        adx=adx,
        bb_width_percent=bb_width,
        description=description,
        adjusted_action_threshold=threshold,
        adjusted_timebox_max_hours=max_hours,
        adjusted_timebox_weight=weight,
        basis=basis,
    )


def is_high_volatility(analysis: MarketRegimeAnalysis, config: Optional[RegimeConfig] = None) -> bool:
    """True when the 1H BB width exceeds ``highVolBBWidth``; False without a width."""
    config = config or RegimeConfig()
    if analysis.bb_width_percent is None:
        return False
    return analysis.bb_width_percent > config.high_vol_bb_width
