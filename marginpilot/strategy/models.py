"""Market data models — candles, indicator sets, and timeframe snapshots."""

from dataclasses import dataclass
from typing import Literal, Optional


Trend = Literal["bullish", "bearish", "neutral"]
EmaAlignment = Literal["bullish", "bearish", "mixed"]
TrendStrength = Literal["strong", "moderate", "weak"]

# Timeframes the recommendation engine reads, shortest first
TIMEFRAMES: tuple[str, ...] = ("5m", "15m", "1h", "4h", "1d")

INTERVAL_MINUTES: dict[str, int] = {
    "5m": 5,
    "15m": 15,
    "1h": 60,
    "4h": 240,
    "1d": 1440,
}


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar. ``time`` is the bar open in unix seconds."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class CandlePattern:
    """A candlestick pattern detected near the end of a series."""

    name: str  # e.g. "hammer", "bullish_engulfing"
    direction: str  # "bullish", "bearish" or "neutral"
    strength: float  # 0..1
    index: int  # position of the completing candle in the series


@dataclass(frozen=True)
class IndicatorSet:
    """Derived indicators for one timeframe.

    ``trend`` / ``trend_score`` come purely from EMA structure.
    ``entry_score`` / ``bias`` are a legacy timing score and must not be
    read as trend.
    """

    price: float
    rsi: float
    macd: float
    macd_signal: float
    histogram: float
    bb_upper: float
    bb_middle: float
    bb_lower: float
    bb_position: float
    bb_width_percent: float
    atr: float
    volume_ratio: float
    adx: float
    plus_di: float
    minus_di: float
    ema20: float
    ema50: float
    ema200: Optional[float]
    ema20_slope: float
    ema50_slope: float
    price_vs_ema20: float
    price_vs_ema50: float
    price_vs_ema200: Optional[float]
    ema_alignment: EmaAlignment
    trend: Trend
    trend_score: float
    trend_strength: TrendStrength
    entry_score: int
    bias: Trend
    patterns: tuple[CandlePattern, ...] = ()


@dataclass(frozen=True)
class TimeframeSnapshot:
    """Candles plus their indicators (``None`` when data was insufficient)."""

    interval: str
    candles: tuple[Candle, ...]
    indicators: Optional[IndicatorSet]


# ── Chart structure ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class SwingPoint:
    index: int
    price: float
    type: str  # "high" or "low"
    strength: int  # 1-3 confirming candles on each side
    time: int


@dataclass(frozen=True)
class PriceLevel:
    """A support or resistance price level."""

    price: float
    type: str  # "support" or "resistance"
    touches: int
    strength: str  # "strong", "moderate" or "weak"
    sources: tuple[str, ...]  # e.g. ("swing_low", "fib_0.618@tf1h")
    timeframes: tuple[str, ...] = ()


@dataclass(frozen=True)
class TrendStructure:
    direction: str  # "uptrend", "downtrend" or "sideways"
    strength: str
    higher_highs: int
    higher_lows: int
    lower_highs: int
    lower_lows: int
    last_swing_high: Optional[float]
    last_swing_low: Optional[float]
