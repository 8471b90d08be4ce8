"""Technical indicators — EMA, RSI, MACD, Bollinger Bands, ATR, ADX, volume ratio.

Pure functions, no I/O. Functions return ``None`` when the input is too
short to produce a value.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from marginpilot.strategy.models import Candle, IndicatorSet
from marginpilot.strategy.patterns import detect_candle_patterns

logger = logging.getLogger("marginpilot.strategy")

MIN_CANDLES = 50
MAX_CANDLES = 720


@dataclass(frozen=True)
class MacdResult:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float
    position: float  # 0 = lower band, 1 = upper band
    width_percent: float


@dataclass(frozen=True)
class AdxResult:
    adx: float
    plus_di: float
    minus_di: float


@dataclass(frozen=True)
class TrendScore:
    score: float
    trend: str
    strength: str
    alignment: str


# ── EMA ──────────────────────────────────────────────────────────────────


def calculate_ema_series(values: list[float], period: int) -> list[float]:
    """Calculate an Exponential Moving Average series.

    Seeded with the SMA of the first *period* values, then
    ``EMA = (x - prev) × k + prev`` with ``k = 2 / (period + 1)``.

    Returns a list the same length as *values* with ``nan`` before the
    seed, or an empty list when fewer than *period* values are given.
    """
    if len(values) < period:
        return []

    k = 2.0 / (period + 1)
    ema: list[float] = [float("nan")] * len(values)
    ema[period - 1] = sum(values[:period]) / period

    for i in range(period, len(values)):
        ema[i] = (values[i] - ema[i - 1]) * k + ema[i - 1]

    return ema


def calculate_ema_slope(series: list[float], lookback: int = 5) -> float:
    """Percent change per candle of an EMA series over *lookback* candles."""
    valid = [v for v in series if not math.isnan(v)]
    if len(valid) < lookback + 1:
        return 0.0
    past = valid[-lookback - 1]
    if past == 0:
        return 0.0
    return (valid[-1] - past) / past * 100 / lookback


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(closes: list[float], period: int = 14) -> Optional[float]:
    """Relative Strength Index with Wilder smoothing.

    The first average gain/loss is the SMA of the first *period* deltas.
    Returns 100 when there are no losses, ``None`` with fewer than
    ``period + 1`` closes.
    """
    if len(closes) < period + 1:
        return None

    changes = np.diff(np.asarray(closes, dtype=float))
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    avg_gain = float(gains[:period].mean())
    avg_loss = float(losses[:period].mean())
    for i in range(period, len(changes)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


# ── MACD ─────────────────────────────────────────────────────────────────


def calculate_macd(
    closes: list[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> Optional[MacdResult]:
    """MACD line, signal line and histogram of the latest close.

    Needs at least ``slow + signal`` closes. The MACD line starts at index
    ``slow - 1``; the signal is an EMA of that line and
    ``histogram = macd - signal``.
    """
    if len(closes) < slow + signal:
        return None

    ema_fast = calculate_ema_series(closes, fast)
    ema_slow = calculate_ema_series(closes, slow)
    macd_line = [ema_fast[i] - ema_slow[i] for i in range(slow - 1, len(closes))]

    signal_line = calculate_ema_series(macd_line, signal)
    if not signal_line:
        return None

    macd = macd_line[-1]
    sig = signal_line[-1]
    return MacdResult(macd=macd, signal=sig, histogram=macd - sig)


# ── Bollinger Bands ──────────────────────────────────────────────────────


def calculate_bollinger(
    closes: list[float],
    period: int = 20,
    std_mult: float = 2.0,
) -> Optional[BollingerBands]:
    """Bollinger Bands over the last *period* closes (population stdev)."""
    if len(closes) < period:
        return None

    window = np.asarray(closes[-period:], dtype=float)
    middle = float(window.mean())
    std = float(window.std())
    upper = middle + std_mult * std
    lower = middle - std_mult * std

    price = closes[-1]
    width = upper - lower
    position = (price - lower) / width if width > 0 else 0.5
    position = max(0.0, min(1.0, position))
    width_percent = width / price * 100 if price > 0 else 0.0

    return BollingerBands(
        upper=upper,
        middle=middle,
        lower=lower,
        position=position,
        width_percent=width_percent,
    )


# ── ATR ──────────────────────────────────────────────────────────────────


def _true_ranges(candles: list[Candle]) -> list[float]:
    return [
        max(
            candles[i].high - candles[i].low,
            abs(candles[i].high - candles[i - 1].close),
            abs(candles[i].low - candles[i - 1].close),
        )
        for i in range(1, len(candles))
    ]


def calculate_atr(candles: list[Candle], period: int = 14) -> Optional[float]:
    """Average True Range with Wilder smoothing.

    TR = max(high - low, |high - prev_close|, |low - prev_close|). The first
    ATR is the mean of the first *period* true ranges.
    """
    if len(candles) < period + 1:
        return None

    tr = _true_ranges(candles)
    atr = sum(tr[:period]) / period
    for value in tr[period:]:
        atr = (atr * (period - 1) + value) / period
    return atr


# ── ADX ──────────────────────────────────────────────────────────────────


def calculate_adx(candles: list[Candle], period: int = 14) -> Optional[AdxResult]:
    """Average Directional Index with +DI / -DI (Wilder).

    Requires at least ``2 × period + 1`` candles.
    """
    if len(candles) < 2 * period + 1:
        return None

    tr = _true_ranges(candles)
    plus_dm: list[float] = []
    minus_dm: list[float] = []
    for i in range(1, len(candles)):
        up = candles[i].high - candles[i - 1].high
        down = candles[i - 1].low - candles[i].low
        plus_dm.append(up if up > down and up > 0 else 0.0)
        minus_dm.append(down if down > up and down > 0 else 0.0)

    s_tr = sum(tr[:period])
    s_plus = sum(plus_dm[:period])
    s_minus = sum(minus_dm[:period])

    def _di() -> tuple[float, float, float]:
        if s_tr == 0:
            return 0.0, 0.0, 0.0
        pdi = 100 * s_plus / s_tr
        mdi = 100 * s_minus / s_tr
        total = pdi + mdi
        dx = 100 * abs(pdi - mdi) / total if total > 0 else 0.0
        return pdi, mdi, dx

    plus_di, minus_di, dx = _di()
    dx_values = [dx]
    for i in range(period, len(tr)):
        s_tr = s_tr - s_tr / period + tr[i]
        s_plus = s_plus - s_plus / period + plus_dm[i]
        s_minus = s_minus - s_minus / period + minus_dm[i]
        plus_di, minus_di, dx = _di()
        dx_values.append(dx)

    adx = sum(dx_values[:period]) / period
    for value in dx_values[period:]:
        adx = (adx * (period - 1) + value) / period

    return AdxResult(adx=adx, plus_di=plus_di, minus_di=minus_di)


# ── Volume ───────────────────────────────────────────────────────────────


def calculate_volume_ratio(volumes: list[float], period: int = 20) -> float:
    """Current volume over the mean of the previous *period* volumes.

    The current bar is excluded from the average. Returns 1.0 when data is
    short or the average is zero.
    """
    if len(volumes) < period + 1:
        return 1.0
    avg = float(np.mean(volumes[-period - 1:-1]))
    return volumes[-1] / avg if avg > 0 else 1.0


# ── Trend score ──────────────────────────────────────────────────────────


def calculate_trend_score(
    price: float,
    ema20: float,
    ema50: float,
    ema200: Optional[float],
    ema20_slope: float,
    ema50_slope: float,
) -> TrendScore:
    """Score EMA structure in [-100, 100] and derive trend labels.

    ±20 for price above/below each available EMA, ±25 for a perfect stack,
    ±8 for the EMA20 slope beyond ±0.05 %/candle, ±7 for the EMA50 slope
    beyond ±0.03 %/candle.
    """
    score = 0.0
    for ema in (ema20, ema50, ema200):
        if ema is None:
            continue
        if price > ema:
            score += 20
        elif price < ema:
            score -= 20

    if ema200 is not None:
        bull_stack = ema20 > ema50 > ema200
        bear_stack = ema20 < ema50 < ema200
    else:
        bull_stack = price > ema20 > ema50
        bear_stack = price < ema20 < ema50
    alignment = "bullish" if bull_stack else "bearish" if bear_stack else "mixed"
    if bull_stack:
        score += 25
    elif bear_stack:
        score -= 25

    if ema20_slope > 0.05:
        score += 8
    elif ema20_slope < -0.05:
        score -= 8
    if ema50_slope > 0.03:
        score += 7
    elif ema50_slope < -0.03:
        score -= 7

    score = max(-100.0, min(100.0, score))

    if score >= 25:
        trend = "bullish"
    elif score <= -25:
        trend = "bearish"
    else:
        trend = "neutral"

    magnitude = abs(score)
    if magnitude >= 60:
        strength = "strong"
    elif magnitude >= 35:
        strength = "moderate"
    else:
        strength = "weak"

    return TrendScore(score=score, trend=trend, strength=strength, alignment=alignment)


def calculate_entry_score(rsi: float, macd: float, bb_position: float) -> tuple[int, str]:
    """Legacy timing score and bias (not a trend measure)."""
    score = 0
    if rsi < 35:
        score += 2
    elif rsi < 45:
        score += 1
    elif rsi > 65:
        score -= 2
    elif rsi > 55:
        score -= 1

    if macd > 0:
        score += 1
    elif macd < 0:
        score -= 1

    if bb_position < 0.3:
        score += 1
    elif bb_position > 0.7:
        score -= 1

    if score >= 2:
        bias = "bullish"
    elif score <= -2:
        bias = "bearish"
    else:
        bias = "neutral"
    return score, bias


def _pct_from(price: float, reference: float) -> float:
    return (price - reference) / reference * 100 if reference else 0.0


# ── Full indicator set ───────────────────────────────────────────────────


def calculate_indicators(candles: list[Candle]) -> Optional[IndicatorSet]:
    """Compute the full :class:`IndicatorSet` for a candle series.

    Uses the most recent 720 candles. Returns ``None`` with fewer than 50.
    """
    if len(candles) < MIN_CANDLES:
        logger.debug("Insufficient data for indicators: %d candles", len(candles))
        return None

    data = list(candles[-MAX_CANDLES:])
    closes = [c.close for c in data]
    volumes = [c.volume for c in data]
    price = closes[-1]

    rsi = calculate_rsi(closes)
    macd = calculate_macd(closes)
    bands = calculate_bollinger(closes)
    atr = calculate_atr(data)
    adx = calculate_adx(data)
    if rsi is None or macd is None or bands is None or atr is None or adx is None:
        return None

    ema20_series = calculate_ema_series(closes, 20)
    ema50_series = calculate_ema_series(closes, 50)
    ema200_series = calculate_ema_series(closes, 200)
    ema20 = ema20_series[-1]
    ema50 = ema50_series[-1]
    ema200 = ema200_series[-1] if ema200_series else None

    ema20_slope = calculate_ema_slope(ema20_series)
    ema50_slope = calculate_ema_slope(ema50_series)
    trend = calculate_trend_score(price, ema20, ema50, ema200, ema20_slope, ema50_slope)
    entry_score, bias = calculate_entry_score(rsi, macd.macd, bands.position)

    return IndicatorSet(
        price=price,
        rsi=rsi,
        macd=macd.macd,
        macd_signal=macd.signal,
        histogram=macd.histogram,
        bb_upper=bands.upper,
        bb_middle=bands.middle,
        bb_lower=bands.lower,
        bb_position=bands.position,
        bb_width_percent=bands.width_percent,
        atr=atr,
        volume_ratio=calculate_volume_ratio(volumes),
        adx=adx.adx,
        plus_di=adx.plus_di,
        minus_di=adx.minus_di,
        ema20=ema20,
        ema50=ema50,
        ema200=ema200,
        ema20_slope=ema20_slope,
        ema50_slope=ema50_slope,
        price_vs_ema20=_pct_from(price, ema20),
        price_vs_ema50=_pct_from(price, ema50),
        price_vs_ema200=_pct_from(price, ema200) if ema200 is not None else None,
        ema_alignment=trend.alignment,
        trend=trend.trend,
        trend_score=trend.score,
        trend_strength=trend.strength,
        entry_score=entry_score,
        bias=bias,
        patterns=tuple(detect_candle_patterns(data, atr)),
    )


def calculate_btc_trend(change_percent: float) -> str:
    """Classify a BTC percent change as ``bull``, ``bear`` or ``neut`` (±0.5 %)."""
    if change_percent > 0.5:
        return "bull"
    if change_percent < -0.5:
        return "bear"
    return "neut"
