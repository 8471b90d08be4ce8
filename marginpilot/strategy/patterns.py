"""Candlestick pattern detection, scaled by ATR and read in context.

A body smaller than ``MIN_BODY_ATR × ATR`` is treated as noise and never
forms a directional body pattern.  Each candidate is scored against the
candles that precede it:

* prior trend: reversal patterns gain strength when they follow the move
  they reverse, and hammer-shaped candles after a rally read as hanging men;
* volume: a completing candle at ≥ 1.5× / 2× the context average adds
  0.05 / 0.10;
* volatility: a single candle whose range is > 2× / 3× the context average
  loses 0.05 / 0.10.
"""

from typing import Optional

from marginpilot.strategy.models import Candle, CandlePattern

MIN_BODY_ATR = 0.3
SCAN_WINDOW = 10
CONTEXT_WINDOW = 14
TREND_LOOKBACK = 5


# ── Candle geometry ──────────────────────────────────────────────────────


def _body(c: Candle) -> float:
    return abs(c.close - c.open)


def _range(c: Candle) -> float:
    return c.high - c.low


def _upper_wick(c: Candle) -> float:
    return c.high - max(c.open, c.close)


def _lower_wick(c: Candle) -> float:
    return min(c.open, c.close) - c.low


def _body_top(c: Candle) -> float:
    return max(c.open, c.close)


def _body_bottom(c: Candle) -> float:
    return min(c.open, c.close)


def _is_bull(c: Candle) -> bool:
    return c.close > c.open


def _is_bear(c: Candle) -> bool:
    return c.close < c.open


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _scaled(value: float, atr: float) -> float:
    """Map a price distance to a 0..1 strength, one ATR → 0.5."""
    if atr <= 0:
        return 0.5
    return _clamp(value / atr * 0.5)


def _too_small(body: float, atr: float) -> bool:
    return atr > 0 and body < MIN_BODY_ATR * atr


# ── Context ──────────────────────────────────────────────────────────────


def _prior_trend(context: list[Candle]) -> float:
    """Short-term trend before a pattern; positive means rising.

    Net close-to-close move (percent) over the last five context candles
    plus twice the bull/bear candle balance.
    """
    if len(context) < 2:
        return 0.0
    window = context[-TREND_LOOKBACK:]
    first, last = window[0], window[-1]
    if first.close <= 0:
        return 0.0
    move = (last.close - first.close) / first.close
    balance = sum(1 for c in window if _is_bull(c)) - sum(1 for c in window if _is_bear(c))
    return move * 100 + balance / len(window) * 2


def _volume_confirmation(curr: Candle, context: list[Candle]) -> float:
    if not context or curr.volume <= 0:
        return 0.0
    avg = sum(c.volume for c in context) / len(context)
    if avg <= 0:
        return 0.0
    ratio = curr.volume / avg
    if ratio >= 2.0:
        return 0.1
    if ratio >= 1.5:
        return 0.05
    return 0.0


def _volatility_penalty(curr: Candle, context: list[Candle]) -> float:
    if len(context) < 3:
        return 0.0
    avg = sum(_range(c) for c in context) / len(context)
    if avg <= 0:
        return 0.0
    ratio = _range(curr) / avg
    if ratio > 3.0:
        return -0.1
    if ratio > 2.0:
        return -0.05
    return 0.0


def _avg_body(context: list[Candle]) -> float:
    if not context:
        return 0.0
    return sum(_body(c) for c in context) / len(context)


# ── Single-candle patterns ───────────────────────────────────────────────


def _single_candle_patterns(c: Candle, index: int, atr: float, context: list[Candle]) -> list[CandlePattern]:
    rng = _range(c)
    if rng <= 0 or (atr > 0 and rng < MIN_BODY_ATR * atr):
        return []

    body = _body(c)
    upper = _upper_wick(c)
    lower = _lower_wick(c)
    found: list[CandlePattern] = []

    if body / rng < 0.1:
        found.append(CandlePattern("doji", "neutral", 0.3, index))
        return found

    trend = _prior_trend(context)
    adjust = _volume_confirmation(c, context) + _volatility_penalty(c, context)

    if lower > 2 * body and upper < 0.5 * body:
        if trend > 2:
            bonus = 0.1 if trend > 3 else 0.0
            found.append(CandlePattern("hanging_man", "bearish", _clamp(_scaled(lower, atr) + bonus + adjust), index))
        else:
            bonus = 0.1 if trend < -2 else 0.0
            found.append(CandlePattern("hammer", "bullish", _clamp(_scaled(lower, atr) + bonus + adjust), index))
    elif upper > 2 * body and lower < 0.5 * body:
        if trend < -2:
            found.append(CandlePattern("inverted_hammer", "bullish", _clamp(_scaled(upper, atr) + 0.1 + adjust), index))
        else:
            bonus = 0.1 if trend > 2 else 0.0
            found.append(CandlePattern("shooting_star", "bearish", _clamp(_scaled(upper, atr) + bonus + adjust), index))

    # Pin bars: one wick at least two thirds of the range
    if lower >= rng * 2 / 3 and body <= rng / 3:
        found.append(CandlePattern("bullish_pin_bar", "bullish", _clamp(_scaled(lower, atr) + adjust), index))
    elif upper >= rng * 2 / 3 and body <= rng / 3:
        found.append(CandlePattern("bearish_pin_bar", "bearish", _clamp(_scaled(upper, atr) + adjust), index))

    # Marubozu: body ≥ 85 % of range, both wicks ≤ 8 %
    if not _too_small(body, atr) and body >= rng * 0.85 and upper <= rng * 0.08 and lower <= rng * 0.08:
        avg = _avg_body(context)
        size_bonus = 0.1 if avg > 0 and body > avg * 1.5 else 0.0
        strength = _clamp(_scaled(body, atr) + size_bonus + _volume_confirmation(c, context))
        if _is_bull(c):
            found.append(CandlePattern("bullish_marubozu", "bullish", strength, index))
        else:
            found.append(CandlePattern("bearish_marubozu", "bearish", strength, index))

    return found


# ── Two-candle patterns ──────────────────────────────────────────────────


def _engulfing(prev: Candle, curr: Candle, index: int, atr: float, context: list[Candle]) -> Optional[CandlePattern]:
    body = _body(curr)
    if _too_small(body, atr):
        return None
    if body <= 1.2 * _body(prev):
        return None

    trend = _prior_trend(context)
    volume = _volume_confirmation(curr, context)
    if _is_bear(prev) and _is_bull(curr) and curr.open <= prev.close and curr.close >= prev.open:
        bonus = 0.1 if trend < -1 else 0.0
        return CandlePattern("bullish_engulfing", "bullish", _clamp(_scaled(body, atr) + bonus + volume), index)
    if _is_bull(prev) and _is_bear(curr) and curr.open >= prev.close and curr.close <= prev.open:
        bonus = 0.1 if trend > 1 else 0.0
        return CandlePattern("bearish_engulfing", "bearish", _clamp(_scaled(body, atr) + bonus + volume), index)
    return None


def _penetration(prev: Candle, curr: Candle, index: int, atr: float, context: list[Candle]) -> Optional[CandlePattern]:
    """Piercing line / dark cloud cover: a close beyond the prior body's midpoint."""
    prev_body = _body(prev)
    if _too_small(prev_body, atr) or prev_body <= 0:
        return None
    mid = (prev.open + prev.close) / 2
    trend = _prior_trend(context)
    volume = _volume_confirmation(curr, context)

    if _is_bear(prev) and _is_bull(curr):
        if curr.open > _body_bottom(prev) * 1.002 or curr.close <= mid or curr.close >= _body_top(prev):
            return None
        depth = (curr.close - _body_bottom(prev)) / prev_body
        bonus = 0.05 if trend < -1 else 0.0
        return CandlePattern("piercing_line", "bullish", _clamp(0.4 + depth * 0.2 + bonus + volume), index)
    if _is_bull(prev) and _is_bear(curr):
        if curr.open < _body_top(prev) * 0.998 or curr.close >= mid or curr.close <= _body_bottom(prev):
            return None
        depth = (_body_top(prev) - curr.close) / prev_body
        bonus = 0.05 if trend > 1 else 0.0
        return CandlePattern("dark_cloud_cover", "bearish", _clamp(0.4 + depth * 0.2 + bonus + volume), index)
    return None


def _tweezer(prev: Candle, curr: Candle, index: int, context: list[Candle]) -> Optional[CandlePattern]:
    """Two candles sharing a low (bottom) or a high (top)."""
    if not context:
        return None
    avg = sum(_range(c) for c in context) / len(context)
    if avg <= 0:
        return None
    trend = _prior_trend(context)
    volume = _volume_confirmation(curr, context)

    if _is_bear(prev) and _is_bull(curr):
        diff = abs(prev.low - curr.low)
        threshold = min(avg * 0.05, prev.low * 0.002)
        if threshold <= 0 or diff > threshold:
            return None
        bonus = 0.1 if trend < -1 else 0.0
        return CandlePattern("tweezer_bottom", "bullish", _clamp(0.4 + (1 - diff / threshold) * 0.3 + bonus + volume), index)
    if _is_bull(prev) and _is_bear(curr):
        diff = abs(prev.high - curr.high)
        threshold = min(avg * 0.05, prev.high * 0.002)
        if threshold <= 0 or diff > threshold:
            return None
        bonus = 0.1 if trend > 1 else 0.0
        return CandlePattern("tweezer_top", "bearish", _clamp(0.4 + (1 - diff / threshold) * 0.3 + bonus + volume), index)
    return None


def _inside(inner: Candle, outer: Candle) -> bool:
    return _body_top(inner) < _body_top(outer) and _body_bottom(inner) > _body_bottom(outer)


def _harami(prev: Candle, curr: Candle, index: int, atr: float, context: list[Candle]) -> Optional[CandlePattern]:
    """A small body inside a large opposite-coloured body."""
    prev_body = _body(prev)
    if _too_small(prev_body, atr) or prev_body <= 0 or not _inside(curr, prev):
        return None
    avg = _avg_body(context)
    if avg > 0 and prev_body < avg * 0.8:
        return None
    ratio = _body(curr) / prev_body
    if ratio > 0.6:
        return None

    trend = _prior_trend(context)
    volume = _volume_confirmation(curr, context)
    if _is_bear(prev) and _is_bull(curr):
        bonus = 0.05 if trend < -1 else 0.0
        return CandlePattern("bullish_harami", "bullish", _clamp(0.4 + (1 - ratio) * 0.3 + bonus + volume), index)
    if _is_bull(prev) and _is_bear(curr):
        bonus = 0.05 if trend > 1 else 0.0
        return CandlePattern("bearish_harami", "bearish", _clamp(0.4 + (1 - ratio) * 0.3 + bonus + volume), index)
    return None


# ── Three-candle patterns ────────────────────────────────────────────────


def _star(first: Candle, middle: Candle, last: Candle, index: int, atr: float, context: list[Candle]) -> Optional[CandlePattern]:
    small = _body(middle)
    first_body = _body(first)
    last_body = _body(last)
    if _too_small(first_body, atr) or _too_small(last_body, atr):
        return None
    if first_body <= 2 * small or last_body <= 2 * small:
        return None

    midpoint = (first.open + first.close) / 2
    strength = _scaled((first_body + last_body) / 2, atr) + _volume_confirmation(last, context)
    trend = _prior_trend(context)
    if _is_bear(first) and _is_bull(last) and last.close > midpoint:
        bonus = 0.05 if trend < -1 else 0.0
        return CandlePattern("morning_star", "bullish", _clamp(strength + bonus), index)
    if _is_bull(first) and _is_bear(last) and last.close < midpoint:
        bonus = 0.05 if trend > 1 else 0.0
        return CandlePattern("evening_star", "bearish", _clamp(strength + bonus), index)
    return None


def _opens_inside(prev: Candle, curr: Candle) -> bool:
    return _body_bottom(prev) <= curr.open <= _body_top(prev)


def _three_soldiers(c1: Candle, c2: Candle, c3: Candle, index: int, atr: float, context: list[Candle]) -> Optional[CandlePattern]:
    """Three white soldiers / three black crows.

    Three same-coloured candles with progressive closes, each opening
    inside the prior body and closing near its extreme.
    """
    trio = (c1, c2, c3)
    if any(_too_small(_body(c), atr) for c in trio):
        return None
    if not (_opens_inside(c1, c2) and _opens_inside(c2, c3)):
        return None
    avg = _avg_body(context)
    if avg > 0 and any(_body(c) < avg * 0.3 for c in trio):
        return None

    consistency = min(sum(_body(c) for c in trio) / 3 / avg, 2) / 2 if avg > 0 else 0.5
    trend = _prior_trend(context)
    volume = _volume_confirmation(c3, context)

    if all(_is_bull(c) for c in trio) and c1.close < c2.close < c3.close:
        if any(_upper_wick(c) > _range(c) * 0.3 for c in trio):
            return None
        bonus = 0.05 if trend < 0 else 0.0
        return CandlePattern("three_white_soldiers", "bullish", _clamp(0.6 + consistency * 0.2 + bonus + volume), index)
    if all(_is_bear(c) for c in trio) and c1.close > c2.close > c3.close:
        if any(_lower_wick(c) > _range(c) * 0.3 for c in trio):
            return None
        bonus = 0.05 if trend > 0 else 0.0
        return CandlePattern("three_black_crows", "bearish", _clamp(0.6 + consistency * 0.2 + bonus + volume), index)
    return None


def _three_inside(c1: Candle, c2: Candle, c3: Candle, index: int, atr: float, context: list[Candle]) -> Optional[CandlePattern]:
    """Harami confirmed by a third candle closing beyond the first body."""
    first_body = _body(c1)
    if _too_small(first_body, atr) or first_body <= 0 or not _inside(c2, c1):
        return None
    avg = _avg_body(context)
    if avg > 0 and first_body < avg * 0.5:
        return None

    trend = _prior_trend(context)
    volume = _volume_confirmation(c3, context)
    if _is_bear(c1) and _is_bull(c2) and _is_bull(c3) and c3.close > _body_top(c1):
        follow = (c3.close - _body_top(c1)) / first_body
        bonus = 0.05 if trend < -1 else 0.0
        return CandlePattern("three_inside_up", "bullish", _clamp(0.55 + follow * 0.2 + bonus + volume), index)
    if _is_bull(c1) and _is_bear(c2) and _is_bear(c3) and c3.close < _body_bottom(c1):
        follow = (_body_bottom(c1) - c3.close) / first_body
        bonus = 0.05 if trend > 1 else 0.0
        return CandlePattern("three_inside_down", "bearish", _clamp(0.55 + follow * 0.2 + bonus + volume), index)
    return None


def _three_outside(c1: Candle, c2: Candle, c3: Candle, index: int, atr: float, context: list[Candle]) -> Optional[CandlePattern]:
    """Engulfing confirmed by a third candle closing beyond the engulfing close."""
    second_body = _body(c2)
    if _too_small(second_body, atr) or second_body <= 0 or not _inside(c1, c2):
        return None
    avg = _avg_body(context)
    if avg > 0 and second_body < avg * 0.5:
        return None

    trend = _prior_trend(context)
    volume = _volume_confirmation(c3, context)
    if _is_bear(c1) and _is_bull(c2) and _is_bull(c3) and c3.close > c2.close:
        follow = (c3.close - c2.close) / second_body
        bonus = 0.05 if trend < -1 else 0.0
        return CandlePattern("three_outside_up", "bullish", _clamp(0.55 + follow * 0.15 + bonus + volume), index)
    if _is_bull(c1) and _is_bear(c2) and _is_bear(c3) and c3.close < c2.close:
        follow = (c2.close - c3.close) / second_body
        bonus = 0.05 if trend > 1 else 0.0
        return CandlePattern("three_outside_down", "bearish", _clamp(0.55 + follow * 0.15 + bonus + volume), index)
    return None


# ── Scan ─────────────────────────────────────────────────────────────────


def detect_candle_patterns(
    candles: list[Candle],
    atr: float,
    window: int = SCAN_WINDOW,
) -> list[CandlePattern]:
    """Detect patterns completed within the last *window* candles.

    Each completing candle is judged against up to ``CONTEXT_WINDOW``
    candles before the pattern starts.

    Args:
        candles: Time-ordered candles, most recent last.
        atr: ATR of the same series, used to scale bodies and strengths.
        window: How many trailing candles to scan.

    Returns:
        Patterns ordered by completing index.
    """
    found: list[CandlePattern] = []
    start = max(0, len(candles) - window)
    for i in range(start, len(candles)):
        curr = candles[i]
        found.extend(_single_candle_patterns(curr, i, atr, candles[max(0, i - CONTEXT_WINDOW):i]))
        if i >= 1:
            prev = candles[i - 1]
            context = candles[max(0, i - 1 - CONTEXT_WINDOW):i - 1]
            for pattern in (
                _engulfing(prev, curr, i, atr, context),
                _penetration(prev, curr, i, atr, context),
                _tweezer(prev, curr, i, context),
                _harami(prev, curr, i, atr, context),
            ):
                if pattern:
                    found.append(pattern)
        if i >= 2:
            first, middle = candles[i - 2], candles[i - 1]
            context = candles[max(0, i - 2 - CONTEXT_WINDOW):i - 2]
            for pattern in (
                _star(first, middle, curr, i, atr, context),
                _three_soldiers(first, middle, curr, i, atr, context),
                _three_inside(first, middle, curr, i, atr, context),
                _three_outside(first, middle, curr, i, atr, context),
            ):
                if pattern:
                    found.append(pattern)
    return found
