"""Chart structure — swing points, trend structure, key levels and multi-timeframe confluence.

Pure functions over candle series; no I/O.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from marginpilot.models.strategy_config import FibonacciConfig
from marginpilot.strategy.fibonacci import calculate_fibonacci_levels
from marginpilot.strategy.indicators import calculate_atr
from marginpilot.strategy.models import (
    INTERVAL_MINUTES,
    Candle,
    CandlePattern,
    PriceLevel,
    SwingPoint,
    TrendStructure,
)
from marginpilot.strategy.patterns import detect_candle_patterns

logger = logging.getLogger("marginpilot.strategy")

LEVEL_TOLERANCE = 0.002
CONFLUENCE_TOLERANCE = 0.003
MAX_KEY_LEVELS = 8
MAX_CONFLUENT_LEVELS = 6
MIN_TIMEFRAME_CANDLES = 20


@dataclass(frozen=True)
class CompactCandle:
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: int
    direction: str  # "U" or "D"
    body_pct: int
    upper_wick_pct: int
    lower_wick_pct: int


@dataclass(frozen=True)
class TimeframeChartContext:
    interval: str
    candle_count: int
    current_price: float
    range_high: float
    range_low: float
    range_percent: float
    trend: TrendStructure
    key_levels: tuple[PriceLevel, ...]
    recent_swings: tuple[SwingPoint, ...]
    patterns: tuple[CandlePattern, ...]
    recent_candles: tuple[CompactCandle, ...]
    summary: str


@dataclass(frozen=True)
class ChartContext:
    generated_at: str
    pair: str
    timeframes: dict[str, TimeframeChartContext]
    mtf_alignment: str  # aligned_bullish, aligned_bearish, mixed, neutral
    mtf_summary: str
    confluent_levels: tuple[PriceLevel, ...]


def _level_strength(touches: int) -> str:
    if touches >= 3:
        return "strong"
    if touches >= 2:
        return "moderate"
    return "weak"


# ── Swings / trend ───────────────────────────────────────────────────────


def find_swing_points(candles: list[Candle], lookback: int = 3) -> list[SwingPoint]:
    """Find swing highs and lows confirmed by *lookback* candles each side.

    Neighbours must be strictly lower (for a high) or strictly higher (for a
    low). Returns swings sorted by index.
    """
    swings: list[SwingPoint] = []
    for i in range(lookback, len(candles) - lookback):
        current = candles[i]
        neighbours = [candles[i - j] for j in range(1, lookback + 1)]
        neighbours += [candles[i + j] for j in range(1, lookback + 1)]

        if all(n.high < current.high for n in neighbours):
            swings.append(SwingPoint(i, current.high, "high", min(3, lookback), current.time))
        if all(n.low > current.low for n in neighbours):
            swings.append(SwingPoint(i, current.low, "low", min(3, lookback), current.time))

    return sorted(swings, key=lambda s: s.index)


def analyze_trend_structure(swings: list[SwingPoint]) -> TrendStructure:
    """Count HH/HL/LH/LL over the last 10 swings and label the trend."""
    recent = swings[-10:]
    highs = [s for s in recent if s.type == "high"]
    lows = [s for s in recent if s.type == "low"]

    hh = sum(1 for a, b in zip(highs, highs[1:]) if b.price > a.price)
    lh = sum(1 for a, b in zip(highs, highs[1:]) if b.price < a.price)
    hl = sum(1 for a, b in zip(lows, lows[1:]) if b.price > a.price)
    ll = sum(1 for a, b in zip(lows, lows[1:]) if b.price < a.price)

    bullish = hh + hl
    bearish = lh + ll
    if bullish > bearish + 1:
        direction = "uptrend"
        strength = "strong" if bullish >= 4 else "moderate" if bullish >= 2 else "weak"
    elif bearish > bullish + 1:
        direction = "downtrend"
        strength = "strong" if bearish >= 4 else "moderate" if bearish >= 2 else "weak"
    else:
        direction, strength = "sideways", "weak"

    return TrendStructure(
        direction=direction,
        strength=strength,
        higher_highs=hh,
        higher_lows=hl,
        lower_highs=lh,
        lower_lows=ll,
        last_swing_high=highs[-1].price if highs else None,
        last_swing_low=lows[-1].price if lows else None,
    )


# ── Key levels ───────────────────────────────────────────────────────────


def find_key_levels(
    candles: list[Candle],
    swings: list[SwingPoint],
    extra_levels: tuple[PriceLevel, ...] = (),
    tolerance: float = LEVEL_TOLERANCE,
) -> list[PriceLevel]:
    """Cluster swing prices (plus *extra_levels*) into support/resistance.

    A price within *tolerance* of a same-type cluster moves the cluster to
    the average of the two and adds a touch. Round-number levels around the
    current price are appended. Returns the 8 levels nearest the price.
    """
    clusters: list[dict] = []

    def _add(price: float, level_type: str, touches: int, sources: tuple[str, ...]) -> None:
        for cluster in clusters:
            if cluster["type"] == level_type and abs(cluster["price"] - price) / price < tolerance:
                cluster["touches"] += touches
                cluster["price"] = (cluster["price"] + price) / 2
                for src in sources:
                    if src not in cluster["sources"]:
                        cluster["sources"].append(src)
                return
        clusters.append({"price": price, "type": level_type, "touches": touches, "sources": list(sources)})

    for swing in swings:
        level_type = "support" if swing.type == "low" else "resistance"
        _add(swing.price, level_type, 1, (f"swing_{swing.type}",))
    for level in extra_levels:
        _add(level.price, level.type, level.touches, level.sources)

    current = candles[-1].close
    base = 1.0 if current > 10 else 0.1 if current > 1 else 0.01
    nearest = round(current / base) * base
    for i in range(-3, 4):
        price = round(nearest + i * base, 10)
        if price > 0:
            clusters.append({
                "price": price,
                "type": "resistance" if price > current else "support",
                "touches": 1,
                "sources": ["round_number"],
            })

    levels = [
        PriceLevel(
            price=c["price"],
            type=c["type"],
            touches=c["touches"],
            strength=_level_strength(c["touches"]),
            sources=tuple(c["sources"]),
        )
        for c in clusters
    ]
    levels.sort(key=lambda lv: abs(lv.price - current))
    return levels[:MAX_KEY_LEVELS]


# ── Per-timeframe analysis ───────────────────────────────────────────────


def compact_candles(candles: list[Candle], count: int = 20) -> list[CompactCandle]:
    out: list[CompactCandle] = []
    for c in candles[-count:]:
        rng = c.high - c.low
        body = abs(c.close - c.open)
        upper = c.high - max(c.open, c.close)
        lower = min(c.open, c.close) - c.low
        out.append(CompactCandle(
            time=c.time,
            open=round(c.open, 5),
            high=round(c.high, 5),
            low=round(c.low, 5),
            close=round(c.close, 5),
            volume=round(c.volume),
            direction="U" if c.close >= c.open else "D",
            body_pct=round(body / rng * 100) if rng > 0 else 0,
            upper_wick_pct=round(upper / rng * 100) if rng > 0 else 0,
            lower_wick_pct=round(lower / rng * 100) if rng > 0 else 0,
        ))
    return out


def _major(patterns: list[CandlePattern]) -> list[CandlePattern]:
    return [p for p in patterns if p.strength >= 0.5 and p.direction != "neutral"]


def _summary(candles: list[Candle], trend: TrendStructure, patterns: list[CandlePattern], interval: str) -> str:
    recent = candles[-5:]
    change = (recent[-1].close - recent[0].close) / recent[0].close * 100 if recent[0].close else 0.0
    avg_volume = sum(c.volume for c in candles[-20:]) / 20
    recent_volume = sum(c.volume for c in recent) / len(recent)
    vol_ratio = recent_volume / avg_volume if avg_volume > 0 else 1.0

    text = (
        f"{interval}: {trend.direction} ({trend.strength}), "
        f"{change:+.2f}% last 5 candles, vol {vol_ratio:.1f}x avg"
    )
    major = _major(patterns)
    if major:
        text += f". Patterns: {', '.join(p.name for p in major)}"
    return text


def analyze_timeframe(
    candles: list[Candle],
    interval: str,
    fib_config: Optional[FibonacciConfig] = None,
) -> Optional[TimeframeChartContext]:
    """Structure summary for one timeframe; ``None`` with fewer than 20 candles."""
    if len(candles) < MIN_TIMEFRAME_CANDLES:
        logger.debug("Skipping %s chart context: %d candles", interval, len(candles))
        return None

    current = candles[-1].close
    range_high = max(c.high for c in candles)
    range_low = min(c.low for c in candles)
    range_percent = (range_high - range_low) / range_low * 100 if range_low > 0 else 0.0

    swings = find_swing_points(candles, 2)
    trend = analyze_trend_structure(swings)
    atr = calculate_atr(candles)

    fib_levels: tuple[PriceLevel, ...] = ()
    if (
        fib_config is not None
        and fib_config.enabled
        and INTERVAL_MINUTES.get(interval) in fib_config.timeframes
    ):
        fib = calculate_fibonacci_levels(swings, current, fib_config, atr, interval)
        if fib is not None:
            fib_levels = fib.levels

    key_levels = find_key_levels(candles, swings, fib_levels)
    patterns = detect_candle_patterns(candles, atr or 0.0)

    return TimeframeChartContext(
        interval=interval,
        candle_count=len(candles),
        current_price=current,
        range_high=range_high,
        range_low=range_low,
        range_percent=range_percent,
        trend=trend,
        key_levels=tuple(key_levels),
        recent_swings=tuple(swings[-5:]),
        patterns=tuple(patterns),
        recent_candles=tuple(compact_candles(candles)),
        summary=_summary(candles, trend, patterns, interval),
    )


# ── Multi-timeframe context ──────────────────────────────────────────────


def _mtf_alignment(directions: list[str]) -> str:
    up = directions.count("uptrend")
    down = directions.count("downtrend")
    if up >= 3:
        return "aligned_bullish"
    if down >= 3:
        return "aligned_bearish"
    if up == down or (up < 2 and down < 2):
        return "neutral"
    return "mixed"


def find_confluent_levels(
    timeframes: dict[str, TimeframeChartContext],
    current_price: float,
    tolerance: float = CONFLUENCE_TOLERANCE,
) -> list[PriceLevel]:
    """Merge key levels across timeframes; keep those seen on two or more."""
    clusters: list[dict] = []
    for interval, tf in timeframes.items():
        for level in tf.key_levels:
            match = next(
                (c for c in clusters if abs(c["price"] - level.price) / level.price < tolerance),
                None,
            )
            if match is None:
                clusters.append({
                    "price": level.price,
                    "type": level.type,
                    "touches": level.touches,
                    "strength": level.strength,
                    "sources": list(level.sources),
                    "timeframes": [interval],
                })
                continue
            match["touches"] += level.touches
            if level.strength == "strong":
                match["strength"] = "strong"
            match["sources"].extend(s for s in level.sources if s not in match["sources"])
            if interval not in match["timeframes"]:
                match["timeframes"].append(interval)

    confluent = [
        PriceLevel(
            price=c["price"],
            type=c["type"],
            touches=c["touches"],
            strength=c["strength"],
            sources=tuple(c["sources"]),
            timeframes=tuple(c["timeframes"]),
        )
        for c in clusters
        if len(c["timeframes"]) >= 2
    ]
    confluent.sort(key=lambda lv: abs(lv.price - current_price))
    return confluent[:MAX_CONFLUENT_LEVELS]


def build_chart_context(
    timeframe_candles: dict[str, list[Candle]],
    pair: str,
    fib_config: Optional[FibonacciConfig] = None,
) -> ChartContext:
    """Analyze every supplied timeframe and combine them.

    Args:
        timeframe_candles: Interval label (``"5m"``, ``"1h"``…) → candles.
        pair: Asset pair, carried into the result.
        fib_config: Fibonacci settings; ``None`` disables Fibonacci levels.
    """
    timeframes: dict[str, TimeframeChartContext] = {}
    for interval, candles in timeframe_candles.items():
        ctx = analyze_timeframe(candles, interval, fib_config)
        if ctx is not None:
            timeframes[interval] = ctx

    ordered = sorted(timeframes.values(), key=lambda tf: INTERVAL_MINUTES.get(tf.interval, 0), reverse=True)
    alignment = _mtf_alignment([tf.trend.direction for tf in ordered])
    mtf_summary = " | ".join(tf.summary for tf in ordered)

    if "5m" in timeframes:
        current_price = timeframes["5m"].current_price
    elif "15m" in timeframes:
        current_price = timeframes["15m"].current_price
    else:
        current_price = ordered[-1].current_price if ordered else 0.0

    latest = max((c[-1].time for c in timeframe_candles.values() if c), default=0)
    generated_at = datetime.fromtimestamp(latest, tz=timezone.utc).isoformat()

    return ChartContext(
        generated_at=generated_at,
        pair=pair,
        timeframes=timeframes,
        mtf_alignment=alignment,
        mtf_summary=mtf_summary,
        confluent_levels=tuple(find_confluent_levels(timeframes, current_price)),
    )


def format_chart_context(context: ChartContext) -> str:
    """Render a chart context as a compact text report."""
    lines = [f"## Chart Analysis ({context.pair})", f"MTF Alignment: {context.mtf_alignment.upper()}", ""]

    ordered = sorted(
        context.timeframes.values(),
        key=lambda tf: INTERVAL_MINUTES.get(tf.interval, 0),
        reverse=True,
    )
    for tf in ordered:
        t = tf.trend
        lines.append(f"### {tf.interval} Timeframe")
        lines.append(f"Trend: {t.direction} ({t.strength})")
        lines.append(f"Structure: HH={t.higher_highs} HL={t.higher_lows} LH={t.lower_highs} LL={t.lower_lows}")
        if t.last_swing_high is not None and t.last_swing_low is not None:
            lines.append(f"Last Swing High: {t.last_swing_high:.5f}, Last Swing Low: {t.last_swing_low:.5f}")

        resistance = [lv for lv in tf.key_levels if lv.type == "resistance"][:3]
        support = [lv for lv in tf.key_levels if lv.type == "support"][:3]
        if resistance:
            lines.append("Resistance: " + ", ".join(f"{lv.price:.5f}({lv.strength[0]})" for lv in resistance))
        if support:
            lines.append("Support: " + ", ".join(f"{lv.price:.5f}({lv.strength[0]})" for lv in support))

        major = _major(list(tf.patterns))
        if major:
            lines.append("Patterns: " + ", ".join(f"{p.name}({p.direction[0]})" for p in major))

        lines.append(f"Recent {len(tf.recent_candles)} candles (t,o,h,l,c,dir,body%,wick%,shadow%):")
        for c in tf.recent_candles:
            hhmm = datetime.fromtimestamp(c.time, tz=timezone.utc).strftime("%H:%M")
            lines.append(
                f"{hhmm}|{c.open}|{c.high}|{c.low}|{c.close}|{c.direction}|"
                f"{c.body_pct}|{c.upper_wick_pct}|{c.lower_wick_pct}"
            )
        lines.append("")

    if context.confluent_levels:
        lines.append("### Multi-TF Confluent Levels")
        for lv in context.confluent_levels:
            lines.append(
                f"{lv.type.upper()}: {lv.price:.5f} ({lv.strength}, {lv.touches} touches, "
                f"{'/'.join(lv.timeframes)})"
            )
        lines.append("")

    lines.append("### Summary")
    lines.append(context.mtf_summary)
    return "\n".join(lines)
