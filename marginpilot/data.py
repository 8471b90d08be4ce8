"""Candle CSV ingestion — the boundary where candle series are made clean.

Each CSV holds one timeframe with columns ``time, open, high, low, close,
volume``.  ``time`` may be unix seconds, unix milliseconds or an ISO
timestamp.  Rows are sorted, duplicate timestamps dropped (last wins) and
rows with missing prices discarded, so every downstream series is
time-ordered without duplicates.
"""

import logging
from pathlib import Path
from typing import Union

import numpy as np
import pandas as pd

from marginpilot.strategy.indicators import calculate_indicators
from marginpilot.strategy.models import TIMEFRAMES, Candle, TimeframeSnapshot

logger = logging.getLogger("marginpilot")

CANDLE_COLUMNS = ["time", "open", "high", "low", "close", "volume"]
PRICE_COLUMNS = ["open", "high", "low", "close"]

# Numeric timestamps above this are milliseconds
_MS_THRESHOLD = 10_000_000_000


def _to_unix_seconds(times: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(times):
        values = times.astype("int64")
        return pd.Series(
            np.where(values > _MS_THRESHOLD, values // 1000, values),
            index=times.index,
        )
    parsed = pd.to_datetime(times, utc=True)
    return (parsed - pd.Timestamp("1970-01-01", tz="UTC")) // pd.Timedelta(seconds=1)


def clean_candles(df: pd.DataFrame) -> pd.DataFrame:
    """Normalise a raw candle frame.

    1. Require the candle columns.
    2. Convert ``time`` to unix seconds.
    3. Drop rows with missing prices.
    4. Sort by time and drop duplicate timestamps (last row wins).
    5. Fill missing volume with 0.
    """
    missing = [c for c in CANDLE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Candle data missing column(s): {', '.join(missing)}")

    df = df[CANDLE_COLUMNS].copy()
    df = df.dropna(subset=["time"] + PRICE_COLUMNS)
    if df.empty:
        return df

    df["time"] = _to_unix_seconds(df["time"])
    df["volume"] = df["volume"].fillna(0.0)

    df = df.sort_values("time", kind="stable")
    df = df.drop_duplicates(subset="time", keep="last").reset_index(drop=True)
    return df


def frame_to_candles(df: pd.DataFrame) -> tuple[Candle, ...]:
    return tuple(
        Candle(
            time=int(row.time),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df.itertuples(index=False)
    )


def load_candles_csv(path: Union[str, Path]) -> tuple[Candle, ...]:
    """Read one candle CSV into a clean, time-ordered tuple of candles."""
    raw = pd.read_csv(path)
    before = len(raw)
    df = clean_candles(raw)
    if len(df) < before:
        logger.debug("%s: dropped %d invalid or duplicate rows", path, before - len(df))
    return frame_to_candles(df)


def load_snapshots(candle_dir: Union[str, Path]) -> dict[str, TimeframeSnapshot]:
    """Load ``<interval>.csv`` for every timeframe found in *candle_dir*.

    Missing files are skipped; the recommendation engine decides whether
    the timeframes present are enough.
    """
    directory = Path(candle_dir)
    snapshots: dict[str, TimeframeSnapshot] = {}
    for interval in TIMEFRAMES:
        path = directory / f"{interval}.csv"
        if not path.is_file():
            logger.debug("No candles for %s in %s", interval, directory)
            continue
        candles = load_candles_csv(path)
        snapshots[interval] = TimeframeSnapshot(
            interval=interval,
            candles=candles,
            indicators=calculate_indicators(list(candles)),
        )
    logger.info("Loaded %d timeframe(s) from %s", len(snapshots), directory)
    return snapshots
