"""Candle aggregator for building coarser timeframes from a base series.

Aggregation rules:
- Bucket start = floor(timestamp_ms / bucket_ms) * bucket_ms
- open = first candle's open, close = last candle's close
- high/low = bucket extrema, volume = bucket sum
- One output candle per non-empty bucket, ascending by bucket start

Input must be time-ascending; candles keep their input order inside a bucket.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from market.models.candle import Candle
from market.timeframe import timeframe_to_ms

logger = logging.getLogger(__name__)


def bucket_start(timestamp_ms: int, bucket_ms: int) -> int:
    """Get the bucket start (epoch ms) a timestamp belongs to."""
    return (timestamp_ms // bucket_ms) * bucket_ms


def _merge(bucket_ms_start: int, group: list[Candle]) -> Candle:
    return Candle(
        timestamp=datetime.fromtimestamp(bucket_ms_start / 1000, tz=timezone.utc),
        open=group[0].open,
        high=max(c.high for c in group),
        low=min(c.low for c in group),
        close=group[-1].close,
        volume=sum(c.volume for c in group),
    )


def aggregate_candles(candles: list[Candle], timeframe: str) -> list[Candle]:
    """Aggregate a base-resolution series into the given timeframe.

    Raises:
        TimeframeError: If the timeframe label is invalid.
    """
    interval = timeframe_to_ms(timeframe)
    if not candles:
        return []

    grouped: dict[int, list[Candle]] = {}
    for candle in candles:
        grouped.setdefault(bucket_start(candle.timestamp_ms, interval), []).append(candle)

    return [_merge(key, grouped[key]) for key in sorted(grouped)]


def build_multi_timeframe(
    raw: list[Candle], timeframes: list[str] | str
) -> dict[str, list[Candle]]:
    """Aggregate the raw series independently into each requested timeframe."""
    labels = [timeframes] if isinstance(timeframes, str) else list(timeframes)
    dataset = {tf: aggregate_candles(raw, tf) for tf in labels}
    logger.debug(
        "Built multi-timeframe dataset from %d candles: %s",
        len(raw),
        {tf: len(series) for tf, series in dataset.items()},
    )
    return dataset
