"""Candle data source for backtesting.

Reads OHLCV rows from CSV files with a header row:

    timestamp,open,high,low,close,volume
    2024-01-01 00:00:00,100,102,99,101,1000

The timestamp column may be named timestamp, time, date or datetime
(first present wins). Values are ISO-8601 or "YYYY-MM-DD HH:MM:SS";
naive values are UTC. Bad rows are skipped, never fatal.
"""

from __future__ import annotations

import csv
import logging
import math
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from market.models.candle import Candle

from backtest.errors import DataError

logger = logging.getLogger(__name__)

TIMESTAMP_COLUMNS = ("timestamp", "time", "date", "datetime")
PRICE_COLUMNS = ("open", "high", "low", "close")


class CandleSource(Protocol):
    """Protocol for candle data access."""

    def load(self, path: str | Path) -> list[Candle]: ...


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 or space-separated date-time; None if unparsable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if " " in text:
            text = text.replace(" ", "T", 1)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_price(value: object) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _parse_volume(value: object) -> float:
    number = _parse_price(value)
    return number if number is not None else 0.0


def _normalize_row(row: Mapping) -> dict[str, object]:
    return {
        str(key).strip().lower(): value
        for key, value in row.items()
        if key is not None
    }


def parse_row(row: Mapping) -> Candle | None:
    """Build a Candle from one raw row, or None if the row is malformed."""
    fields = _normalize_row(row)

    raw_time = next(
        (fields[name] for name in TIMESTAMP_COLUMNS if fields.get(name) not in (None, "")),
        None,
    )
    timestamp = parse_timestamp(raw_time)
    if timestamp is None:
        logger.debug(f"Skipping row with invalid timestamp: {raw_time!r}")
        return None

    prices = [_parse_price(fields.get(name)) for name in PRICE_COLUMNS]
    if any(p is None for p in prices):
        logger.debug(f"Skipping row with non-numeric prices at {timestamp.isoformat()}")
        return None

    open_, high, low, close = prices
    return Candle(
        timestamp=timestamp,
        open=open_,
        high=high,
        low=low,
        close=close,
        volume=_parse_volume(fields.get("volume")),
    )


def parse_rows(rows: Iterable[Mapping]) -> list[Candle]:
    """Parse raw rows into candles, skipping malformed ones."""
    candles = []
    for row in rows:
        candle = parse_row(row)
        if candle is not None:
            candles.append(candle)
    return candles


def load_candles(path: str | Path) -> list[Candle]:
    """Load candles from a CSV file.

    Raises:
        DataError: If the file does not exist or cannot be read.
    """
    path = Path(path)
    if not path.is_file():
        raise DataError(f"Candle file not found: {path}")

    try:
        with path.open(newline="", encoding="utf-8-sig") as f:
            rows = list(csv.DictReader(f))
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise DataError(f"Cannot read candle file {path}: {e}") from e

    candles = parse_rows(rows)
    logger.info(
        f"Loaded {len(candles)} candles from {path} (skipped {len(rows) - len(candles)})"
    )
    return candles


class CsvCandleSource:
    """Read candles from local CSV files."""

    def __init__(self, base_dir: str | Path | None = None):
        self._base_dir = Path(base_dir) if base_dir is not None else None

    def load(self, path: str | Path) -> list[Candle]:
        path = Path(path)
        if self._base_dir is not None and not path.is_absolute():
            path = self._base_dir / path
        return load_candles(path)
