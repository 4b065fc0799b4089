"""Trade export to CSV.

Column order is fixed:
Entry Time, Exit Time, Side, Size, Entry Price, Exit Price, P&L, P&L %
Timestamps are UTC ISO-8601 with millisecond precision and a Z suffix.
"""

from __future__ import annotations

import csv
import logging
from datetime import datetime, timezone
from pathlib import Path

from backtest.models import Trade

logger = logging.getLogger(__name__)

TRADE_COLUMNS = [
    "Entry Time",
    "Exit Time",
    "Side",
    "Size",
    "Entry Price",
    "Exit Price",
    "P&L",
    "P&L %",
]


def format_instant(value: datetime) -> str:
    """Format a datetime as e.g. 2024-01-01T04:00:00.000Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def trade_to_row(trade: Trade) -> list:
    return [
        format_instant(trade.entry_time),
        format_instant(trade.exit_time),
        trade.side.value,
        trade.size,
        trade.entry_price,
        trade.exit_price,
        trade.pnl,
        trade.pnl_percent,
    ]


class TradeExporter:
    """Write trade lists to CSV files."""

    @staticmethod
    def export(trades: list[Trade], path: str | Path) -> Path:
        """Write trades to `path`, creating parent directories as needed."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(TRADE_COLUMNS)
            for trade in trades:
                writer.writerow(trade_to_row(trade))

        logger.info(f"Exported {len(trades)} trades to {path}")
        return path


def export_trades(trades: list[Trade], path: str | Path) -> Path:
    return TradeExporter.export(trades, path)
