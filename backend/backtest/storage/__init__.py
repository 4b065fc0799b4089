"""Candle data sources for backtesting."""

from backtest.storage.candle_source import (
    CandleSource,
    CsvCandleSource,
    load_candles,
    parse_rows,
)

__all__ = ["CandleSource", "CsvCandleSource", "load_candles", "parse_rows"]
