"""Backtest error taxonomy.

Only an empty dataset and an invalid timeframe abort a run. Strategy
failures are caught per step by the engine; an unaffordable order is a
silent no-op and has no exception type.
"""

from market.timeframe import InvalidTimeframe, TimeframeError


class BacktestError(Exception):
    """Base class for backtest errors."""


class DataError(BacktestError):
    """Candle data could not be used (missing file, malformed mapping)."""


class EmptyDatasetError(DataError):
    """No valid candles remained after loading and validation."""


class StrategyError(BacktestError):
    """A strategy failed to compile, raised, or returned garbage."""


class StrategyTimeoutError(StrategyError):
    """A strategy call exceeded its wall-clock budget."""


__all__ = [
    "BacktestError",
    "DataError",
    "EmptyDatasetError",
    "InvalidTimeframe",
    "StrategyError",
    "StrategyTimeoutError",
    "TimeframeError",
]
