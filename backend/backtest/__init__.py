"""Candle backtesting engine.

Replays historical candles through a strategy, simulates fills with
commission and slippage, and reports trades plus performance metrics.
Pure candle logic lives in market/; this package owns the simulation
loop and its I/O edges (CSV loading, trade export, reports).

Usage:
    python -m backtest --data candles.csv --strategy two_candle_retracement
    python -m backtest --data 1h.csv --data 4h.csv --timeframes 1h,4h \\
        --strategy-file my_strategy.py
"""

from backtest.config import BacktestSettings
from backtest.engine import BacktestEngine
from backtest.models import Action, BacktestRunResult, Side, Signal, Trade
from backtest.runner import BacktestRunner
from backtest.stats import BacktestMetrics, MetricsCalculator

__all__ = [
    "Action",
    "BacktestEngine",
    "BacktestMetrics",
    "BacktestRunResult",
    "BacktestRunner",
    "BacktestSettings",
    "MetricsCalculator",
    "Side",
    "Signal",
    "Trade",
]
