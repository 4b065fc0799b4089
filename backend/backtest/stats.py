"""Statistics calculator for backtest results.

Computes the flat performance report from the closed trade list and the
per-step equity curve:

- Trade counts: wins (pnl > 0), losses (pnl < 0); breakeven trades count
  in neither but still count towards the total
- win_rate = wins / total * 100, accuracy is the same number
- expectancy = win_rate * average_win - (1 - win_rate) * average_loss
- Drawdown from the running equity peak (starting at initial capital)
- Sharpe = mean / std of per-step simple returns * sqrt(252)

Every monetary or percentage value is rounded to 2 decimals. An infinite
profit factor (gross loss of zero) stays infinite.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass

import numpy as np

from backtest.models import EquityPoint, Trade

logger = logging.getLogger(__name__)

# Trading periods per year used to annualize the Sharpe ratio
ANNUALIZATION_PERIODS = 252


@dataclass(frozen=True)
class BacktestMetrics:
    """Summary statistics of one run."""

    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    accuracy: float = 0.0
    net_pnl: float = 0.0
    roi: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    expectancy: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    sharpe_ratio: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DrawdownStats:
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0


def _round(value: float) -> float:
    if math.isinf(value):
        return value
    return round(value, 2)


def calculate_drawdown(
    equity_curve: list[EquityPoint], initial_capital: float
) -> DrawdownStats:
    """Largest peak-to-trough decline and its percent of the peak at that point."""
    peak = initial_capital
    max_drawdown = 0.0
    max_drawdown_percent = 0.0

    for point in equity_curve:
        if point.equity > peak:
            peak = point.equity
        drawdown = peak - point.equity
        if drawdown > max_drawdown:
            max_drawdown = drawdown
            max_drawdown_percent = drawdown / peak * 100 if peak > 0 else 0.0

    return DrawdownStats(max_drawdown, max_drawdown_percent)


def calculate_returns(equity_curve: list[EquityPoint]) -> np.ndarray:
    """Per-step simple returns; a non-positive prior equity yields 0."""
    if len(equity_curve) < 2:
        return np.zeros(0)
    equity = np.array([p.equity for p in equity_curve], dtype=float)
    prev = equity[:-1]
    diff = np.diff(equity)
    safe_prev = np.where(prev > 0, prev, 1.0)
    return np.where(prev > 0, diff / safe_prev, 0.0)


def calculate_sharpe(equity_curve: list[EquityPoint]) -> float:
    """Annualized Sharpe ratio of the equity curve (risk-free rate 0)."""
    returns = calculate_returns(equity_curve)
    if returns.size == 0:
        return 0.0
    std = float(np.std(returns))
    if not math.isfinite(std) or std == 0:
        return 0.0
    return float(np.mean(returns)) / std * math.sqrt(ANNUALIZATION_PERIODS)


class MetricsCalculator:
    """Calculate the performance report for a completed run."""

    def calculate(
        self,
        trades: list[Trade],
        equity_curve: list[EquityPoint],
        initial_capital: float,
    ) -> BacktestMetrics:
        if not trades:
            return BacktestMetrics()

        total = len(trades)
        winning = [t.pnl for t in trades if t.pnl > 0]
        losing = [t.pnl for t in trades if t.pnl < 0]
        wins = len(winning)
        losses = len(losing)

        win_rate = wins / total * 100
        net_pnl = sum(t.pnl for t in trades)
        roi = net_pnl / initial_capital * 100 if initial_capital else 0.0

        gross_profit = sum(winning)
        gross_loss = abs(sum(losing))
        average_win = gross_profit / wins if wins else 0.0
        average_loss = gross_loss / losses if losses else 0.0

        win_fraction = win_rate / 100
        expectancy = win_fraction * average_win - (1 - win_fraction) * average_loss

        if gross_loss > 0:
            profit_factor = gross_profit / gross_loss
        elif gross_profit > 0:
            profit_factor = math.inf
        else:
            profit_factor = 0.0

        drawdown = calculate_drawdown(equity_curve, initial_capital)
        sharpe = calculate_sharpe(equity_curve)

        return BacktestMetrics(
            total_trades=total,
            wins=wins,
            losses=losses,
            win_rate=_round(win_rate),
            accuracy=_round(win_rate),
            net_pnl=_round(net_pnl),
            roi=_round(roi),
            max_drawdown=_round(drawdown.max_drawdown),
            max_drawdown_percent=_round(drawdown.max_drawdown_percent),
            expectancy=_round(expectancy),
            average_win=_round(average_win),
            average_loss=_round(average_loss),
            profit_factor=_round(profit_factor),
            sharpe_ratio=_round(sharpe),
        )
