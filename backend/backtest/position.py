"""Position lifecycle and cost model for the simulation loop.

Rules:
- At most one open position
- BUY while flat opens LONG at close * (1 + slippage)
- SELL while flat opens SHORT at close * (1 - slippage)
- SELL while holding closes either side at close * (1 - slippage)
- BUY while holding is a no-op (there is no BUY-to-cover path)
- Commission = fill notional * commission rate, charged at each fill
- An order the cash cannot cover is silently not placed
"""

from __future__ import annotations

import logging
from datetime import datetime

from market.models.candle import Candle

from backtest.models import Action, Position, Side, Signal, Trade

logger = logging.getLogger(__name__)


class PositionBook:
    """Cash and the single open position of one run."""

    def __init__(self, initial_capital: float, commission: float, slippage: float):
        self.commission = commission
        self.slippage = slippage
        self.capital = initial_capital
        self.position: Position | None = None
        self.trades: list[Trade] = []

    @property
    def is_flat(self) -> bool:
        return self.position is None

    def apply(
        self, signal: Signal, candle: Candle, index: int, allow_open: bool = True
    ) -> Trade | None:
        """Interpret a signal against the current position state.

        allow_open=False turns opening orders into no-ops (used on the final
        candle, where a new position could only be closed on the same bar).
        Returns the Trade when the signal closed a position.
        """
        if signal.action == Action.BUY:
            if self.is_flat and allow_open:
                self._open(Side.LONG, signal, candle, index)
            return None

        if signal.action == Action.SELL:
            if self.is_flat:
                if allow_open:
                    self._open(Side.SHORT, signal, candle, index)
                return None
            return self.close(candle.close, candle.timestamp, index)

        return None

    def _open(self, side: Side, signal: Signal, candle: Candle, index: int) -> None:
        size = signal.effective_size
        if side == Side.LONG:
            entry_price = candle.close * (1 + self.slippage)
        else:
            entry_price = candle.close * (1 - self.slippage)
        cost = entry_price * size
        total_cost = cost + cost * self.commission

        if self.capital < total_cost:
            logger.debug(
                "Step %d: insufficient capital for %s %.4f @ %.4f (need %.2f, have %.2f)",
                index,
                side.value,
                size,
                entry_price,
                total_cost,
                self.capital,
            )
            return

        self.position = Position(
            side=side,
            size=size,
            entry_price=entry_price,
            entry_time=candle.timestamp,
            entry_index=index,
            total_cost=total_cost,
            meta=dict(signal.meta),
        )
        self.capital -= total_cost

    def close(self, price: float, timestamp: datetime, index: int) -> Trade | None:
        """Close the open position at `price` less slippage."""
        position = self.position
        if position is None:
            return None

        exit_price = price * (1 - self.slippage)
        revenue = exit_price * position.size
        net_revenue = revenue - revenue * self.commission

        if position.side == Side.LONG:
            pnl = net_revenue - position.total_cost
        else:
            pnl = position.total_cost - net_revenue

        trade = Trade(
            entry_time=position.entry_time,
            exit_time=timestamp,
            side=position.side,
            size=position.size,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            pnl_percent=pnl / position.total_cost * 100,
            entry_index=position.entry_index,
            exit_index=index,
            meta=position.meta,
        )
        self.capital += net_revenue
        self.position = None
        self.trades.append(trade)
        return trade

    def equity(self, price: float) -> float:
        """Cash plus unrealized P&L of the open position at `price`."""
        if self.position is None:
            return self.capital
        return self.capital + self.position.unrealized_pnl(price)
