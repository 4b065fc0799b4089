"""Signal, position and trade data models for the simulation loop."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from backtest.stats import BacktestMetrics


class Action(str, Enum):
    """Strategy decision for one step."""

    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class Side(str, Enum):
    """Position side."""

    LONG = "LONG"
    SHORT = "SHORT"


DEFAULT_SIZE = 1.0


class Signal(BaseModel):
    """A strategy's decision for one step."""

    model_config = ConfigDict(frozen=True)

    action: Action = Action.HOLD
    size: float | None = None
    meta: dict[str, Any] = Field(default_factory=dict)

    @property
    def effective_size(self) -> float:
        """Order size, falling back to 1.0 when unset or unusable."""
        if self.size is None or not math.isfinite(self.size) or self.size <= 0:
            return DEFAULT_SIZE
        return self.size

    @classmethod
    def hold(cls) -> Signal:
        return cls()

    @classmethod
    def from_output(cls, output: Any) -> Signal:
        """Coerce whatever a strategy returned into a Signal.

        Accepts a Signal, a bare action string, or a mapping carrying the
        action under "action" or "signal". Anything missing or unrecognized
        is HOLD.
        """
        if isinstance(output, Signal):
            return output
        if isinstance(output, (str, Action)):
            return cls(action=_parse_action(output))
        if not isinstance(output, Mapping):
            return cls.hold()

        raw_action = output.get("action", output.get("signal"))
        size = output.get("size")
        try:
            size = float(size) if size is not None else None
        except (TypeError, ValueError):
            size = None
        meta = output.get("meta")
        return cls(
            action=_parse_action(raw_action),
            size=size,
            meta=dict(meta) if isinstance(meta, Mapping) else {},
        )


def _parse_action(value: Any) -> Action:
    if isinstance(value, Action):
        return value
    if isinstance(value, str):
        try:
            return Action(value.strip().upper())
        except ValueError:
            return Action.HOLD
    return Action.HOLD


@dataclass(frozen=True)
class Position:
    """The single open position of a run.

    total_cost is the cost basis including the entry commission; it is
    fixed at open and is the reference for exit P&L.
    """

    side: Side
    size: float
    entry_price: float
    entry_time: datetime
    entry_index: int
    total_cost: float
    meta: dict[str, Any] = field(default_factory=dict)

    def unrealized_pnl(self, price: float) -> float:
        """Mark-to-market P&L at the given price."""
        if self.side == Side.LONG:
            return (price - self.entry_price) * self.size
        return (self.entry_price - price) * self.size


class Trade(BaseModel):
    """A closed round trip. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    entry_time: datetime
    exit_time: datetime
    side: Side
    size: float
    entry_price: float
    exit_price: float
    pnl: float
    pnl_percent: float
    entry_index: int
    exit_index: int
    meta: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class EquityPoint:
    """Cash plus unrealized P&L at one step."""

    timestamp: datetime
    equity: float


@dataclass
class BacktestRunResult:
    """Result of a single engine run."""

    trades: list[Trade]
    metrics: BacktestMetrics
    final_capital: float
    equity_curve: list[EquityPoint] = field(default_factory=list)
    primary_timeframe: str | None = None
    total_candles: int = 0
