"""Strategy execution contract.

This module provides:
- CandleView: read-only prefix view over an engine-owned candle list
- StrategyContext: the snapshot handed to a strategy at each step
- Strategy: Runtime-checkable Protocol for object-style strategies
- StrategyCallable: plain function form, sync or async
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Union, overload, runtime_checkable

from market.models.candle import Candle

from backtest.models import Signal


class CandleView(Sequence):
    """Read-only view of the first `stop` candles of a list.

    Building a view is O(1); the engine never appends to the backing
    list during a run, so the view is stable for the duration of a call.
    """

    __slots__ = ("_candles", "_stop")

    def __init__(self, candles: list[Candle], stop: int):
        self._candles = candles
        self._stop = max(0, min(stop, len(candles)))

    def __len__(self) -> int:
        return self._stop

    @overload
    def __getitem__(self, index: int) -> Candle: ...

    @overload
    def __getitem__(self, index: slice) -> list[Candle]: ...

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self._candles[i] for i in range(*index.indices(self._stop))]
        if index < 0:
            index += self._stop
        if not 0 <= index < self._stop:
            raise IndexError("candle index out of range")
        return self._candles[index]

    def __iter__(self):
        for i in range(self._stop):
            yield self._candles[i]

    def __repr__(self) -> str:
        return f"CandleView(len={self._stop})"

    @property
    def source(self) -> list[Candle]:
        """The full backing list (engine-side use only)."""
        return self._candles

    @property
    def last(self) -> Candle | None:
        return self._candles[self._stop - 1] if self._stop else None

    def closes(self) -> list[float]:
        """Get list of close prices."""
        return [c.close for c in self]


@dataclass(frozen=True)
class StrategyContext:
    """Read view handed to the strategy at step `index`.

    Attributes:
        candles: Primary-timeline candles [0..index].
        index: Current step.
        params: Caller-supplied strategy parameters, passed through untouched.
        state: Run-scoped dict owned by the strategy. Same object for every
            step of one run.
        candles_by_timeframe: Per timeframe, the aggregated candles whose
            bucket timestamp is <= the current primary timestamp.
        current_candle: candles[index].
    """

    candles: CandleView
    index: int
    params: dict[str, Any]
    state: dict[str, Any]
    candles_by_timeframe: dict[str, CandleView] = field(default_factory=dict)
    current_candle: Candle | None = None


StrategyOutput = Union[Signal, dict, str, None]

StrategyCallable = Callable[
    [StrategyContext], Union[StrategyOutput, Awaitable[StrategyOutput]]
]


@runtime_checkable
class Strategy(Protocol):
    """Protocol for object-style strategies.

    decide() may return a Signal, a mapping ({"action": "BUY", "size": 2}),
    a bare action string, or None (HOLD). It may also be a coroutine.
    Raising marks the step as failed; the engine skips it.
    """

    def decide(self, context: StrategyContext) -> Any:
        ...
