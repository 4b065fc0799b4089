"""Backtest simulation engine.

Replays a primary candle timeline through a strategy, keeping every
requested timeframe in sync, and turns the strategy's signals into
trades with the commission/slippage cost model.

Processing order for each primary candle:
1. Advance per-timeframe cursors to the last aggregated candle at or
   before the primary timestamp
2. Build the StrategyContext snapshot
3. Invoke the strategy (errors and timeouts skip the step's signal)
4. Apply the signal to the PositionBook
5. Record an equity point (cash + unrealized P&L)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any

from market.candle_aggregator import build_multi_timeframe
from market.models.candle import Candle
from market.timeframe import TimeframeError, is_valid_timeframe, timeframe_to_ms

from backtest.errors import DataError, StrategyError, StrategyTimeoutError
from backtest.models import BacktestRunResult, EquityPoint, Signal
from backtest.position import PositionBook
from backtest.stats import MetricsCalculator
from backtest.strategy.protocol import CandleView, StrategyContext
from backtest.strategy.sandbox import SandboxedStrategy

if TYPE_CHECKING:
    from backtest.config import BacktestSettings

logger = logging.getLogger(__name__)

CandleData = list[Candle] | dict[str, list[Candle]]


def select_primary_timeframe(labels: list[str]) -> str:
    """Pick the highest-resolution (smallest bucket) label.

    Invalid labels are ignored for selection.

    Raises:
        TimeframeError: If no label is valid.
    """
    valid = [label for label in labels if is_valid_timeframe(label)]
    if not valid:
        raise TimeframeError(", ".join(labels))
    return min(valid, key=timeframe_to_ms)


class _TimeframeCursor:
    """Monotonic pointer into one aggregated series."""

    __slots__ = ("series", "position")

    def __init__(self, series: list[Candle]):
        self.series = series
        self.position = 0

    def advance(self, timestamp_ms: int) -> CandleView:
        series = self.series
        while (
            self.position < len(series)
            and series[self.position].timestamp_ms <= timestamp_ms
        ):
            self.position += 1
        return CandleView(series, self.position)


class BacktestEngine:
    """Run one strategy over one dataset.

    Each run() owns its capital, position, cursors and strategy state;
    nothing is shared between runs, so independent runs can execute
    concurrently.
    """

    def __init__(
        self,
        commission: float = 0.001,
        slippage: float = 0.0005,
        initial_capital: float = 10000.0,
        timeframes: list[str] | None = None,
        strategy_timeout: float | None = 1.0,
    ):
        self.commission = commission
        self.slippage = slippage
        self.initial_capital = initial_capital
        self.timeframes = list(timeframes) if timeframes else ["1h"]
        self.strategy_timeout = strategy_timeout
        self._calculator = MetricsCalculator()

    @classmethod
    def from_settings(cls, settings: BacktestSettings) -> BacktestEngine:
        return cls(
            commission=settings.commission,
            slippage=settings.slippage,
            initial_capital=settings.initial_capital,
            timeframes=settings.timeframes,
            strategy_timeout=settings.strategy_timeout,
        )

    def _prepare(
        self, data: CandleData
    ) -> tuple[list[Candle], dict[str, list[Candle]], str | None]:
        """Resolve the primary series and the per-timeframe dataset."""
        if isinstance(data, dict):
            if not data:
                raise DataError("No timeframe data provided")
            dataset = {tf: list(series or []) for tf, series in data.items()}
            primary_tf = select_primary_timeframe(list(dataset.keys()))
            return dataset[primary_tf], dataset, primary_tf

        raw = list(data or [])
        return raw, build_multi_timeframe(raw, self.timeframes), None

    async def _invoke(self, strategy: Any, context: StrategyContext) -> Signal:
        fn = strategy.decide if hasattr(strategy, "decide") else strategy
        output = fn(context)
        if inspect.isawaitable(output):
            # The sandbox bounds each call itself and restarts its worker on overrun
            if self.strategy_timeout and not isinstance(strategy, SandboxedStrategy):
                try:
                    output = await asyncio.wait_for(output, timeout=self.strategy_timeout)
                except asyncio.TimeoutError as e:
                    raise StrategyTimeoutError(
                        f"Strategy call exceeded {self.strategy_timeout:.2f}s"
                    ) from e
            else:
                output = await output
        return Signal.from_output(output)

    async def run(
        self,
        strategy: Any,
        data: CandleData,
        params: dict[str, Any] | None = None,
    ) -> BacktestRunResult:
        """Simulate `strategy` over `data`.

        Args:
            strategy: Callable (sync or async) taking a StrategyContext, or an
                object with a decide(context) method.
            data: Base-resolution candle list, or a mapping of timeframe label
                to already-aggregated candles.
            params: Passed unchanged to every strategy call.

        Raises:
            TimeframeError: A configured or supplied timeframe label is invalid.
            DataError: An empty timeframe mapping was supplied.
        """
        primary, dataset, primary_tf = self._prepare(data)
        params = params if params is not None else {}

        book = PositionBook(self.initial_capital, self.commission, self.slippage)
        state: dict[str, Any] = {}
        cursors = {tf: _TimeframeCursor(series) for tf, series in dataset.items()}
        equity_curve: list[EquityPoint] = []
        failed_steps = 0
        last_index = len(primary) - 1

        logger.info(
            "Running backtest over %d candles (primary=%s, timeframes=%s)",
            len(primary),
            primary_tf or "raw",
            list(dataset.keys()),
        )

        for i, candle in enumerate(primary):
            current_ms = candle.timestamp_ms
            views = {tf: cursor.advance(current_ms) for tf, cursor in cursors.items()}

            context = StrategyContext(
                candles=CandleView(primary, i + 1),
                index=i,
                params=params,
                state=state,
                candles_by_timeframe=views,
                current_candle=candle,
            )

            try:
                signal = await self._invoke(strategy, context)
            except Exception as e:
                failed_steps += 1
                level = logging.WARNING if isinstance(e, StrategyError) else logging.ERROR
                logger.log(level, "Strategy error at candle %d: %s", i, e)
                signal = None

            if signal is not None:
                book.apply(signal, candle, i, allow_open=i < last_index)

            equity_curve.append(
                EquityPoint(timestamp=candle.timestamp, equity=book.equity(candle.close))
            )

        if not book.is_flat and primary:
            last = primary[-1]
            logger.debug("Closing open position at end of data (index %d)", last_index)
            book.close(last.close, last.timestamp, last_index)

        metrics = self._calculator.calculate(
            book.trades, equity_curve, self.initial_capital
        )

        if failed_steps:
            logger.warning(
                "Strategy failed on %d/%d steps", failed_steps, len(primary)
            )
        logger.info(
            "Backtest done: %d trades, final capital %.2f",
            len(book.trades),
            book.capital,
        )

        return BacktestRunResult(
            trades=list(book.trades),
            metrics=metrics,
            final_capital=book.capital,
            equity_curve=equity_curve,
            primary_timeframe=primary_tf,
            total_candles=len(primary),
        )
