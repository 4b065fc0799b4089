"""Built-in reference strategies.

All of them keep their bookkeeping in ctx.state, so a fresh run always
starts from a clean slate even when the same instance is reused.
"""

from __future__ import annotations

from backtest.models import Action, Signal
from backtest.strategy.protocol import StrategyContext
from backtest.strategy.registry import register_strategy


@register_strategy("hold")
class HoldStrategy:
    """Never trades."""

    def decide(self, ctx: StrategyContext) -> Signal:
        return Signal.hold()


@register_strategy("buy_and_hold")
class BuyAndHoldStrategy:
    """Buy on the first candle, sell on the last one if `last_index` is known.

    Without `last_index` in params the position is left open and the engine
    closes it at the end of the data.
    """

    def __init__(self, size: float = 1.0):
        self.size = size

    def decide(self, ctx: StrategyContext) -> Signal:
        if ctx.index == 0:
            return Signal(action=Action.BUY, size=ctx.params.get("size", self.size))
        if ctx.index == ctx.params.get("last_index"):
            return Signal(action=Action.SELL)
        return Signal.hold()


@register_strategy("two_candle_retracement")
class TwoCandleRetracementStrategy:
    """2-candle retracement long entry.

    Entry: previous candle was bullish and the current one pulls back but
    still closes above the previous open.
    Exit: close below the previous close.
    """

    def __init__(self, size: float = 1.0):
        self.size = size

    def decide(self, ctx: StrategyContext) -> Signal:
        if ctx.index < 1:
            return Signal.hold()

        current = ctx.candles[ctx.index]
        prev = ctx.candles[ctx.index - 1]
        state = ctx.state

        if state.get("in_position"):
            if current.close < prev.close:
                state["in_position"] = False
                return Signal(action=Action.SELL, meta={"reason": "Exit on bearish close"})
            return Signal.hold()

        is_retracement = current.close < prev.close
        above_prev_open = current.close > prev.open
        if prev.is_bullish and is_retracement and above_prev_open:
            state["in_position"] = True
            state["entry_index"] = ctx.index
            return Signal(
                action=Action.BUY,
                size=ctx.params.get("size", self.size),
                meta={
                    "reason": "2-candle retracement buy",
                    "prev_close": prev.close,
                    "current_close": current.close,
                },
            )

        return Signal.hold()
