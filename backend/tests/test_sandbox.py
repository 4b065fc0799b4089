"""Tests for sandboxed strategy execution."""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from market.models.candle import Candle
from backtest.engine import BacktestEngine
from backtest.errors import StrategyError, StrategyTimeoutError
from backtest.models import Action
from backtest.strategy.protocol import CandleView, StrategyContext
from backtest.strategy.sandbox import SandboxedStrategy, compile_strategy, validate_source

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_candles(count: int = 5) -> list[Candle]:
    return [
        Candle(
            timestamp=BASE + timedelta(hours=i),
            open=100 + i,
            high=102 + i,
            low=99 + i,
            close=101 + i,
        )
        for i in range(count)
    ]


def make_context(candles, index, state=None, params=None):
    return StrategyContext(
        candles=CandleView(candles, index + 1),
        index=index,
        params=params or {},
        state=state if state is not None else {},
        candles_by_timeframe={"1h": CandleView(candles, index + 1)},
        current_candle=candles[index],
    )


COUNTER = """
def strategy(ctx):
    ctx.state["calls"] = ctx.state.get("calls", 0) + 1
    if ctx.index == 0:
        return {"action": "BUY", "size": 1.0}
    if ctx.index == 3:
        return "SELL"
    return {"action": "HOLD"}
"""

HANG_AT_ONE = """
def strategy(ctx):
    if ctx.index == 1:
        while True:
            pass
    return "HOLD"
"""


class TestCompileStrategy:

    def test_strategy_entrypoint(self):
        fn = compile_strategy("def strategy(ctx):\n    return 'BUY'\n")

        assert fn(None) == "BUY"

    def test_decide_entrypoint(self):
        fn = compile_strategy("def decide(ctx):\n    return 'SELL'\n")

        assert fn(None) == "SELL"

    def test_allowed_import(self):
        code = (
            "import hashlib\n"
            "def strategy(ctx):\n"
            "    return hashlib.sha256(b'x').hexdigest()\n"
        )

        assert len(compile_strategy(code)(None)) == 64

    def test_from_import(self):
        code = "from math import sqrt\ndef strategy(ctx):\n    return sqrt(16)\n"

        assert compile_strategy(code)(None) == 4.0

    def test_allowed_module_is_not_the_real_module(self):
        code = "import math\ndef strategy(ctx):\n    return math\n"

        namespace = compile_strategy(code)(None)

        assert namespace.sqrt(9) == 3.0
        assert not hasattr(namespace, "__builtins__")
        assert not hasattr(namespace, "__loader__")

    def test_blocked_import(self):
        with pytest.raises(StrategyError, match="not allowed"):
            compile_strategy("import os\ndef strategy(ctx):\n    return 'HOLD'\n")

    def test_relative_import_rejected(self):
        with pytest.raises(StrategyError, match="not allowed"):
            compile_strategy("from . import math\ndef strategy(ctx):\n    return 'HOLD'\n")

    def test_open_is_unavailable(self):
        fn = compile_strategy("def strategy(ctx):\n    return open('/etc/passwd')\n")

        with pytest.raises(NameError):
            fn(None)

    def test_module_builtins_unreachable(self):
        code = (
            "import hashlib\n"
            "def strategy(ctx):\n"
            "    b = hashlib.__builtins__\n"
            "    ctx.state['file'] = b['open']('/etc/hostname').read()\n"
            "    ctx.state['pid'] = b['__import__']('os').getpid()\n"
        )

        with pytest.raises(StrategyError, match="__builtins__"):
            compile_strategy(code)

    def test_subclass_walk_rejected(self):
        code = (
            "def strategy(ctx):\n"
            "    return ().__class__.__base__.__subclasses__()\n"
        )

        with pytest.raises(StrategyError, match="__class__"):
            compile_strategy(code)

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "(x for x in []).gi_frame.f_back",
            "getattr(ctx, 'index')",
        ],
    )
    def test_escape_routes_closed(self, expression):
        code = f"def strategy(ctx):\n    return {expression}\n"

        with pytest.raises((StrategyError, NameError)):
            compile_strategy(code)(None)

    def test_underscore_definitions_rejected(self):
        with pytest.raises(StrategyError, match="_helper"):
            validate_source("def _helper():\n    pass\n")

    def test_missing_entrypoint(self):
        with pytest.raises(StrategyError, match="must define"):
            compile_strategy("x = 1\n")

    def test_syntax_error(self):
        with pytest.raises(StrategyError, match="SyntaxError"):
            compile_strategy("def strategy(ctx)\n    return 1\n")


class TestSandboxedStrategy:

    def test_invalid_code_fails_on_start(self):
        with pytest.raises(StrategyError):
            with SandboxedStrategy("import socket\n"):
                pass

    @pytest.mark.asyncio
    async def test_decide_and_state_round_trip(self):
        candles = make_candles()
        state = {}

        with SandboxedStrategy(COUNTER, timeout=5.0) as strategy:
            first = await strategy.decide(make_context(candles, 0, state))
            second = await strategy.decide(make_context(candles, 1, state))

        assert first.action == Action.BUY
        assert second.action == Action.HOLD
        assert state == {"calls": 2}

    @pytest.mark.asyncio
    async def test_strategy_exception_becomes_strategy_error(self):
        code = "def strategy(ctx):\n    return 1 / 0\n"

        with SandboxedStrategy(code, timeout=5.0) as strategy:
            with pytest.raises(StrategyError, match="ZeroDivisionError"):
                await strategy.decide(make_context(make_candles(), 0))

    @pytest.mark.asyncio
    async def test_state_written_before_exception_is_kept(self):
        code = (
            "def strategy(ctx):\n"
            "    ctx.state['seen'] = ctx.index\n"
            "    raise ValueError('boom')\n"
        )
        state = {"existing": True}

        with SandboxedStrategy(code, timeout=5.0) as strategy:
            with pytest.raises(StrategyError, match="boom"):
                await strategy.decide(make_context(make_candles(), 2, state))

        assert state == {"existing": True, "seen": 2}

    @pytest.mark.asyncio
    async def test_timeout_restarts_worker(self):
        candles = make_candles()

        with SandboxedStrategy(HANG_AT_ONE, timeout=0.5) as strategy:
            with pytest.raises(StrategyTimeoutError):
                await strategy.decide(make_context(candles, 1))
            signal = await strategy.decide(make_context(candles, 2))

            assert signal.action == Action.HOLD
            assert strategy.is_running

    @pytest.mark.asyncio
    async def test_event_loop_keeps_running_during_call(self):
        engine = BacktestEngine(commission=0, slippage=0, initial_capital=10000)
        gaps = []
        done = asyncio.Event()

        async def ticker():
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        with SandboxedStrategy(HANG_AT_ONE, timeout=0.5) as strategy:
            tick_task = asyncio.create_task(ticker())
            result = await engine.run(strategy, make_candles(3))
            done.set()
            await tick_task

        assert result.total_candles == 3
        # The hung step alone waits the full 0.5s budget
        assert sum(gaps) >= 0.5
        assert max(gaps) < 0.25

    @pytest.mark.asyncio
    async def test_runs_inside_engine(self):
        engine = BacktestEngine(commission=0, slippage=0, initial_capital=10000)

        with SandboxedStrategy(COUNTER, timeout=5.0) as strategy:
            result = await engine.run(strategy, make_candles())

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert (trade.entry_index, trade.exit_index) == (0, 3)
        assert trade.pnl == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_escape_attempt_rejected_before_spawn(self):
        code = (
            "import hashlib\n"
            "def strategy(ctx):\n"
            "    b = hashlib.__builtins__\n"
            "    ctx.state['file'] = b['open']('/etc/hostname').read()\n"
            "    return 'HOLD'\n"
        )

        with pytest.raises(StrategyError, match="__builtins__"):
            with SandboxedStrategy(code, timeout=5.0):
                pass
