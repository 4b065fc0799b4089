"""Sandboxed execution of untrusted strategy source.

User code runs in a dedicated child process, never in the engine's own
interpreter. Before anything runs, the source is checked statically:
- no name or attribute starting with an underscore
- no frame, code or traceback introspection attributes
- imports only from an allowlist (hashlib and math by default)

Inside the child, builtins that reach the filesystem, evaluate code or
do dynamic attribute access are removed, print() is silenced, and an
allowed import yields a namespace of the module's public members rather
than the module object itself.

Every call carries a wall-clock budget. A call that overruns it gets
the worker killed and respawned, and the engine sees a
StrategyTimeoutError for that step. The run's state dict lives in the
parent: it is sent with each call and replaced with the worker's copy
on return (including when the strategy raised), so a killed worker loses
at most the step that timed out.

Waiting on the worker happens in a thread, so the event loop keeps
serving other runs while a sandboxed step is in flight.

Strategy source must define `strategy(ctx)` or `decide(ctx)`:

    def strategy(ctx):
        if ctx.index == 0:
            return {"action": "BUY", "size": 1.0}
        return {"action": "HOLD"}
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import importlib
import inspect
import logging
import multiprocessing
from types import ModuleType, SimpleNamespace
from typing import Any

from market.models.candle import Candle

from backtest.errors import StrategyError, StrategyTimeoutError
from backtest.models import Signal
from backtest.strategy.protocol import CandleView, StrategyContext

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_MODULES = ("hashlib", "math")
ENTRYPOINT_NAMES = ("strategy", "decide")

# Spawning a fresh interpreter and importing pydantic takes a while
STARTUP_TIMEOUT = 30.0

_BLOCKED_BUILTINS = frozenset(
    {
        "open",
        "eval",
        "exec",
        "compile",
        "input",
        "globals",
        "locals",
        "vars",
        "getattr",
        "setattr",
        "delattr",
        "breakpoint",
        "help",
        "exit",
        "quit",
        "memoryview",
    }
)

# Non-underscore attributes that still lead to frames, code objects or
# foreign globals
_BLOCKED_ATTRIBUTES = frozenset(
    {
        "gi_frame",
        "gi_code",
        "gi_yieldfrom",
        "cr_frame",
        "cr_code",
        "cr_await",
        "ag_frame",
        "ag_code",
        "ag_await",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "tb_frame",
        "tb_next",
    }
)


class _SourceValidator(ast.NodeVisitor):
    """Collect constructs that could reach outside the sandbox."""

    def __init__(self, allowed_modules: tuple[str, ...]):
        self.allowed_modules = allowed_modules
        self.violations: list[str] = []

    def _reject(self, node: ast.AST, message: str) -> None:
        self.violations.append(f"line {getattr(node, 'lineno', '?')}: {message}")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_"):
            self._reject(node, f"name {node.id} is not allowed")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_") or node.attr in _BLOCKED_ATTRIBUTES:
            self._reject(node, f"attribute {node.attr} is not allowed")
        self.generic_visit(node)

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if alias.name not in self.allowed_modules:
                self._reject(node, f"module {alias.name} is not allowed")
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level or node.module not in self.allowed_modules:
            self._reject(node, f"module {node.module} is not allowed")
        for alias in node.names:
            if alias.name.startswith("_") or alias.name == "*":
                self._reject(node, f"import of {alias.name} is not allowed")
        self.generic_visit(node)

    def _check_identifier(self, node: ast.AST, name: str | None) -> None:
        if name and name.startswith("_"):
            self._reject(node, f"name {name} is not allowed")

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._check_identifier(node, node.name)
        self.generic_visit(node)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._check_identifier(node, node.name)
        self.generic_visit(node)

    def visit_arg(self, node: ast.arg) -> None:
        self._check_identifier(node, node.arg)
        self.generic_visit(node)

    def visit_alias(self, node: ast.alias) -> None:
        self._check_identifier(node, node.asname)
        self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        self._check_identifier(node, node.name)
        self.generic_visit(node)


def validate_source(
    code: str, allowed_modules: tuple[str, ...] = DEFAULT_ALLOWED_MODULES
) -> ast.Module:
    """Parse strategy source and reject constructs that escape the sandbox.

    Raises:
        StrategyError: On a syntax error or any disallowed construct.
    """
    try:
        tree = ast.parse(code, filename="<strategy>")
    except SyntaxError as e:
        raise StrategyError(f"Strategy code error: SyntaxError: {e}") from e

    validator = _SourceValidator(tuple(allowed_modules))
    validator.visit(tree)
    if validator.violations:
        raise StrategyError(
            "Strategy code rejected: " + "; ".join(validator.violations)
        )
    return tree


def _module_namespace(name: str) -> SimpleNamespace:
    """Public functions and constants of a module, without the module itself."""
    module = importlib.import_module(name)
    members = {
        attr: value
        for attr, value in vars(module).items()
        if not attr.startswith("_") and not isinstance(value, ModuleType)
    }
    return SimpleNamespace(**members)


def _restricted_builtins(allowed_modules: tuple[str, ...]) -> dict[str, Any]:
    safe = {
        name: value
        for name, value in vars(builtins).items()
        if name not in _BLOCKED_BUILTINS
    }
    namespaces: dict[str, SimpleNamespace] = {}

    def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
        if level != 0 or name not in allowed_modules:
            raise ImportError(f"Module {name} is not allowed in strategy code")
        if name not in namespaces:
            namespaces[name] = _module_namespace(name)
        return namespaces[name]

    safe["__import__"] = guarded_import
    safe["print"] = lambda *args, **kwargs: None
    return safe


def compile_strategy(code: str, allowed_modules: tuple[str, ...] = DEFAULT_ALLOWED_MODULES):
    """Validate and execute strategy source, returning its entrypoint.

    Raises:
        StrategyError: If the source is rejected, fails to run, or defines
            no strategy()/decide() function.
    """
    allowed = tuple(allowed_modules)
    tree = validate_source(code, allowed)
    namespace: dict[str, Any] = {
        "__builtins__": _restricted_builtins(allowed),
        "__name__": "user_strategy",
    }
    try:
        exec(compile(tree, "<strategy>", "exec"), namespace)
    except Exception as e:
        raise StrategyError(f"Strategy code error: {type(e).__name__}: {e}") from e

    for name in ENTRYPOINT_NAMES:
        fn = namespace.get(name)
        if callable(fn):
            return fn
    raise StrategyError("Strategy must define a strategy(ctx) or decide(ctx) function")


def _call_entrypoint(fn, ctx: StrategyContext) -> Any:
    output = fn(ctx)
    if inspect.isawaitable(output):
        output = asyncio.run(_await(output))
    return output


async def _await(awaitable):
    return await awaitable


def _worker_main(conn, code: str, allowed_modules: tuple[str, ...]) -> None:
    """Child process loop: compile once, then answer decide requests."""
    try:
        fn = compile_strategy(code, allowed_modules)
    except StrategyError as e:
        conn.send(("error", str(e)))
        conn.close()
        return
    conn.send(("ready", None))

    primary: list[Candle] = []
    by_timeframe: dict[str, list[Candle]] = {}

    while True:
        try:
            message = conn.recv()
        except EOFError:
            break

        kind = message[0]
        if kind == "close":
            break
        if kind == "load":
            _, primary, by_timeframe = message
            continue

        _, index, cursors, params, state = message
        ctx = StrategyContext(
            candles=CandleView(primary, index + 1),
            index=index,
            params=params,
            state=state,
            candles_by_timeframe={
                tf: CandleView(by_timeframe.get(tf, []), stop)
                for tf, stop in cursors.items()
            },
            current_candle=primary[index],
        )
        try:
            signal = Signal.from_output(_call_entrypoint(fn, ctx))
            conn.send(("ok", (signal, state)))
        except Exception as e:
            conn.send(("error", (f"{type(e).__name__}: {e}", state)))

    conn.close()


class SandboxedStrategy:
    """Run untrusted strategy source behind the decide(context) contract.

    The sandbox enforces its own per-call timeout, so the engine does not
    wrap it in a second one.

    Usage:
        with SandboxedStrategy(code, timeout=1.0) as strategy:
            result = await engine.run(strategy, candles)
    """

    def __init__(
        self,
        code: str,
        timeout: float = 1.0,
        allowed_modules: tuple[str, ...] = DEFAULT_ALLOWED_MODULES,
    ):
        self.code = code
        self.timeout = timeout
        self.allowed_modules = tuple(allowed_modules)
        self._mp = multiprocessing.get_context("spawn")
        self._process = None
        self._conn = None
        self._lock = asyncio.Lock()
        self._shipped_primary: list[Candle] | None = None
        self._shipped_by_timeframe: dict[str, list[Candle]] = {}

    def __enter__(self) -> SandboxedStrategy:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def start(self) -> None:
        """Spawn the worker and compile the strategy source in it.

        Raises:
            StrategyError: If the source is invalid or the worker fails to start.
        """
        if self.is_running:
            return
        # Reject bad source before paying for a process spawn
        validate_source(self.code, self.allowed_modules)

        parent_conn, child_conn = self._mp.Pipe()
        process = self._mp.Process(
            target=_worker_main,
            args=(child_conn, self.code, self.allowed_modules),
            daemon=True,
        )
        process.start()
        child_conn.close()

        if not parent_conn.poll(STARTUP_TIMEOUT):
            process.kill()
            process.join()
            raise StrategyError("Strategy sandbox failed to start")
        try:
            status, payload = parent_conn.recv()
        except EOFError as e:
            process.join()
            raise StrategyError("Strategy sandbox exited during startup") from e
        if status != "ready":
            process.join()
            raise StrategyError(payload)

        self._process = process
        self._conn = parent_conn
        self._shipped_primary = None
        self._shipped_by_timeframe = {}
        logger.debug("Strategy sandbox started (pid=%s)", process.pid)

    def close(self) -> None:
        """Stop the worker process."""
        if self._process is None:
            return
        try:
            self._conn.send(("close",))
        except (BrokenPipeError, OSError):
            pass
        self._process.join(timeout=1.0)
        if self._process.is_alive():
            self._process.kill()
            self._process.join()
        self._conn.close()
        self._process = None
        self._conn = None

    def _discard(self) -> None:
        """Kill the worker; the next call spawns a fresh one.

        The pipe is released rather than closed because a polling thread
        may still hold it.
        """
        if self._process is not None:
            self._process.kill()
            self._process.join()
        self._process = None
        self._conn = None

    def _ship_dataset(self, context: StrategyContext) -> None:
        """Send candle lists to the worker once per dataset."""
        primary = context.candles.source
        by_timeframe = {
            tf: view.source for tf, view in context.candles_by_timeframe.items()
        }
        unchanged = primary is self._shipped_primary and all(
            self._shipped_by_timeframe.get(tf) is series
            for tf, series in by_timeframe.items()
        )
        if unchanged:
            return
        self._conn.send(("load", primary, by_timeframe))
        self._shipped_primary = primary
        self._shipped_by_timeframe = by_timeframe

    async def decide(self, context: StrategyContext) -> Signal:
        """Evaluate the strategy for one step inside the sandbox.

        Raises:
            StrategyTimeoutError: The call overran its budget.
            StrategyError: The strategy raised inside the sandbox.
        """
        async with self._lock:
            if not self.is_running:
                await asyncio.to_thread(self.start)
            self._ship_dataset(context)

            cursors = {
                tf: len(view) for tf, view in context.candles_by_timeframe.items()
            }
            conn = self._conn
            conn.send(
                ("decide", context.index, cursors, dict(context.params), context.state)
            )

            try:
                ready = await asyncio.to_thread(conn.poll, self.timeout)
            except asyncio.CancelledError:
                self._discard()
                raise

            if not ready:
                logger.warning(
                    "Strategy call at step %d exceeded %.2fs, restarting sandbox",
                    context.index,
                    self.timeout,
                )
                self._discard()
                raise StrategyTimeoutError(
                    f"Strategy call exceeded {self.timeout:.2f}s at step {context.index}"
                )

            try:
                status, payload = conn.recv()
            except EOFError as e:
                self._discard()
                raise StrategyError("Strategy sandbox exited unexpectedly") from e

            if status == "ok":
                signal, new_state = payload
            else:
                message, new_state = payload
            context.state.clear()
            context.state.update(new_state)

            if status != "ok":
                raise StrategyError(message)
            return signal
