"""CLI entry point for the backtesting system.

Usage:
    python -m backtest --data candles.csv --strategy two_candle_retracement
    python -m backtest --data 1h.csv --data 4h.csv --timeframes 1h,4h --strategy-file s.py
    python -m backtest --list-strategies
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

# Add backend to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from market.timeframe import TimeframeError, parse_timeframes

from backtest.config import get_backtest_settings
from backtest.errors import DataError, StrategyError
from backtest.report import ReportFormatter
from backtest.runner import BacktestRunner
from backtest.strategy import SandboxedStrategy, create_strategy, list_strategies


def parse_params(value: str) -> dict:
    """Parse a JSON object of strategy parameters."""
    try:
        params = json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"Invalid --params JSON: {e}")
    if not isinstance(params, dict):
        raise argparse.ArgumentTypeError("--params must be a JSON object")
    return params


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Backtest a trading strategy over historical candles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m backtest --data btc_1m.csv --timeframes 1h,4h --strategy two_candle_retracement
  python -m backtest --data btc_1h.csv --data btc_4h.csv --timeframes 1h,4h --strategy-file my.py
  python -m backtest --data btc_1h.csv --strategy buy_and_hold --params '{"size": 0.5}'
  python -m backtest --list-strategies
        """,
    )

    parser.add_argument(
        "--list-strategies",
        action="store_true",
        help="List built-in strategies",
    )
    parser.add_argument(
        "--data",
        action="append",
        default=[],
        help="Candle CSV file; repeat once per timeframe to supply pre-aggregated data",
    )
    strategy = parser.add_mutually_exclusive_group()
    strategy.add_argument(
        "--strategy",
        type=str,
        default=None,
        help="Name of a built-in strategy",
    )
    strategy.add_argument(
        "--strategy-file",
        type=Path,
        default=None,
        help="Python file defining strategy(ctx); runs sandboxed",
    )
    parser.add_argument(
        "--timeframes",
        type=str,
        default=None,
        help="Comma-separated timeframes or JSON array (default: BACKTEST_TIMEFRAMES or 1h)",
    )
    parser.add_argument("--commission", type=float, default=None, help="Commission fraction")
    parser.add_argument("--slippage", type=float, default=None, help="Slippage fraction")
    parser.add_argument(
        "--initial-capital", type=float, default=None, help="Starting capital"
    )
    parser.add_argument(
        "--params",
        type=parse_params,
        default={},
        help="Strategy parameters as a JSON object",
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Output file path for JSON results",
    )
    parser.add_argument(
        "--trades-csv",
        type=str,
        default=None,
        help="Trade CSV path (default: <output_dir>/trades_<run_id>.csv)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )
    return parser.parse_args(argv)


def cmd_list_strategies() -> None:
    """List built-in strategies."""
    print("\nBuilt-in strategies:")
    for name in list_strategies():
        print(f"  {name}")
    print()


async def cmd_run_backtest(args: argparse.Namespace) -> int:
    """Run a backtest. Returns the process exit code."""
    if not args.data:
        print("Error: at least one --data file is required")
        return 1
    if args.strategy is None and args.strategy_file is None:
        print("Error: --strategy or --strategy-file is required")
        return 1

    overrides = {
        key: value
        for key, value in {
            "commission": args.commission,
            "slippage": args.slippage,
            "initial_capital": args.initial_capital,
        }.items()
        if value is not None
    }
    settings = get_backtest_settings().model_copy(update=overrides)

    try:
        timeframes = (
            parse_timeframes(args.timeframes)
            if args.timeframes is not None
            else list(settings.timeframes)
        )
    except TimeframeError as e:
        print(f"Error: {e}")
        return 1

    print(f"\nData: {', '.join(args.data)}")
    print(f"Timeframes: {', '.join(timeframes)}")
    print(
        f"Costs: commission={settings.commission:.4%} slippage={settings.slippage:.4%} "
        f"capital={settings.initial_capital:,.2f}"
    )

    runner = BacktestRunner(settings=settings)

    try:
        if args.strategy_file is not None:
            code = args.strategy_file.read_text(encoding="utf-8")
            with SandboxedStrategy(code, timeout=settings.strategy_timeout) as strategy:
                report = await runner.run(
                    strategy, args.data, timeframes, args.params, args.trades_csv
                )
            title = args.strategy_file.name
        else:
            strategy = create_strategy(args.strategy)
            report = await runner.run(
                strategy, args.data, timeframes, args.params, args.trades_csv
            )
            title = args.strategy
    except (DataError, TimeframeError, StrategyError, KeyError, OSError) as e:
        print(f"Error: {e}")
        return 1

    ReportFormatter.print_console(report.result, title=title)
    if report.trades_path is not None:
        print(f"\nTrades exported to {report.trades_path}")

    if args.output:
        ReportFormatter.save_json(report.result, args.output)
    return 0


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    if args.list_strategies:
        cmd_list_strategies()
        return 0
    return await cmd_run_backtest(args)


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
