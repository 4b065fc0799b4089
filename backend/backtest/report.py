"""Report formatting for backtest results.

Outputs results to console (formatted tables) and JSON files.
"""

from __future__ import annotations

import json
import math
from datetime import datetime
from enum import Enum
from pathlib import Path

from backtest.export import format_instant
from backtest.models import BacktestRunResult


class ReportEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, datetime):
            return format_instant(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def _json_number(value: float):
    # JSON has no infinity literal
    if isinstance(value, float) and math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    return value


class ReportFormatter:
    """Format backtest results for display and export."""

    @staticmethod
    def print_console(result: BacktestRunResult, title: str = "Backtest") -> None:
        """Print formatted report to console."""
        m = result.metrics

        print("\n" + "=" * 70)
        print(f"  BACKTEST RESULTS — {title}")
        print("=" * 70)
        print(f"  Candles:        {result.total_candles}")
        if result.primary_timeframe:
            print(f"  Primary TF:     {result.primary_timeframe}")
        if result.equity_curve:
            start = result.equity_curve[0].timestamp
            end = result.equity_curve[-1].timestamp
            print(f"  Period:         {start:%Y-%m-%d %H:%M} → {end:%Y-%m-%d %H:%M}")

        print("\n" + "-" * 70)
        print("  OVERALL")
        print("-" * 70)
        print(f"  Total trades:   {m.total_trades}")
        print(f"  Wins:           {m.wins}")
        print(f"  Losses:         {m.losses}")
        print(f"  Win rate:       {m.win_rate:.2f}%")
        print(f"  Net P&L:        {m.net_pnl:+.2f}")
        print(f"  ROI:            {m.roi:+.2f}%")
        print(f"  Final capital:  {result.final_capital:.2f}")
        print(f"  Expectancy:     {m.expectancy:+.2f} per trade")
        print(f"  Avg win/loss:   {m.average_win:.2f} / {m.average_loss:.2f}")
        print(f"  Profit factor:  {m.profit_factor:.2f}")
        print(f"  Max drawdown:   {m.max_drawdown:.2f} ({m.max_drawdown_percent:.2f}%)")
        print(f"  Sharpe ratio:   {m.sharpe_ratio:.2f}")

        if result.trades:
            print("\n" + "-" * 70)
            print("  TRADES (last 10)")
            print("-" * 70)
            print(
                f"  {'Entry':<17} {'Exit':<17} {'Side':<6} {'Size':>7} "
                f"{'P&L':>10} {'P&L%':>8}"
            )
            for t in result.trades[-10:]:
                print(
                    f"  {t.entry_time:%Y-%m-%d %H:%M} {t.exit_time:%Y-%m-%d %H:%M} "
                    f"{t.side.value:<6} {t.size:>7.3f} {t.pnl:>+10.2f} {t.pnl_percent:>+7.2f}%"
                )

        print("\n" + "=" * 70)

    @staticmethod
    def to_dict(result: BacktestRunResult) -> dict:
        """Convert results to JSON-serializable dict."""
        metrics = {
            key: _json_number(value) for key, value in result.metrics.to_dict().items()
        }
        return {
            "metadata": {
                "primary_timeframe": result.primary_timeframe,
                "total_candles": result.total_candles,
            },
            "final_capital": round(result.final_capital, 2),
            "metrics": metrics,
            "trades": [
                {
                    "entry_time": format_instant(t.entry_time),
                    "exit_time": format_instant(t.exit_time),
                    "side": t.side.value,
                    "size": t.size,
                    "entry_price": t.entry_price,
                    "exit_price": t.exit_price,
                    "pnl": t.pnl,
                    "pnl_percent": t.pnl_percent,
                    "entry_index": t.entry_index,
                    "exit_index": t.exit_index,
                    "meta": t.meta,
                }
                for t in result.trades
            ],
            "equity_curve": [
                {"timestamp": format_instant(p.timestamp), "equity": round(p.equity, 2)}
                for p in result.equity_curve
            ],
        }

    @staticmethod
    def save_json(result: BacktestRunResult, filepath: str | Path) -> None:
        """Save results to JSON file."""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        data = ReportFormatter.to_dict(result)
        with open(filepath, "w") as f:
            json.dump(data, f, indent=2, cls=ReportEncoder)
        print(f"\nResults saved to {filepath}")
