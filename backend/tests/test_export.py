"""Tests for trade CSV export and the JSON report."""

import csv
import json
import math
from datetime import datetime, timezone

from backtest.export import TRADE_COLUMNS, TradeExporter, export_trades, format_instant
from backtest.models import BacktestRunResult, EquityPoint, Side, Trade
from backtest.report import ReportFormatter
from backtest.stats import BacktestMetrics


def make_trade(pnl: float = 2.5, side: Side = Side.LONG) -> Trade:
    return Trade(
        entry_time=datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc),
        exit_time=datetime(2024, 1, 1, 4, 0, 0, 123456, tzinfo=timezone.utc),
        side=side,
        size=1.0,
        entry_price=101.0505,
        exit_price=103.44825,
        pnl=pnl,
        pnl_percent=2.17,
        entry_index=0,
        exit_index=4,
        meta={"reason": "test"},
    )


def read_rows(path):
    with open(path, newline="") as f:
        return list(csv.reader(f))


class TestFormatInstant:

    def test_utc_with_milliseconds(self):
        ts = datetime(2024, 1, 1, 4, 0, 0, 123456, tzinfo=timezone.utc)

        assert format_instant(ts) == "2024-01-01T04:00:00.123Z"

    def test_naive_treated_as_utc(self):
        assert format_instant(datetime(2024, 1, 1)) == "2024-01-01T00:00:00.000Z"


class TestTradeExporter:

    def test_header_and_rows(self, tmp_path):
        path = TradeExporter.export([make_trade(), make_trade(-1, Side.SHORT)], tmp_path / "t.csv")

        rows = read_rows(path)
        assert rows[0] == TRADE_COLUMNS
        assert rows[0] == [
            "Entry Time", "Exit Time", "Side", "Size",
            "Entry Price", "Exit Price", "P&L", "P&L %",
        ]
        assert rows[1][:3] == ["2024-01-01T00:00:00.000Z", "2024-01-01T04:00:00.123Z", "LONG"]
        assert float(rows[1][6]) == 2.5
        assert rows[2][2] == "SHORT"
        assert len(rows) == 3

    def test_creates_parent_directories(self, tmp_path):
        target = tmp_path / "nested" / "deeper" / "trades.csv"

        export_trades([make_trade()], target)

        assert target.exists()

    def test_empty_trade_list_writes_header_only(self, tmp_path):
        rows = read_rows(export_trades([], tmp_path / "empty.csv"))

        assert rows == [TRADE_COLUMNS]


class TestReportFormatter:

    def make_result(self, profit_factor: float = math.inf) -> BacktestRunResult:
        ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return BacktestRunResult(
            trades=[make_trade()],
            metrics=BacktestMetrics(total_trades=1, wins=1, profit_factor=profit_factor),
            final_capital=10002.5,
            equity_curve=[EquityPoint(ts, 10000.0), EquityPoint(ts, 10002.5)],
            primary_timeframe="1h",
            total_candles=2,
        )

    def test_to_dict_infinite_profit_factor(self):
        data = ReportFormatter.to_dict(self.make_result())

        assert data["metrics"]["profit_factor"] == "Infinity"
        assert data["final_capital"] == 10002.5
        assert data["trades"][0]["side"] == "LONG"
        assert data["trades"][0]["exit_time"] == "2024-01-01T04:00:00.123Z"

    def test_save_json_round_trips(self, tmp_path, capsys):
        path = tmp_path / "out" / "result.json"

        ReportFormatter.save_json(self.make_result(profit_factor=1.5), path)

        data = json.loads(path.read_text())
        assert data["metrics"]["profit_factor"] == 1.5
        assert data["metadata"]["primary_timeframe"] == "1h"
        assert len(data["equity_curve"]) == 2

    def test_print_console(self, capsys):
        ReportFormatter.print_console(self.make_result(), title="unit")

        out = capsys.readouterr().out
        assert "BACKTEST RESULTS — unit" in out
        assert "Total trades:   1" in out
        assert "LONG" in out
