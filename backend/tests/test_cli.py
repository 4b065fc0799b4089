"""Tests for the command-line entry point."""

import json

import pytest

from backtest import config
from backtest.__main__ import main
from backtest.config import BacktestSettings

HOURLY = """
timestamp,open,high,low,close,volume
2024-01-01 00:00:00,100,102,99,101,1000
2024-01-01 01:00:00,101,103,100,102,1000
2024-01-01 02:00:00,102,104,101,103,1000
2024-01-01 03:00:00,103,104,102,102.5,1000
2024-01-01 04:00:00,102.5,104,102,103.5,1000
"""


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    settings = BacktestSettings(_env_file=None, output_dir=str(tmp_path / "results"))
    monkeypatch.setattr(config, "_settings", settings)
    return settings


@pytest.fixture
def data_file(tmp_path):
    path = tmp_path / "1h.csv"
    path.write_text(HOURLY.strip() + "\n", encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_list_strategies(capsys):
    assert await main(["--list-strategies"]) == 0
    assert "two_candle_retracement" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_requires_data(capsys):
    assert await main(["--strategy", "hold"]) == 1
    assert "--data" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_run_builtin_with_json_output(tmp_path, data_file, capsys):
    output = tmp_path / "result.json"

    code = await main([
        "--data", str(data_file),
        "--strategy", "buy_and_hold",
        "--params", '{"last_index": 4}',
        "--commission", "0",
        "--slippage", "0",
        "--output", str(output),
    ])

    assert code == 0
    data = json.loads(output.read_text())
    assert data["metrics"]["total_trades"] == 1
    assert data["trades"][0]["entry_index"] == 0
    assert "Trades exported to" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_invalid_timeframe(data_file, capsys):
    code = await main(["--data", str(data_file), "--strategy", "hold", "--timeframes", "1w"])

    assert code == 1
    assert "Error" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_unknown_strategy(data_file, capsys):
    code = await main(["--data", str(data_file), "--strategy", "nope"])

    assert code == 1
    assert "Unknown strategy" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_strategy_file_runs_sandboxed(tmp_path, data_file):
    source = tmp_path / "mine.py"
    source.write_text(
        "def strategy(ctx):\n"
        "    return 'BUY' if ctx.index == 1 else 'HOLD'\n",
        encoding="utf-8",
    )
    trades = tmp_path / "trades.csv"

    code = await main([
        "--data", str(data_file),
        "--strategy-file", str(source),
        "--trades-csv", str(trades),
    ])

    assert code == 0
    assert len(trades.read_text().strip().splitlines()) == 2
