"""BacktestRunner: orchestrates a backtest from CSV files to exported trades.

Pipeline:
- Load one or more candle CSVs through a CandleSource
- One file: raw series, aggregated by the engine into every timeframe
- Several files: mapped to the requested timeframes by order
- Reject the run up front when no valid candles remain
- Run the engine, then export the trade list

Each run gets a unique run_id for file naming and log correlation.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from market.models.candle import Candle
from market.timeframe import parse_timeframes

from backtest.config import BacktestSettings, get_backtest_settings
from backtest.engine import BacktestEngine, select_primary_timeframe
from backtest.errors import DataError, EmptyDatasetError
from backtest.export import TradeExporter
from backtest.models import BacktestRunResult
from backtest.storage.candle_source import CandleSource, CsvCandleSource

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """A finished runner invocation."""

    run_id: str
    result: BacktestRunResult
    trades_path: Path | None = None


def generate_run_id(
    settings: BacktestSettings, data_files: list[str], timeframes: list[str]
) -> str:
    """Generate a unique run ID from config + timestamp."""
    key = (
        f"{','.join(str(f) for f in data_files)}"
        f":{','.join(timeframes)}"
        f":{settings.commission}:{settings.slippage}:{settings.initial_capital}"
        f":{datetime.now(timezone.utc).isoformat()}"
    )
    return hashlib.sha256(key.encode()).hexdigest()[:16]


class BacktestRunner:
    """Load data, run one strategy, export its trades."""

    def __init__(
        self,
        settings: BacktestSettings | None = None,
        candle_source: CandleSource | None = None,
    ):
        self.settings = settings or get_backtest_settings()
        self._candle_source = candle_source or CsvCandleSource()

    def load_dataset(
        self, data_files: list[str | Path], timeframes: list[str]
    ) -> list[Candle] | dict[str, list[Candle]]:
        """Load candle files into engine input.

        Raises:
            DataError: File count does not match the timeframe count.
            EmptyDatasetError: No valid candles in the supplied files.
        """
        if not data_files:
            raise EmptyDatasetError("No data file supplied; provide at least one candle CSV")

        if len(data_files) == 1:
            candles = self._candle_source.load(data_files[0])
            if not candles:
                raise EmptyDatasetError(
                    f"No valid candles in {data_files[0]}; expected columns "
                    "timestamp,open,high,low,close[,volume]"
                )
            return candles

        if len(data_files) != len(timeframes):
            raise DataError(
                f"Got {len(data_files)} files but {len(timeframes)} timeframes; "
                "provide one timeframe per file"
            )

        dataset = {}
        for path, tf in zip(data_files, timeframes):
            dataset[tf] = self._candle_source.load(path)
            logger.info(f"  {tf}: {len(dataset[tf]):,} candles from {path}")
        # The smallest timeframe drives the simulation loop
        primary_tf = select_primary_timeframe(timeframes)
        if not dataset[primary_tf]:
            primary_file = data_files[timeframes.index(primary_tf)]
            raise EmptyDatasetError(
                f"No valid candles in {primary_file} ({primary_tf}, the primary "
                "timeframe); expected columns timestamp,open,high,low,close[,volume]"
            )
        return dataset

    async def run(
        self,
        strategy: Any,
        data_files: list[str | Path],
        timeframes: list[str] | str | None = None,
        params: dict[str, Any] | None = None,
        trades_path: str | Path | None = None,
        export: bool = True,
    ) -> RunReport:
        """Execute the full backtest pipeline.

        Raises:
            TimeframeError: A timeframe label is invalid.
            DataError: No usable data was supplied.
        """
        start_time = time.time()
        tfs = (
            parse_timeframes(timeframes)
            if timeframes is not None
            else list(self.settings.timeframes)
        )
        run_id = generate_run_id(self.settings, [str(f) for f in data_files], tfs)

        logger.info(
            f"Starting backtest run={run_id}: files={[str(f) for f in data_files]} "
            f"timeframes={tfs} params={json.dumps(params or {}, default=str)}"
        )

        data = self.load_dataset(list(data_files), tfs)

        engine = BacktestEngine.from_settings(
            self.settings.model_copy(update={"timeframes": tfs})
        )
        result = await engine.run(strategy, data, params or {})

        written = None
        if export:
            target = (
                Path(trades_path)
                if trades_path is not None
                else Path(self.settings.output_dir) / f"trades_{run_id}.csv"
            )
            written = TradeExporter.export(result.trades, target)

        elapsed = time.time() - start_time
        logger.info(
            f"Backtest run={run_id} completed in {elapsed:.1f}s: "
            f"{len(result.trades)} trades, final capital {result.final_capital:.2f}"
        )
        return RunReport(run_id=run_id, result=result, trades_path=written)
