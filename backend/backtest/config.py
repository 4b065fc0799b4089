"""Backtest configuration.

Defaults are 0.1% commission, 0.05% slippage, 10,000 starting capital
and a single 1h timeframe. Every value can be overridden with a
BACKTEST_-prefixed environment variable or .env entry.
"""

from __future__ import annotations

from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from market.timeframe import parse_timeframes


class BacktestSettings(BaseSettings):
    """Backtest configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BACKTEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cost model (fractions of notional)
    commission: float = 0.001
    slippage: float = 0.0005

    initial_capital: float = 10000.0
    # Accepts "1h,4h" as well as a JSON array
    timeframes: Annotated[list[str], NoDecode] = ["1h"]

    # Wall-clock budget for one strategy call, in seconds
    strategy_timeout: float = 1.0

    # Where trade CSVs are written when the runner exports
    output_dir: str = "backtest_results"

    @field_validator("timeframes", mode="before")
    @classmethod
    def _parse_timeframes(cls, value):
        return parse_timeframes(value)

    @field_validator("commission", "slippage")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("cost fractions must be >= 0")
        return value


_settings: BacktestSettings | None = None


def get_backtest_settings() -> BacktestSettings:
    """Get cached backtest settings instance."""
    global _settings
    if _settings is None:
        _settings = BacktestSettings()
    return _settings
