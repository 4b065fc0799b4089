"""Candle (OHLCV bar) data model."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, field_validator


class Candle(BaseModel):
    """One OHLCV bar for a fixed time bucket."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        # Naive timestamps are treated as UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def timestamp_ms(self) -> int:
        """Epoch milliseconds of the candle start."""
        return int(self.timestamp.timestamp() * 1000)

    @property
    def is_bullish(self) -> bool:
        """Check if this is a bullish (green) candle."""
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        """Check if this is a bearish (red) candle."""
        return self.close < self.open

    @property
    def range_size(self) -> float:
        """Get the full range (high - low) of the candle."""
        return self.high - self.low
