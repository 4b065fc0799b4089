"""Tests for timeframe label parsing."""

import pytest

from market.timeframe import (
    InvalidTimeframe,
    TimeframeError,
    is_valid_timeframe,
    parse_timeframes,
    timeframe_to_ms,
)


class TestTimeframeToMs:
    """Label -> bucket duration."""

    @pytest.mark.parametrize(
        "label, expected",
        [
            ("1m", 60_000),
            ("5m", 300_000),
            ("1h", 3_600_000),
            ("4h", 14_400_000),
            ("1d", 86_400_000),
            ("2D", 172_800_000),
        ],
    )
    def test_valid_labels(self, label, expected):
        assert timeframe_to_ms(label) == expected

    @pytest.mark.parametrize("label", ["", "h", "1w", "1.5h", "m5", "0m", "1 h", "abc"])
    def test_invalid_labels_raise(self, label):
        with pytest.raises(TimeframeError):
            timeframe_to_ms(label)

    def test_invalid_timeframe_alias(self):
        assert InvalidTimeframe is TimeframeError
        with pytest.raises(ValueError, match="Invalid timeframe"):
            timeframe_to_ms("1y")

    def test_is_valid_timeframe(self):
        assert is_valid_timeframe("15m")
        assert not is_valid_timeframe("15s")


class TestParseTimeframes:
    """List / JSON / comma-separated normalization."""

    def test_list_passthrough(self):
        assert parse_timeframes(["1h", "4h"]) == ["1h", "4h"]

    def test_comma_separated(self):
        assert parse_timeframes(" 1h, 4h ,1d ") == ["1h", "4h", "1d"]

    def test_json_array(self):
        assert parse_timeframes('["5m", "1h"]') == ["5m", "1h"]

    def test_empty_defaults_to_1h(self):
        assert parse_timeframes("") == ["1h"]
        assert parse_timeframes(None) == ["1h"]
        assert parse_timeframes([]) == ["1h"]

    def test_invalid_entry_raises(self):
        with pytest.raises(TimeframeError):
            parse_timeframes("1h,bogus")
