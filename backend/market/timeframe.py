"""Timeframe labels ("1m", "4h", "1d") and their bucket durations."""

from __future__ import annotations

import json
import re

TIMEFRAME_PATTERN = re.compile(r"^(\d+)(m|h|d)$")

UNIT_MS = {
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
}

DEFAULT_TIMEFRAMES = ["1h"]


class TimeframeError(ValueError):
    """Raised when a timeframe label cannot be parsed."""

    def __init__(self, label: object):
        self.label = label
        super().__init__(
            f"Invalid timeframe: {label!r} (expected <number><m|h|d>, e.g. 5m, 4h, 1d)"
        )


# Name used by callers that think of it as a validation failure
InvalidTimeframe = TimeframeError


def timeframe_to_ms(label: str) -> int:
    """Convert a timeframe label to its bucket duration in milliseconds.

    Raises:
        TimeframeError: If the label does not match <number><m|h|d>.
    """
    match = TIMEFRAME_PATTERN.match(str(label).strip().lower())
    if not match:
        raise TimeframeError(label)
    count = int(match.group(1))
    if count == 0:
        raise TimeframeError(label)
    return count * UNIT_MS[match.group(2)]


def is_valid_timeframe(label: str) -> bool:
    try:
        timeframe_to_ms(label)
    except TimeframeError:
        return False
    return True


def parse_timeframes(value: str | list[str] | None) -> list[str]:
    """Normalize a timeframe list given as a list, JSON array or CSV string.

    Labels are lowercased and blank entries dropped; an empty result
    falls back to ["1h"].
    Every label is validated.
    """
    if value is None:
        labels: list[str] = []
    elif isinstance(value, str):
        text = value.strip()
        labels = []
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, list):
                labels = [str(item) for item in decoded]
        if not labels:
            labels = text.strip("[]").split(",")
    else:
        labels = [str(item) for item in value]

    labels = [label.strip().strip("\"'").lower() for label in labels]
    labels = [label for label in labels if label]
    if not labels:
        return list(DEFAULT_TIMEFRAMES)

    for label in labels:
        timeframe_to_ms(label)
    return labels
