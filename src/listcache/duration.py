"""Duration parsing utilities."""

import re
from datetime import timedelta

from listcache.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+)(ms|s|m|h|d)?$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> int:
    """Parse a duration to milliseconds.

    Accepts "250ms", "30s", "5m", "2h", "1d", a bare number of milliseconds
    (int or digit string) or a timedelta.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, int):
        if duration < 0:
            raise ValueError(f"Duration must not be negative: {duration!r}")
        return duration
    if isinstance(duration, timedelta):
        if duration < timedelta(0):
            raise ValueError(f"Duration must not be negative: {duration!r}")
        return int(duration.total_seconds() * 1000)
    if not isinstance(duration, str):
        raise ValueError(f"Invalid duration: {duration!r}")

    match = _DURATION_PATTERN.match(duration.strip())
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    return int(value) * _UNITS[unit or "ms"]


def to_seconds(duration: Duration) -> float:
    """Parse a duration and return it in seconds, for asyncio timers."""
    return parse_duration(duration) / 1000
