"""Duration parsing utilities."""

import re
import time
from datetime import timedelta

from infoline.errors import ConfigurationError
from infoline.types import Duration

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)\s*$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration | timedelta) -> int:
    """Parse a duration into whole milliseconds.

    Integers are taken as milliseconds, strings as ``<number><unit>``
    (``"100ms"``, ``"1.5s"``, ``"5m"``) and bare digit strings as
    milliseconds.
    """
    if isinstance(duration, bool):
        raise ConfigurationError(f"Invalid duration: {duration!r}")
    if isinstance(duration, timedelta):
        return int(duration.total_seconds() * 1000)
    if isinstance(duration, int):
        if duration < 0:
            raise ConfigurationError(f"Duration must not be negative: {duration}")
        return duration
    if isinstance(duration, str) and duration.strip().isdigit():
        return int(duration.strip())

    match = _DURATION_PATTERN.match(duration) if isinstance(duration, str) else None
    if not match:
        raise ConfigurationError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    return int(float(value) * _UNITS[unit])


def to_seconds(milliseconds: int) -> float:
    return milliseconds / 1000


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)
