"""Millisecond wall-clock helpers.

Stored documents carry epoch milliseconds, so every service takes a
``Clock`` (a zero-argument callable returning epoch ms) and tests pass a
controllable one.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import date, datetime, timezone

Clock = Callable[[], int]

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


def system_clock() -> int:
    """Current epoch time in milliseconds."""
    return int(time.time() * 1000)


def to_datetime(ms: int) -> datetime:
    """Convert epoch ms to an aware UTC datetime."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def to_iso(ms: int) -> str:
    """ISO-8601 string with millisecond precision, e.g. '2026-02-23T10:00:00.000Z'."""
    return to_datetime(ms).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def date_key(ms: int) -> str:
    """Calendar day (UTC) of an epoch ms timestamp as 'YYYY-MM-DD'."""
    return to_datetime(ms).date().isoformat()


def parse_date_key(key: str) -> date:
    """Parse a 'YYYY-MM-DD' history key."""
    return date.fromisoformat(key)


def same_day(a_ms: int, b_ms: int) -> bool:
    """True if both timestamps fall on the same UTC calendar day."""
    return date_key(a_ms) == date_key(b_ms)
