"""Two-month reporting periods used as leaderboard partition keys.

Labels look like ``2025-JulAug``. They are written into every attempt row, so
the mapping below must never change: a different label for the same month
splits a user's attempts across two unrelated periods.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional, Union

PERIOD_BUCKETS = ("JanFeb", "MarApr", "MayJun", "JulAug", "SepOct", "NovDec")

_PERIOD_PATTERN = re.compile(r"^(?P<year>\d{4})-(?P<bucket>" + "|".join(PERIOD_BUCKETS) + r")$")

Timestamp = Union[datetime, int, float]


def _as_datetime(timestamp: Timestamp, tz: tzinfo) -> datetime:
    if isinstance(timestamp, datetime):
        value = timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=timezone.utc)
        return value.astimezone(tz)
    # epoch milliseconds
    return datetime.fromtimestamp(timestamp / 1000, tz=tz)


def period_of(timestamp: Timestamp, tz: Optional[tzinfo] = None) -> str:
    """Return the period label containing ``timestamp``.

    ``timestamp`` is a datetime (naive values are read as UTC) or epoch
    milliseconds. ``tz`` selects the calendar used to read the month.
    """
    moment = _as_datetime(timestamp, tz or timezone.utc)
    bucket = PERIOD_BUCKETS[(moment.month - 1) // 2]
    return f"{moment.year}-{bucket}"


def current_period(
    clock: Optional[Callable[[], datetime]] = None,
    tz: Optional[tzinfo] = None,
) -> str:
    now = clock() if clock else datetime.now(timezone.utc)
    return period_of(now, tz)


def is_period_label(value: str) -> bool:
    return bool(_PERIOD_PATTERN.match(value or ""))


__all__ = ["PERIOD_BUCKETS", "current_period", "is_period_label", "period_of"]
