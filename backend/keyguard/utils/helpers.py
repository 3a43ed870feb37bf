"""Miscellaneous time helpers.

Rate-limit windows are tracked in epoch milliseconds; audit records use
timezone-aware UTC datetimes.
"""

from __future__ import annotations

import datetime as dt
import time
from typing import Optional, Union


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def as_utc(value: Union[str, dt.datetime, None]) -> Optional[dt.datetime]:
    """Coerce a database timestamp into an aware UTC ``datetime``.

    SQLite hands back naive datetimes (or ISO strings for aggregates such as
    ``MAX(created_at)``); both are interpreted as UTC.  Returns ``None`` if
    the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, str):
        parsed = parse_iso_datetime(value)
        if parsed is None:
            return None
        value = parsed
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def parse_iso_datetime(value: str | None) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into a :class:`datetime` object.

    Accepts a lowercase ``z`` as the UTC designator and returns ``None`` if
    the value cannot be parsed.
    """
    if not value:
        return None
    try:
        if value.endswith(("z", "Z")):
            value = value[:-1] + "+00:00"
        return dt.datetime.fromisoformat(value)
    except ValueError:
        return None
