"""Rendering and parsing of the run timestamp used as the object key prefix."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from .exceptions import MalformedTimestamp

DATETIME_LAYOUT = "%d-%m-%Y-%H:%M:%S"

_LAYOUT_PATTERN = re.compile(r"\d{2}-\d{2}-\d{4}-\d{2}:\d{2}:\d{2}")


def render_time(instant: datetime) -> str:
    if instant.tzinfo is not None:
        instant = instant.astimezone(timezone.utc)
    # glibc strftime leaves %Y unpadded below year 1000
    return f"{instant:%d-%m}-{instant.year:04d}-{instant:%H:%M:%S}"


def parse_time(text: str) -> datetime:
    """Parse a run timestamp into an aware UTC datetime.

    strptime accepts unpadded fields, so the fixed-width shape is checked first.
    """
    if not isinstance(text, str) or not _LAYOUT_PATTERN.fullmatch(text):
        raise MalformedTimestamp(f"Timestamp {text!r} does not match layout {DATETIME_LAYOUT}")
    try:
        parsed = datetime.strptime(text, DATETIME_LAYOUT)
    except ValueError as exc:
        raise MalformedTimestamp(f"Timestamp {text!r} is out of range: {exc}") from exc
    return parsed.replace(tzinfo=timezone.utc)
