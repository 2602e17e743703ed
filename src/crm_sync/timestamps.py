"""Timestamp parsing shared by adapters and the field mapping engine.

Providers disagree on formats: HubSpot sends ISO-8601 with ``Z`` or epoch
milliseconds, Salesforce sends ``2024-03-01T10:00:00.000+0000`` and Pipedrive
sends naive ``2024-03-01 10:00:00`` in UTC. Everything is normalized to
timezone-aware UTC datetimes so comparisons are exact to the microsecond.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a provider timestamp into an aware UTC datetime.

    Accepts datetimes, dates, epoch seconds/milliseconds (int, float or
    numeric string) and ISO-8601 strings. Naive values are taken as UTC.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))

    text = str(value).strip()
    if re.fullmatch(r"-?\d+(\.\d+)?", text):
        return _from_epoch(float(text))

    text = text.replace(" ", "T", 1) if "T" not in text else text
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET.sub(r"\1:\2", text)
    return to_utc(datetime.fromisoformat(text))


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_epoch(number: float) -> datetime:
    # Values past year ~2286 in seconds are milliseconds
    if abs(number) > 1e10:
        number = number / 1000.0
    return datetime.fromtimestamp(number, tz=timezone.utc)


def max_timestamp(*values: datetime | None) -> datetime | None:
    present = [v for v in values if v is not None]
    return max(present) if present else None
