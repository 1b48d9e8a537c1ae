"""ISO-8601 interval parsing for the dashboard ``range`` parameter.

Accepted forms::

    2025-01-15T10:00:00Z/2025-01-15T11:00:00Z    start/end
    2025-01-15T10:00:00Z/PT1H                    start/duration
    PT1H/2025-01-15T11:00:00Z                    duration/end
    PT1H                                         duration ending now

Naive datetimes are taken as UTC.  Any parse failure raises
``ValidationError`` (→ HTTP 400), never a 500.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from lugx_analytics.utils.errors import ValidationError

__all__ = ["parse_range", "DEFAULT_RANGE"]

DEFAULT_RANGE = timedelta(hours=24)

_datetime_adapter = TypeAdapter(datetime)
_duration_adapter = TypeAdapter(timedelta)


def _is_duration(part: str) -> bool:
    return part[:1].upper() == "P"


def _parse_datetime(part: str) -> datetime:
    try:
        ts = _datetime_adapter.validate_python(part)
    except PydanticValidationError as exc:
        raise ValidationError("invalid_range", f"unparsable datetime {part!r}") from exc
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _parse_duration(part: str) -> timedelta:
    try:
        duration = _duration_adapter.validate_python(part)
    except PydanticValidationError as exc:
        raise ValidationError("invalid_range", f"unparsable duration {part!r}") from exc
    if duration <= timedelta(0):
        raise ValidationError("invalid_range", "duration must be positive")
    return duration


def parse_range(value: Optional[str], now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    now = now or datetime.now(timezone.utc)
    if value is None or not value.strip():
        return now - DEFAULT_RANGE, now
    try:
        return _resolve(value.strip(), now)
    except OverflowError as exc:
        raise ValidationError("invalid_range", "interval out of range") from exc


def _resolve(value: str, now: datetime) -> Tuple[datetime, datetime]:
    parts = value.split("/")
    if len(parts) == 1:
        if not _is_duration(parts[0]):
            raise ValidationError("invalid_range", "a single value must be an ISO-8601 duration")
        start, end = now - _parse_duration(parts[0]), now
    elif len(parts) == 2:
        left, right = (p.strip() for p in parts)
        if not left or not right:
            raise ValidationError("invalid_range", "both interval ends are required")
        if _is_duration(left) and _is_duration(right):
            raise ValidationError("invalid_range", "an interval cannot be two durations")
        if _is_duration(left):
            end = _parse_datetime(right)
            start = end - _parse_duration(left)
        elif _is_duration(right):
            start = _parse_datetime(left)
            end = start + _parse_duration(right)
        else:
            start, end = _parse_datetime(left), _parse_datetime(right)
    else:
        raise ValidationError("invalid_range", "expected <start>/<end>")

    if start >= end:
        raise ValidationError("invalid_range", "range start must be before its end")
    return start, end
