"""Event validation – turns raw producer dicts into immutable ``Event``s.

``validate`` is a pure function: it never touches the buffer or the store,
and calling it twice on the same input (with the same ``now``) yields the
same result, including the derived ``event_id``.

Accepted shape::

    {
      "event_id": "optional stable id",
      "kind": "page_view" | "interaction" | "search" | "performance",
      "occurred_at": "2025-01-15T10:00:00Z",
      "session_id": "sess_123",
      "user_id": "user_9",            # optional
      "payload": {...}                 # kind-specific fields
    }

The storefront tracker's older field names (``event_type``, ``timestamp``,
``game_interaction``, ``game_id``, ``search_query``, ``interaction_type``)
are understood too.
"""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from lugx_analytics.models import Event, EventKind, RejectionReason

__all__ = ["validate", "KIND_FIELDS", "DEFAULT_MAX_FUTURE_SKEW"]

DEFAULT_MAX_FUTURE_SKEW = timedelta(hours=24)

_EVENT_ID_NAMESPACE = uuid.UUID("6f1c2d0e-8a4b-4f3e-9c57-1b2a3c4d5e6f")

_KIND_ALIASES = {"game_interaction": EventKind.interaction.value}

_datetime_adapter = TypeAdapter(datetime)


@dataclass(frozen=True)
class FieldRule:
    name: str
    aliases: Tuple[str, ...] = ()
    numeric: bool = False


# Required payload fields per kind.
KIND_FIELDS: Dict[EventKind, Tuple[FieldRule, ...]] = {
    EventKind.page_view: (FieldRule("page_url"),),
    EventKind.interaction: (FieldRule("target_id", aliases=("game_id",)),),
    EventKind.search: (FieldRule("query", aliases=("search_query",)),),
    EventKind.performance: (
        FieldRule("service_name"),
        FieldRule("metric_type"),
        FieldRule("metric_value", numeric=True),
    ),
}

# Optional payload fields that get renamed to their canonical name.
_OPTIONAL_ALIASES: Dict[EventKind, Dict[str, str]] = {
    EventKind.interaction: {"interaction_type": "action"},
}

# Kinds that may arrive without a browser session (server-side probes).
_SESSIONLESS_KINDS = {EventKind.performance}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # integers beyond float range
        return False


def _parse_kind(raw: Mapping[str, Any]) -> Optional[EventKind]:
    value = raw.get("kind")
    if _is_blank(value):
        value = raw.get("event_type")
    if not isinstance(value, str):
        return None
    value = _KIND_ALIASES.get(value.strip(), value.strip())
    try:
        return EventKind(value)
    except ValueError:
        return None


def _parse_occurred_at(raw: Mapping[str, Any], now: datetime, max_future_skew: timedelta) -> Optional[datetime]:
    value = raw.get("occurred_at")
    if _is_blank(value):
        value = raw.get("timestamp")
    if _is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        ts = _datetime_adapter.validate_python(value)
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        ts = ts.astimezone(timezone.utc)
        # millisecond precision, matching DateTime64(3) in the store
        ts = ts.replace(microsecond=(ts.microsecond // 1000) * 1000)
        if ts > now + max_future_skew:
            return None
    except (PydanticValidationError, TypeError, ValueError, OverflowError):
        # includes offsets that push the instant past datetime.min/max
        return None
    return ts


def _normalise_payload(kind: EventKind, payload: Mapping[str, Any]) -> Union[Dict[str, Any], RejectionReason]:
    out = dict(payload)
    for rule in KIND_FIELDS[kind]:
        value = out.get(rule.name)
        if _is_blank(value):
            value = next((out[a] for a in rule.aliases if not _is_blank(out.get(a))), None)
        if _is_blank(value):
            return RejectionReason.missing_field
        if rule.numeric:
            if not _is_finite_number(value):
                return RejectionReason.missing_field
        out[rule.name] = value
    for alias, name in _OPTIONAL_ALIASES.get(kind, {}).items():
        if _is_blank(out.get(name)) and not _is_blank(out.get(alias)):
            out[name] = out[alias]
    return out


def _derive_event_id(kind: EventKind, occurred_at: datetime, session_id: str, user_id: Optional[str], payload: Dict[str, Any]) -> str:
    canonical = json.dumps(
        [kind.value, occurred_at.isoformat(), session_id, user_id, payload],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return str(uuid.uuid5(_EVENT_ID_NAMESPACE, canonical))


def validate(
    raw: Any,
    *,
    now: Optional[datetime] = None,
    max_future_skew: timedelta = DEFAULT_MAX_FUTURE_SKEW,
) -> Union[Event, RejectionReason]:
    """Return an ``Event`` for a well-formed record, otherwise the reason it was refused."""
    if not isinstance(raw, Mapping):
        return RejectionReason.malformed_event

    kind = _parse_kind(raw)
    if kind is None:
        return RejectionReason.unknown_kind

    now = now or datetime.now(timezone.utc)
    occurred_at = _parse_occurred_at(raw, now, max_future_skew)
    if occurred_at is None:
        return RejectionReason.bad_timestamp

    session_id = raw.get("session_id")
    if _is_blank(session_id):
        if kind not in _SESSIONLESS_KINDS:
            return RejectionReason.missing_field
        session_id = ""

    payload = raw.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        return RejectionReason.malformed_event
    normalised = _normalise_payload(kind, payload)
    if isinstance(normalised, RejectionReason):
        return normalised

    user_id = raw.get("user_id")
    user_id = None if _is_blank(user_id) else str(user_id)
    session_id = str(session_id)

    event_id = raw.get("event_id")
    if _is_blank(event_id) or not isinstance(event_id, (str, int)) or isinstance(event_id, bool):
        event_id = _derive_event_id(kind, occurred_at, session_id, user_id, normalised)

    return Event(
        event_id=str(event_id).strip(),
        kind=kind,
        occurred_at=occurred_at,
        session_id=session_id,
        user_id=user_id,
        payload=normalised,
    )
