from __future__ import annotations

"""Unified domain models namespace – events, batches, rollups and results.

Plain dataclasses and enums shared by the pipeline components.  HTTP request
and response bodies live in ``lugx_analytics.schemas`` (Pydantic) so the
core never depends on the web layer::

    from lugx_analytics.models import Event, EventKind, RollupBucket
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventKind(str, Enum):
    page_view = "page_view"
    interaction = "interaction"
    search = "search"
    performance = "performance"


class RejectionReason(str, Enum):
    """Why a raw event (or a submit) was refused before reaching the sink."""
    unknown_kind = "UnknownKind"
    bad_timestamp = "BadTimestamp"
    missing_field = "MissingField"
    malformed_event = "MalformedEvent"
    busy = "Busy"


class SubmitOutcome(str, Enum):
    accepted = "accepted"
    busy = "busy"
    closed = "closed"


# Dimension row holding the per-window total of a kind.
TOTAL_DIMENSION = "*"


# ---------------------------------------------------------------------------
# Events & batches
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """A validated, immutable analytics fact."""
    event_id: str
    kind: EventKind
    occurred_at: datetime
    session_id: str
    user_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict, compare=True, hash=False)

    def to_row(self) -> Dict[str, Any]:
        """Flat row as stored in ``events_raw`` (payload kept as JSON text)."""
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "occurred_at": format_ts(self.occurred_at),
            "session_id": self.session_id,
            "user_id": self.user_id,
            "payload": json.dumps(self.payload, sort_keys=True, separators=(",", ":")),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Event":
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload) if payload else {}
        return cls(
            event_id=row["event_id"],
            kind=EventKind(row["kind"]),
            occurred_at=parse_ts(row["occurred_at"]),
            session_id=row.get("session_id") or "",
            user_id=row.get("user_id"),
            payload=payload,
        )


@dataclass(frozen=True)
class Batch:
    """Frozen group of same-kind events handed from a buffer to the sink."""
    batch_id: str
    kind: EventKind
    events: Tuple[Event, ...]

    def __len__(self) -> int:
        return len(self.events)

    def split(self) -> Tuple["Batch", "Batch"]:
        """Halve the batch; sub-batches get derived ids so dedup tokens stay unique."""
        mid = len(self.events) // 2
        return (
            Batch(f"{self.batch_id}.0", self.kind, self.events[:mid]),
            Batch(f"{self.batch_id}.1", self.kind, self.events[mid:]),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class Rejection:
    index: int
    reason: RejectionReason


@dataclass
class IngestionResult:
    accepted: int = 0
    rejected: List[Rejection] = field(default_factory=list)
    dead_lettered: int = 0

    @property
    def busy(self) -> int:
        return sum(1 for r in self.rejected if r.reason is RejectionReason.busy)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "rejected": [{"index": r.index, "reason": r.reason.value} for r in self.rejected],
            "dead_lettered": self.dead_lettered,
        }


@dataclass
class InsertOutcome:
    """What the store reports for one bulk insert."""
    inserted: int
    # event_id -> reason for records the store refused individually
    rejected: Dict[str, str] = field(default_factory=dict)


@dataclass
class WriteResult:
    batch_id: str
    kind: EventKind
    written: int = 0
    dead_lettered: int = 0
    # records that could not even be dead-lettered
    lost: int = 0
    attempts: int = 0


@dataclass
class DeadLetterRecord:
    kind: EventKind
    event_id: str
    reason: str
    event: Dict[str, Any]
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_event(cls, event: Event, reason: str) -> "DeadLetterRecord":
        return cls(kind=event.kind, event_id=event.event_id, reason=reason, event=event.to_row())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "event_id": self.event_id,
            "reason": self.reason,
            "event": self.event,
            "failed_at": self.failed_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Rollups
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RollupBucket:
    """Aggregate of one kind over one window for one dimension value.

    Distinct session/user ids are kept as sets so buckets merge exactly.
    """
    kind: EventKind
    bucket_start: datetime
    dimension: str
    count: int = 0
    total: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    session_ids: frozenset = frozenset()
    user_ids: frozenset = frozenset()
    finalized: bool = False

    @property
    def unique_sessions(self) -> int:
        return len(self.session_ids)

    @property
    def unique_users(self) -> int:
        return len(self.user_ids)

    def merge(self, other: "RollupBucket") -> "RollupBucket":
        return RollupBucket(
            kind=self.kind,
            bucket_start=self.bucket_start,
            dimension=self.dimension,
            count=self.count + other.count,
            total=self.total + other.total,
            minimum=_opt(min, self.minimum, other.minimum),
            maximum=_opt(max, self.maximum, other.maximum),
            session_ids=self.session_ids | other.session_ids,
            user_ids=self.user_ids | other.user_ids,
            finalized=self.finalized and other.finalized,
        )

    def to_row(self, bucket_seconds: int) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "bucket_start": format_ts(self.bucket_start),
            "bucket_seconds": bucket_seconds,
            "dimension": self.dimension,
            "count": self.count,
            "total": self.total,
            "minimum": self.minimum,
            "maximum": self.maximum,
            "session_ids": sorted(self.session_ids),
            "user_ids": sorted(self.user_ids),
            "finalized": int(self.finalized),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RollupBucket":
        return cls(
            kind=EventKind(row["kind"]),
            bucket_start=parse_ts(row["bucket_start"]),
            dimension=row["dimension"],
            count=int(row["count"]),
            total=float(row["total"]),
            minimum=None if row.get("minimum") is None else float(row["minimum"]),
            maximum=None if row.get("maximum") is None else float(row["maximum"]),
            session_ids=frozenset(row.get("session_ids") or ()),
            user_ids=frozenset(row.get("user_ids") or ()),
            finalized=bool(int(row.get("finalized") or 0)),
        )


def _opt(fn, a, b):
    if a is None:
        return b
    if b is None:
        return a
    return fn(a, b)


# ---------------------------------------------------------------------------
# Timestamp helpers (UTC, millisecond precision on the wire)
# ---------------------------------------------------------------------------

def format_ts(ts: datetime) -> str:
    """Render as ``YYYY-MM-DD HH:MM:SS.mmm`` in UTC (ClickHouse DateTime64(3))."""
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%d %H:%M:%S.") + f"{ts.microsecond // 1000:03d}"


def parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


__all__ = [
    "EventKind",
    "RejectionReason",
    "SubmitOutcome",
    "TOTAL_DIMENSION",
    "Event",
    "Batch",
    "Rejection",
    "IngestionResult",
    "InsertOutcome",
    "WriteResult",
    "DeadLetterRecord",
    "RollupBucket",
    "format_ts",
    "parse_ts",
]
