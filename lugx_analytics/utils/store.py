"""Analytics store collaborator.

The pipeline only talks to an ``EventStore``: bulk insert of raw events,
range scans, and replace/read of rollup buckets.  ``ClickHouseEventStore``
(``lugx_analytics.utils.clickhouse``) is the production implementation;
``InMemoryEventStore`` backs dev mode (no ClickHouse endpoint configured)
and the test-suite.

Inserts are idempotent on ``event_id``: re-delivering an event that is
already stored does not create a second record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from lugx_analytics.models import Event, EventKind, InsertOutcome, RollupBucket

__all__ = ["EventStore", "InMemoryEventStore"]


@runtime_checkable
class EventStore(Protocol):
    backend: str

    async def insert(self, kind: EventKind, events: Sequence[Event], *, dedup_token: Optional[str] = None) -> InsertOutcome:
        """Bulk-insert raw events; raise Transient/PermanentStoreError on failure."""

    async def scan(self, kind: EventKind, start: datetime, end: datetime) -> List[Event]:
        """Raw events of ``kind`` with ``start <= occurred_at < end`` (deduplicated)."""

    async def replace_rollups(self, kind: EventKind, bucket_start: datetime, bucket_seconds: int, buckets: Sequence[RollupBucket]) -> None:
        """Replace every stored bucket of one window with ``buckets``."""

    async def read_rollups(self, kind: EventKind, start: datetime, end: datetime, bucket_seconds: int) -> List[RollupBucket]:
        """Stored buckets whose window starts in ``[start, end)``."""

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class InMemoryEventStore:
    """Dict-backed store; events keyed by id so re-delivery is an upsert."""

    backend = "memory"

    def __init__(self) -> None:
        self._events: Dict[EventKind, Dict[str, Event]] = {kind: {} for kind in EventKind}
        self._rollups: Dict[Tuple[EventKind, int, datetime], List[RollupBucket]] = {}
        self.insert_calls = 0

    async def insert(self, kind: EventKind, events: Sequence[Event], *, dedup_token: Optional[str] = None) -> InsertOutcome:
        self.insert_calls += 1
        table = self._events[kind]
        for event in events:
            table[event.event_id] = event
        return InsertOutcome(inserted=len(events))

    async def scan(self, kind: EventKind, start: datetime, end: datetime) -> List[Event]:
        rows = [e for e in self._events[kind].values() if start <= e.occurred_at < end]
        rows.sort(key=lambda e: (e.occurred_at, e.event_id))
        return rows

    async def replace_rollups(self, kind: EventKind, bucket_start: datetime, bucket_seconds: int, buckets: Sequence[RollupBucket]) -> None:
        self._rollups[(kind, bucket_seconds, bucket_start)] = list(buckets)

    async def read_rollups(self, kind: EventKind, start: datetime, end: datetime, bucket_seconds: int) -> List[RollupBucket]:
        out: List[RollupBucket] = []
        for (k, secs, bucket_start), buckets in sorted(self._rollups.items(), key=lambda item: item[0][2]):
            if k is kind and secs == bucket_seconds and start <= bucket_start < end:
                out.extend(buckets)
        return out

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def count(self, kind: EventKind) -> int:
        return len(self._events[kind])
