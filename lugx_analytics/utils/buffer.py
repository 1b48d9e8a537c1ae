"""Per-kind batching buffer.

One ``BatchingBuffer`` exists per ``EventKind``.  Events accumulate in an
active list until either the list reaches ``max_batch_size`` or the oldest
event has waited ``max_batch_age`` seconds; the list is then swapped for a
fresh one under the lock and the frozen ``Batch`` is passed to ``handoff``
(outside the lock).

Age-based flushing is driven by an external ticker calling ``tick()`` –
there is no timer per event.

Backpressure: ``pending`` counts buffered events plus events handed off but
not yet ``release()``d by the writer.  Once it reaches ``max_pending`` new
submits are answered with ``SubmitOutcome.busy``.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, List, Optional

from lugx_analytics.models import Batch, Event, EventKind, SubmitOutcome
from lugx_analytics.utils.utils import generate_uuid

__all__ = ["BatchingBuffer"]


class BatchingBuffer:
    def __init__(
        self,
        kind: EventKind,
        handoff: Callable[[Batch], None],
        *,
        max_batch_size: int,
        max_batch_age: float,
        max_pending: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.kind = kind
        self._handoff = handoff
        self.max_batch_size = max_batch_size
        self.max_batch_age = max_batch_age
        self.max_pending = max_pending
        self._clock = clock

        self._lock = threading.Lock()
        self._active: List[Event] = []
        self._oldest_at: Optional[float] = None
        self._in_flight = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def depth(self) -> int:
        return len(self._active)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def submit(self, event: Event) -> SubmitOutcome:
        if event.kind is not self.kind:
            raise ValueError(f"{event.kind.value} event submitted to {self.kind.value} buffer")
        with self._lock:
            if self._closed:
                return SubmitOutcome.closed
            if len(self._active) + self._in_flight >= self.max_pending:
                return SubmitOutcome.busy
            if not self._active:
                self._oldest_at = self._clock()
            self._active.append(event)
            batch = self._swap_locked() if len(self._active) >= self.max_batch_size else None
        if batch is not None:
            self._handoff(batch)
        return SubmitOutcome.accepted

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def _swap_locked(self) -> Optional[Batch]:
        if not self._active:
            return None
        events, self._active = tuple(self._active), []
        self._oldest_at = None
        self._in_flight += len(events)
        return Batch(batch_id=generate_uuid(), kind=self.kind, events=events)

    def flush(self) -> Optional[Batch]:
        """Swap out the active list and hand it off; returns the batch (or None if empty)."""
        with self._lock:
            batch = self._swap_locked()
        if batch is not None:
            self._handoff(batch)
        return batch

    def due(self, now: float, horizon: float = 0.0) -> bool:
        """True when the oldest event would exceed its max age before ``now + horizon``."""
        oldest = self._oldest_at
        return oldest is not None and oldest + self.max_batch_age <= now + horizon

    def tick(self, now: Optional[float] = None, horizon: float = 0.0) -> Optional[Batch]:
        now = self._clock() if now is None else now
        with self._lock:
            if not self.due(now, horizon):
                return None
            batch = self._swap_locked()
        if batch is not None:
            self._handoff(batch)
        return batch

    def close(self) -> Optional[Batch]:
        """Refuse further submits and flush whatever is buffered."""
        with self._lock:
            self._closed = True
            batch = self._swap_locked()
        if batch is not None:
            self._handoff(batch)
        return batch

    # ------------------------------------------------------------------
    # Writer side
    # ------------------------------------------------------------------

    def release(self, count: int) -> None:
        """Called once a handed-off batch is fully written or dead-lettered."""
        with self._lock:
            self._in_flight = max(0, self._in_flight - count)
