"""Sink writer – durably persists one batch, with retry and dead-lettering.

Flow for ``write(batch)``:

1. One bulk insert with the batch id as deduplication token.
2. ``TransientStoreError`` → exponential backoff, up to ``max_attempts``;
   when exhausted the whole batch is dead-lettered (``retries_exhausted``).
3. Records the store refused individually are dead-lettered one by one;
   the rest of the batch counts as written.
4. ``PermanentStoreError`` on a multi-record batch → bisect and write each
   half, so a single bad row only takes itself down.

The writer never raises for store-side problems; it always returns a
``WriteResult``.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence

from lugx_analytics.models import Batch, DeadLetterRecord, Event, WriteResult
from lugx_analytics.utils.dead_letter import DeadLetterSink
from lugx_analytics.utils.errors import PermanentStoreError, TransientStoreError
from lugx_analytics.utils.logger import logger
from lugx_analytics.utils.store import EventStore

__all__ = ["SinkWriter", "backoff_delay"]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2·base, 4·base … ≤ cap."""
    return min(cap, base * (2 ** (attempt - 1)))


class SinkWriter:
    def __init__(
        self,
        store: EventStore,
        dead_letter: DeadLetterSink,
        *,
        max_attempts: int = 5,
        base_delay: float = 0.2,
        max_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.dead_letter = dead_letter
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    async def write(self, batch: Batch) -> WriteResult:
        result = WriteResult(batch_id=batch.batch_id, kind=batch.kind)
        if len(batch):
            await self._write(batch, result)
        logger.info(
            "sink.batch_written",
            extra={
                "batch_id": batch.batch_id,
                "kind": batch.kind.value,
                "size": len(batch),
                "written": result.written,
                "dead_lettered": result.dead_lettered,
                "lost": result.lost,
                "attempts": result.attempts,
            },
        )
        return result

    async def _write(self, batch: Batch, result: WriteResult) -> None:
        attempt = 0
        while True:
            attempt += 1
            result.attempts += 1
            try:
                outcome = await self.store.insert(batch.kind, batch.events, dedup_token=batch.batch_id)
            except TransientStoreError as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "sink.retries_exhausted",
                        extra={"batch_id": batch.batch_id, "kind": batch.kind.value, "error": str(exc)},
                    )
                    await self.dead_letter_events(batch.events, "retries_exhausted", result)
                    return
                delay = backoff_delay(attempt, self.base_delay, self.max_delay)
                logger.warning(
                    "sink.transient_failure",
                    extra={"batch_id": batch.batch_id, "attempt": attempt, "retry_in": delay, "error": str(exc)},
                )
                await self._sleep(delay)
                continue
            except PermanentStoreError as exc:
                if len(batch) > 1:
                    left, right = batch.split()
                    await self._write(left, result)
                    await self._write(right, result)
                else:
                    await self.dead_letter_events(batch.events, f"rejected: {exc}", result)
                return

            rejected = outcome.rejected or {}
            bad = [e for e in batch.events if e.event_id in rejected]
            result.written += len(batch) - len(bad)
            for event in bad:
                await self.dead_letter_events([event], f"rejected: {rejected[event.event_id]}", result)
            return

    async def dead_letter_events(self, events: Sequence[Event], reason: str, result: WriteResult | None = None) -> int:
        """Send events to the dead-letter sink; returns how many were persisted there."""
        if not events:
            return 0
        records = [DeadLetterRecord.for_event(e, reason) for e in events]
        try:
            await self.dead_letter.put(records)
        except Exception:  # noqa: BLE001
            logger.exception(
                "sink.dead_letter_failed",
                extra={"kind": events[0].kind.value, "count": len(events), "reason": reason},
            )
            if result is not None:
                result.lost += len(events)
            return 0
        if result is not None:
            result.dead_lettered += len(events)
        return len(events)
