"""Ingestion pipeline – owns every stateful component of the service.

One instance is created per application (FastAPI lifespan) and kept on
``app.state``; nothing here is a module-level singleton.

Tasks started by ``start()``:

* one writer task per kind, consuming frozen batches from that kind's queue
  and passing them to the ``SinkWriter`` (so a slow or failing store never
  blocks ``submit()``, and one kind's sink trouble never blocks another);
* one ticker task driving age-based flushes of every buffer;
* the rollup aggregator loop.

``stop()`` closes the buffers (final flush), gives writers ``shutdown_grace``
seconds to drain, then cancels them and dead-letters whatever is unwritten.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from lugx_analytics.cron.rollup_aggregator import RollupAggregator
from lugx_analytics.models import (
    Batch,
    Event,
    EventKind,
    IngestionResult,
    Rejection,
    RejectionReason,
    SubmitOutcome,
)
from lugx_analytics.settings import PipelineSettings
from lugx_analytics.utils.buffer import BatchingBuffer
from lugx_analytics.utils.dashboard import DashboardService
from lugx_analytics.utils.dead_letter import DeadLetterSink
from lugx_analytics.utils.logger import logger
from lugx_analytics.utils.sink import SinkWriter
from lugx_analytics.utils.store import EventStore
from lugx_analytics.utils.validation import validate

__all__ = ["IngestionPipeline", "KindStats"]


@dataclass
class KindStats:
    batches: int = 0
    written: int = 0
    dead_lettered: int = 0
    lost: int = 0


class IngestionPipeline:
    def __init__(
        self,
        store: EventStore,
        dead_letter: DeadLetterSink,
        settings: Optional[PipelineSettings] = None,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.dead_letter = dead_letter
        self.settings = settings or PipelineSettings()
        s = self.settings

        self.sink = SinkWriter(
            store,
            dead_letter,
            max_attempts=s.write_max_attempts,
            base_delay=s.retry_base_delay,
            max_delay=s.retry_max_delay,
            sleep=sleep,
        )
        self._queues: Dict[EventKind, asyncio.Queue] = {kind: asyncio.Queue() for kind in EventKind}
        self.buffers: Dict[EventKind, BatchingBuffer] = {
            kind: BatchingBuffer(
                kind,
                self._queues[kind].put_nowait,
                max_batch_size=s.max_batch_size,
                max_batch_age=s.max_batch_age,
                max_pending=s.max_pending,
                clock=monotonic,
            )
            for kind in EventKind
        }
        self.stats: Dict[EventKind, KindStats] = {kind: KindStats() for kind in EventKind}
        self.aggregator = RollupAggregator(
            store,
            bucket_seconds=s.bucket_seconds,
            grace=s.rollup_grace,
            lookback=s.rollup_lookback,
            concurrency=s.rollup_concurrency,
        )
        self.dashboard = DashboardService(store, bucket_seconds=s.bucket_seconds, grace=s.rollup_grace)

        self._monotonic = monotonic
        self._writers: Dict[EventKind, asyncio.Task] = {}
        self._background: List[asyncio.Task] = []
        self._current: Dict[EventKind, Optional[Batch]] = {kind: None for kind in EventKind}
        self._stop_event: Optional[asyncio.Event] = None
        self._stopped = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._writers) and not self._stopped

    async def start(self, *, ticker: bool = True, aggregator: bool = True) -> None:
        if self._writers:
            return
        self._stop_event = asyncio.Event()
        for kind in EventKind:
            self._writers[kind] = asyncio.create_task(self._writer(kind), name=f"writer:{kind.value}")
        if ticker:
            self._background.append(asyncio.create_task(self._ticker(self._stop_event), name="buffer-ticker"))
        if aggregator:
            self._background.append(
                asyncio.create_task(
                    self.aggregator.run_forever(self.settings.rollup_interval, self._stop_event),
                    name="rollup-aggregator",
                )
            )
        logger.info(
            "pipeline.started",
            extra={
                "max_batch_size": self.settings.max_batch_size,
                "max_batch_age": self.settings.max_batch_age,
                "store": getattr(self.store, "backend", type(self.store).__name__),
                "dead_letter": getattr(self.dead_letter, "name", type(self.dead_letter).__name__),
            },
        )

    async def stop(self, grace: Optional[float] = None) -> None:
        if self._stopped:
            return
        self._stopped = True
        grace = self.settings.shutdown_grace if grace is None else grace
        if self._stop_event is not None:
            self._stop_event.set()

        for buffer in self.buffers.values():
            buffer.close()

        if self._background:
            _, pending = await asyncio.wait(self._background, timeout=grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._background, return_exceptions=True)

        if self._writers:
            try:
                await asyncio.wait_for(self.drain(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("pipeline.drain_timeout", extra={"grace": grace})

        unwritten: List[Batch] = [b for b in self._current.values() if b is not None]
        for task in self._writers.values():
            task.cancel()
        await asyncio.gather(*self._writers.values(), return_exceptions=True)

        for queue in self._queues.values():
            while not queue.empty():
                unwritten.append(queue.get_nowait())
                queue.task_done()

        for batch in unwritten:
            stats = self.stats[batch.kind]
            stored = await self.sink.dead_letter_events(batch.events, "shutdown")
            stats.dead_lettered += stored
            stats.lost += len(batch) - stored
            self.buffers[batch.kind].release(len(batch))

        logger.info("pipeline.stopped", extra={"unwritten_batches": len(unwritten)})

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def submit(self, event: Event) -> SubmitOutcome:
        return self.buffers[event.kind].submit(event)

    async def ingest(self, raw_events: Sequence[Any], now: Optional[datetime] = None) -> IngestionResult:
        result = IngestionResult()
        refused: List[Tuple[int, Event]] = []
        skew = timedelta(seconds=self.settings.max_future_skew)

        for index, raw in enumerate(raw_events):
            outcome = validate(raw, now=now, max_future_skew=skew)
            if isinstance(outcome, RejectionReason):
                result.rejected.append(Rejection(index, outcome))
                continue
            status = self.submit(outcome)
            if status is SubmitOutcome.accepted:
                result.accepted += 1
            elif status is SubmitOutcome.busy:
                result.rejected.append(Rejection(index, RejectionReason.busy))
            else:
                refused.append((index, outcome))

        if refused:
            # buffers are closed (shutting down): straight to the side channel
            stored = await self.sink.dead_letter_events([e for _, e in refused], "shutdown")
            if stored:
                result.dead_lettered = stored
            else:
                result.rejected.extend(Rejection(i, RejectionReason.busy) for i, _ in refused)
                result.rejected.sort(key=lambda r: r.index)

        if result.rejected:
            logger.info(
                "ingest.rejections",
                extra={
                    "accepted": result.accepted,
                    "rejected": len(result.rejected),
                    "reasons": sorted({r.reason.value for r in result.rejected}),
                },
            )
        return result

    def flush_all(self) -> List[Batch]:
        """Force-flush every buffer regardless of size or age."""
        return [b for b in (buffer.flush() for buffer in self.buffers.values()) if b is not None]

    async def drain(self) -> None:
        """Wait until every handed-off batch has been written or dead-lettered."""
        await asyncio.gather(*(queue.join() for queue in self._queues.values()))

    async def flush_and_drain(self) -> None:
        self.flush_all()
        await self.drain()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _writer(self, kind: EventKind) -> None:
        queue = self._queues[kind]
        buffer = self.buffers[kind]
        stats = self.stats[kind]
        while True:
            batch: Batch = await queue.get()
            self._current[kind] = batch
            try:
                result = await self.sink.write(batch)
            except Exception:  # noqa: BLE001
                logger.exception("pipeline.writer_error", extra={"kind": kind.value, "batch_id": batch.batch_id})
                stored = await self.sink.dead_letter_events(batch.events, "writer_error")
                stats.dead_lettered += stored
                stats.lost += len(batch) - stored
            else:
                stats.batches += 1
                stats.written += result.written
                stats.dead_lettered += result.dead_lettered
                stats.lost += result.lost
            finally:
                queue.task_done()
            # on cancellation the batch stays in _current for stop() to dead-letter
            self._current[kind] = None
            buffer.release(len(batch))

    async def _ticker(self, stop: asyncio.Event) -> None:
        interval = self.settings.tick_interval
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            now = self._monotonic()
            for buffer in self.buffers.values():
                buffer.tick(now, horizon=interval)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> Dict[str, Any]:
        try:
            connected = await self.store.ping()
        except Exception:  # noqa: BLE001
            logger.exception("pipeline.ping_failed")
            connected = False
        return {
            "status": "ok" if connected and not self._stopped else "degraded",
            "sink": {
                "connected": connected,
                "backend": getattr(self.store, "backend", type(self.store).__name__),
                "last_error": getattr(self.store, "last_error", None),
            },
            "buffers": {
                kind.value: {
                    "depth": self.buffers[kind].depth,
                    "in_flight": self.buffers[kind].in_flight,
                    "written": self.stats[kind].written,
                    "dead_lettered": self.stats[kind].dead_lettered,
                }
                for kind in EventKind
            },
        }
