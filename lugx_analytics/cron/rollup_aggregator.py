"""Rollup aggregator: materialise time-bucketed summaries from raw events.

Flow of one pass (``run_once``):
1. List every aligned window inside the lookback horizon.
2. Skip windows already recorded as final in the ledger (seeded from the
   store's finalized ``"*"`` rows on the first pass).
3. For each remaining ``(kind, window)``: scan the raw events of that window,
   aggregate them, and *replace* the stored buckets.  Recomputation, not
   incremental accumulation, so retried or late events never double-count.
4. A window computed after ``window_end + grace`` is stored as final and
   never recomputed again.

Different windows run concurrently (bounded); the same window is serialised
by a per-window lock.  A window that fails is logged and retried next pass.

Runs as a background task inside the API process (``run_forever``) or as a
one-shot cron job::

    python -m lugx_analytics.cron.rollup_aggregator
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from lugx_analytics.models import TOTAL_DIMENSION, EventKind, RollupBucket
from lugx_analytics.utils.logger import configure_logging, logger
from lugx_analytics.utils.rollups import aggregate_events, bucket_floor, iter_windows
from lugx_analytics.utils.store import EventStore


@dataclass
class RollupPass:
    computed: int = 0
    finalized: int = 0
    failed: int = 0


class RollupAggregator:
    def __init__(
        self,
        store: EventStore,
        *,
        bucket_seconds: int = 60,
        grace: float = 120.0,
        lookback: float = 6 * 3600.0,
        concurrency: int = 8,
        kinds: Iterable[EventKind] = tuple(EventKind),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.bucket_seconds = bucket_seconds
        self.grace = timedelta(seconds=grace)
        self.lookback = timedelta(seconds=lookback)
        self.concurrency = max(1, concurrency)
        self.kinds = tuple(kinds)
        self._clock = clock

        # ledger: windows known to be final, per kind
        self._finalized: Dict[EventKind, Set[datetime]] = {kind: set() for kind in self.kinds}
        self._seeded: Set[EventKind] = set()
        self._locks: Dict[Tuple[EventKind, datetime], asyncio.Lock] = {}
        self.failures: Dict[Tuple[EventKind, datetime], int] = {}

    @property
    def _step(self) -> timedelta:
        return timedelta(seconds=self.bucket_seconds)

    def is_final(self, window: datetime, now: datetime) -> bool:
        return window + self._step + self.grace <= now

    def finalized_windows(self, kind: EventKind) -> Set[datetime]:
        return set(self._finalized[kind])

    async def recompute(self, kind: EventKind, window: datetime, now: Optional[datetime] = None) -> List[RollupBucket]:
        """Rebuild one window from raw events and replace whatever was stored."""
        lock = self._locks.setdefault((kind, window), asyncio.Lock())
        async with lock:
            now = now or self._clock()
            final = self.is_final(window, now)
            events = await self.store.scan(kind, window, window + self._step)
            buckets = aggregate_events(kind, events, self.bucket_seconds, windows=[window], finalized=final)
            await self.store.replace_rollups(kind, window, self.bucket_seconds, buckets)
            if final:
                self._finalized[kind].add(window)
            self.failures.pop((kind, window), None)
            return buckets

    async def _seed(self, kind: EventKind, start: datetime, end: datetime) -> None:
        rows = await self.store.read_rollups(kind, start, end, self.bucket_seconds)
        self._finalized[kind].update(
            b.bucket_start for b in rows if b.dimension == TOTAL_DIMENSION and b.finalized
        )
        self._seeded.add(kind)

    def _prune(self, horizon_start: datetime) -> None:
        for windows in self._finalized.values():
            windows.difference_update({w for w in windows if w < horizon_start})
        for key in [k for k, lock in self._locks.items() if k[1] < horizon_start and not lock.locked()]:
            del self._locks[key]
        for key in [k for k in self.failures if k[1] < horizon_start]:
            del self.failures[key]

    async def run_once(self, now: Optional[datetime] = None) -> RollupPass:
        now = now or self._clock()
        horizon_start = bucket_floor(now - self.lookback, self.bucket_seconds)
        windows = list(iter_windows(horizon_start, now, self.bucket_seconds))
        result = RollupPass()

        todo: List[Tuple[EventKind, datetime]] = []
        for kind in self.kinds:
            if kind not in self._seeded:
                try:
                    await self._seed(kind, horizon_start, now)
                except Exception:  # noqa: BLE001
                    logger.exception("rollup.seed_failed", extra={"kind": kind.value})
            todo.extend((kind, w) for w in windows if w not in self._finalized[kind])

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(kind: EventKind, window: datetime) -> None:
            async with semaphore:
                try:
                    await self.recompute(kind, window, now)
                except Exception:  # noqa: BLE001
                    self.failures[(kind, window)] = self.failures.get((kind, window), 0) + 1
                    result.failed += 1
                    logger.exception(
                        "rollup.window_failed",
                        extra={"kind": kind.value, "window": window.isoformat()},
                    )
                    return
                result.computed += 1
                if window in self._finalized[kind]:
                    result.finalized += 1

        await asyncio.gather(*(_one(kind, window) for kind, window in todo))
        self._prune(horizon_start)

        logger.info(
            "rollup.pass_complete",
            extra={"computed": result.computed, "finalized": result.finalized, "failed": result.failed},
        )
        return result

    async def run_forever(self, interval: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("rollup.pass_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


async def _run() -> None:
    from lugx_analytics.settings import PipelineSettings
    from lugx_analytics.utils.clickhouse import ClickHouseEventStore

    configure_logging()
    settings = PipelineSettings.from_env()
    store = ClickHouseEventStore.from_env()
    try:
        aggregator = RollupAggregator(
            store,
            bucket_seconds=settings.bucket_seconds,
            grace=settings.rollup_grace,
            lookback=settings.rollup_lookback,
            concurrency=settings.rollup_concurrency,
        )
        outcome = await aggregator.run_once()
        print(f"Rollup pass: {outcome.computed} windows computed, {outcome.finalized} finalized, {outcome.failed} failed")
    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(_run())
