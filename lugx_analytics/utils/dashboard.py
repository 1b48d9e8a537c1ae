"""Query façade answering dashboard reads.

For each kind the requested range is split into aligned windows:

* windows fully inside the range, past their grace period, and already
  materialised as a finalized ``"*"`` rollup are read from rollups;
* everything else (the trailing open window, partial windows at the range
  edges, final windows the aggregator has not reached yet) is aggregated
  live from raw events, one scan per run of adjacent windows.

Both halves go through the same aggregation so they merge cleanly.  A range
without data yields a zeroed view.

The game, conversion funnel and user-behaviour reports are read the same
way; they only look at different (grouped) dimensions of the buckets.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from lugx_analytics.models import TOTAL_DIMENSION, Event, EventKind, RollupBucket
from lugx_analytics.schemas import (
    DailyUserMetrics,
    DashboardView,
    DimensionCount,
    FunnelStep,
    FunnelView,
    GamesView,
    GameStats,
    KindSummary,
    SeriesPoint,
    UserBehaviourView,
    UserMetrics,
)
from lugx_analytics.utils.errors import ValidationError
from lugx_analytics.utils.rollups import (
    SESSION_GROUP,
    TARGET_ACTION_GROUP,
    TARGET_GROUP,
    aggregate_events,
    bucket_floor,
    iter_windows,
    split_dimension,
)
from lugx_analytics.utils.store import EventStore

__all__ = ["DashboardService", "FUNNEL_STEPS"]

# interaction actions, in funnel order
FUNNEL_STEPS = ("view", "add_to_cart", "checkout", "purchase")

_DAY_SECONDS = 86_400


def _coalesce(windows: Sequence[datetime], step: timedelta) -> List[Tuple[datetime, datetime]]:
    runs: List[Tuple[datetime, datetime]] = []
    for window in windows:
        if runs and runs[-1][1] == window:
            runs[-1] = (runs[-1][0], window + step)
        else:
            runs.append((window, window + step))
    return runs


def _merge(buckets: Iterable[RollupBucket]) -> Optional[RollupBucket]:
    merged: Optional[RollupBucket] = None
    for bucket in buckets:
        merged = bucket if merged is None else merged.merge(bucket)
    return merged


def _by_dimension(buckets: Iterable[RollupBucket]) -> Dict[str, RollupBucket]:
    merged: Dict[str, RollupBucket] = {}
    for bucket in buckets:
        prior = merged.get(bucket.dimension)
        merged[bucket.dimension] = bucket if prior is None else prior.merge(bucket)
    return merged


def _grouped(buckets: Iterable[RollupBucket], group: str) -> Dict[Tuple[str, ...], RollupBucket]:
    """Buckets of one dimension group merged across windows, keyed by the group values."""
    out: Dict[Tuple[str, ...], RollupBucket] = {}
    for dimension, bucket in _by_dimension(buckets).items():
        parsed = split_dimension(dimension)
        if parsed is not None and parsed[0] == group:
            out[parsed[1]] = bucket
    return out


def _percent(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class DashboardService:
    def __init__(
        self,
        store: EventStore,
        *,
        bucket_seconds: int = 60,
        grace: float = 120.0,
        top_n: int = 10,
        max_windows: int = 20_000,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.bucket_seconds = bucket_seconds
        self.grace = timedelta(seconds=grace)
        self.top_n = top_n
        self.max_windows = max_windows
        self._clock = clock

    def _check_range(self, start: datetime, end: datetime) -> None:
        if start >= end:
            raise ValidationError("invalid_range", "range start must be before its end")
        if (end - start) / timedelta(seconds=self.bucket_seconds) > self.max_windows:
            raise ValidationError("range_too_large", f"at most {self.max_windows} buckets per query")

    # ------------------------------------------------------------------
    # Overview
    # ------------------------------------------------------------------

    async def dashboard(
        self,
        start: datetime,
        end: datetime,
        kinds: Optional[Sequence[EventKind]] = None,
    ) -> DashboardView:
        self._check_range(start, end)
        now = self._clock()
        kinds = list(dict.fromkeys(kinds)) if kinds else list(EventKind)
        summaries = await asyncio.gather(*(self._summary(kind, start, end, now) for kind in kinds))
        return DashboardView(
            start=start,
            end=end,
            bucket_seconds=self.bucket_seconds,
            generated_at=now,
            kinds={kind.value: summary for kind, summary in zip(kinds, summaries)},
        )

    async def _collect(
        self, kind: EventKind, start: datetime, end: datetime, now: datetime
    ) -> Tuple[List[RollupBucket], int, int]:
        """Buckets covering ``[start, end)`` plus how many windows came from rollups / live scans."""
        step = timedelta(seconds=self.bucket_seconds)
        windows = list(iter_windows(start, end, self.bucket_seconds))

        stored = await self.store.read_rollups(kind, windows[0], windows[-1] + step, self.bucket_seconds)
        covered = {b.bucket_start for b in stored if b.dimension == TOTAL_DIMENSION and b.finalized}
        from_rollups = {
            w for w in windows
            if w in covered and w >= start and w + step <= end and w + step + self.grace <= now
        }
        buckets: List[RollupBucket] = [b for b in stored if b.bucket_start in from_rollups]

        live_windows = [w for w in windows if w not in from_rollups]
        events: List[Event] = []
        for run_start, run_end in _coalesce(live_windows, step):
            events.extend(await self.store.scan(kind, max(run_start, start), min(run_end, end)))
        buckets.extend(aggregate_events(kind, events, self.bucket_seconds, windows=live_windows))
        return buckets, len(from_rollups), len(live_windows)

    async def _summary(self, kind: EventKind, start: datetime, end: datetime, now: datetime) -> KindSummary:
        buckets, rollup_count, live_count = await self._collect(kind, start, end, now)
        return self._build(buckets, rollup_count=rollup_count, live_count=live_count)

    def _top(self, buckets: Iterable[RollupBucket]) -> List[DimensionCount]:
        plain = [b for b in buckets if b.dimension != TOTAL_DIMENSION and split_dimension(b.dimension) is None]
        top = sorted(_by_dimension(plain).values(), key=lambda b: (-b.count, b.dimension))[: self.top_n]
        return [
            DimensionCount(dimension=b.dimension, count=b.count, total=b.total, average=b.total / b.count if b.count else 0.0)
            for b in top
        ]

    def _build(self, buckets: List[RollupBucket], *, rollup_count: int, live_count: int) -> KindSummary:
        totals = [b for b in buckets if b.dimension == TOTAL_DIMENSION]
        overall = _merge(totals)

        series = [
            SeriesPoint(
                bucket_start=b.bucket_start,
                count=b.count,
                total=b.total,
                unique_sessions=b.unique_sessions,
                unique_users=b.unique_users,
            )
            for b in sorted(totals, key=lambda b: b.bucket_start)
            if b.count
        ]

        if overall is None or overall.count == 0:
            return KindSummary(rollup_buckets=rollup_count, live_buckets=live_count)

        return KindSummary(
            count=overall.count,
            total=overall.total,
            average=overall.total / overall.count,
            minimum=overall.minimum,
            maximum=overall.maximum,
            unique_sessions=overall.unique_sessions,
            unique_users=overall.unique_users,
            series=series,
            top_dimensions=self._top(buckets),
            rollup_buckets=rollup_count,
            live_buckets=live_count,
        )

    # ------------------------------------------------------------------
    # Game popularity
    # ------------------------------------------------------------------

    async def games(self, start: datetime, end: datetime, limit: int = 20) -> GamesView:
        """Interactions per ``target_id``, most interacted-with first."""
        self._check_range(start, end)
        buckets, _, _ = await self._collect(EventKind.interaction, start, end, self._clock())

        per_action: Dict[str, Dict[str, RollupBucket]] = {}
        for (target, action), bucket in _grouped(buckets, TARGET_ACTION_GROUP).items():
            per_action.setdefault(target, {})[action] = bucket

        games: List[GameStats] = []
        for (target,), bucket in _grouped(buckets, TARGET_GROUP).items():
            actions = per_action.get(target, {})
            views = actions["view"].count if "view" in actions else 0
            purchases = actions["purchase"].count if "purchase" in actions else 0
            games.append(
                GameStats(
                    target_id=target,
                    interactions=bucket.count,
                    unique_sessions=bucket.unique_sessions,
                    views=views,
                    cart_additions=actions["add_to_cart"].count if "add_to_cart" in actions else 0,
                    purchases=purchases,
                    conversion_rate=_percent(purchases, views),
                    revenue=actions["purchase"].total if "purchase" in actions else 0.0,
                )
            )
        games.sort(key=lambda g: (-g.interactions, g.target_id))
        return GamesView(start=start, end=end, total_games=len(games), games=games[:limit])

    # ------------------------------------------------------------------
    # Conversion funnel
    # ------------------------------------------------------------------

    async def funnel(self, start: datetime, end: datetime) -> FunnelView:
        self._check_range(start, end)
        buckets, _, _ = await self._collect(EventKind.interaction, start, end, self._clock())
        actions = _by_dimension(b for b in buckets if split_dimension(b.dimension) is None)

        steps: List[FunnelStep] = []
        previous: Optional[int] = None
        for name in FUNNEL_STEPS:
            bucket = actions.get(name)
            count = bucket.count if bucket else 0
            rate = 100.0 if previous is None else _percent(count, previous)
            steps.append(
                FunnelStep(
                    step=name,
                    step_count=count,
                    unique_sessions=bucket.unique_sessions if bucket else 0,
                    revenue=bucket.total if bucket else 0.0,
                    conversion_rate=rate,
                    drop_off_rate=0.0 if previous is None else round(100.0 - rate, 2),
                )
            )
            previous = count
        return FunnelView(start=start, end=end, steps=steps, total_revenue=sum(s.revenue for s in steps))

    # ------------------------------------------------------------------
    # User behaviour
    # ------------------------------------------------------------------

    async def user_behaviour(self, start: datetime, end: datetime) -> UserBehaviourView:
        """Session metrics from page views, overall and per UTC day, plus the top searches."""
        self._check_range(start, end)
        now = self._clock()
        (views, _, _), (searches, _, _) = await asyncio.gather(
            self._collect(EventKind.page_view, start, end, now),
            self._collect(EventKind.search, start, end, now),
        )

        days: Dict[datetime, List[RollupBucket]] = {}
        for bucket in views:
            days.setdefault(bucket_floor(bucket.bucket_start, _DAY_SECONDS), []).append(bucket)

        daily = [
            DailyUserMetrics(date=day, **self._user_metrics(day_buckets).model_dump())
            for day, day_buckets in sorted(days.items())
        ]
        daily = [d for d in daily if d.sessions or d.unique_users]
        return UserBehaviourView(
            start=start,
            end=end,
            overall=self._user_metrics(views),
            daily=daily,
            top_searches=self._top(searches),
        )

    @staticmethod
    def _user_metrics(buckets: List[RollupBucket]) -> UserMetrics:
        sessions = list(_grouped(buckets, SESSION_GROUP).values())
        users = _merge(b for b in buckets if b.dimension == TOTAL_DIMENSION)
        if not sessions:
            return UserMetrics(unique_users=users.unique_users if users else 0)

        durations = [
            s.maximum - s.minimum for s in sessions if s.minimum is not None and s.maximum is not None
        ]
        bounces = sum(1 for s in sessions if s.count == 1)
        return UserMetrics(
            sessions=len(sessions),
            unique_users=users.unique_users if users else 0,
            avg_session_duration_seconds=round(sum(durations) / len(durations), 2) if durations else 0.0,
            avg_pages_per_session=round(sum(s.count for s in sessions) / len(sessions), 2),
            bounce_sessions=bounces,
            bounce_rate=_percent(bounces, len(sessions)),
        )
