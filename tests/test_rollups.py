from datetime import datetime, timedelta, timezone

import pytest

from lugx_analytics.cron.rollup_aggregator import RollupAggregator
from lugx_analytics.models import TOTAL_DIMENSION, EventKind
from lugx_analytics.utils.rollups import (
    SESSION_GROUP,
    TARGET_ACTION_GROUP,
    TARGET_GROUP,
    aggregate_events,
    bucket_floor,
    group_dimension,
    iter_windows,
    measure_of,
    split_dimension,
)
from lugx_analytics.utils.store import InMemoryEventStore
from tests.conftest import make_event

T0 = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def _at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _total(buckets, window):
    return next(b for b in buckets if b.bucket_start == window and b.dimension == TOTAL_DIMENSION)


# ---------------------------------------------------------------------------
# Pure aggregation
# ---------------------------------------------------------------------------

def test_bucket_floor_is_epoch_aligned():
    assert bucket_floor(datetime(2025, 1, 15, 10, 7, 59, tzinfo=timezone.utc), 300) == _at(5)
    assert list(iter_windows(_at(0.5), _at(3), 60)) == [_at(0), _at(1), _at(2)]


def test_aggregate_counts_totals_and_uniques():
    events = [
        make_event(event_id="a", occurred_at=_at(0.1), session_id="s1", user_id="u1"),
        make_event(event_id="b", occurred_at=_at(0.2), session_id="s1", user_id="u1"),
        make_event(event_id="c", occurred_at=_at(0.3), session_id="s2",
                   payload={"page_url": "/about"}),
        make_event(event_id="d", occurred_at=_at(1.5), session_id="s3"),
    ]
    buckets = aggregate_events(EventKind.page_view, events, 60)

    first = _total(buckets, _at(0))
    assert first.count == 3
    assert first.unique_sessions == 2
    assert first.unique_users == 1
    assert _total(buckets, _at(1)).count == 1

    dims = {b.dimension: b.count for b in buckets if b.bucket_start == _at(0) and split_dimension(b.dimension) is None}
    assert dims == {TOTAL_DIMENSION: 3, "catalog": 2, "/about": 1}
    # total row sorts first in each window
    assert buckets[0].dimension == TOTAL_DIMENSION


def test_aggregate_measures_min_max():
    events = [
        make_event(EventKind.search, event_id="a", occurred_at=_at(0.1), payload={"query": "Racing", "results_count": 4}),
        make_event(EventKind.search, event_id="b", occurred_at=_at(0.2), payload={"query": "racing", "results_count": 0}),
    ]
    buckets = aggregate_events(EventKind.search, events, 60)
    total = _total(buckets, _at(0))
    assert total.total == 4
    assert (total.minimum, total.maximum) == (0, 4)
    # queries are grouped case-insensitively
    assert {b.dimension for b in buckets} == {TOTAL_DIMENSION, "racing"}


def test_explicit_windows_get_zero_totals():
    buckets = aggregate_events(EventKind.page_view, [], 60, windows=[_at(0), _at(1)], finalized=True)
    assert [(b.bucket_start, b.dimension, b.count) for b in buckets] == [
        (_at(0), TOTAL_DIMENSION, 0),
        (_at(1), TOTAL_DIMENSION, 0),
    ]
    assert all(b.finalized for b in buckets)


def test_aggregation_ignores_order():
    events = [make_event(event_id=str(i), occurred_at=_at(i / 10)) for i in range(8)]
    forward = aggregate_events(EventKind.page_view, events, 60)
    backward = aggregate_events(EventKind.page_view, list(reversed(events)), 60)
    assert forward == backward


def test_merge_keeps_unique_counts_exact():
    a = _total(aggregate_events(EventKind.page_view, [make_event(event_id="a", occurred_at=_at(0), session_id="s1")], 60), _at(0))
    b = _total(aggregate_events(EventKind.page_view, [make_event(event_id="b", occurred_at=_at(0), session_id="s1")], 60), _at(0))
    merged = a.merge(b)
    assert merged.count == 2
    assert merged.unique_sessions == 1


def test_interactions_are_grouped_by_target():
    events = [
        make_event(EventKind.interaction, event_id="a", occurred_at=_at(0.1), session_id="s1",
                   payload={"target_id": "game-7", "action": "view"}),
        make_event(EventKind.interaction, event_id="b", occurred_at=_at(0.2), session_id="s2",
                   payload={"target_id": "game-7", "action": "purchase", "amount": 59.99}),
        make_event(EventKind.interaction, event_id="c", occurred_at=_at(0.3), session_id="s1",
                   payload={"target_id": "game-9", "action": "view"}),
    ]
    dims = {b.dimension: b for b in aggregate_events(EventKind.interaction, events, 60)}

    assert dims["view"].count == 2
    game = dims[group_dimension(TARGET_GROUP, "game-7")]
    assert (game.count, game.unique_sessions, game.total) == (2, 2, 59.99)
    assert dims[group_dimension(TARGET_ACTION_GROUP, "game-7", "purchase")].count == 1
    assert split_dimension(group_dimension(TARGET_ACTION_GROUP, "game-7", "view")) == (TARGET_ACTION_GROUP, ("game-7", "view"))
    assert split_dimension("view") is None


def test_page_views_are_grouped_by_session():
    events = [
        make_event(event_id="a", occurred_at=_at(0.1), session_id="s1"),
        make_event(event_id="b", occurred_at=_at(0.5), session_id="s1"),
    ]
    dims = {b.dimension: b for b in aggregate_events(EventKind.page_view, events, 60)}

    session = dims[group_dimension(SESSION_GROUP, "s1")]
    assert session.count == 2
    # first and last view, in epoch seconds
    assert session.maximum - session.minimum == pytest.approx(24.0)


def test_separator_in_values_cannot_forge_a_group():
    event = make_event(EventKind.search, event_id="a", occurred_at=_at(0), payload={"query": "session\x1fs1"})
    dims = {b.dimension for b in aggregate_events(EventKind.search, [event], 60)}
    assert dims == {TOTAL_DIMENSION, "session s1"}


@pytest.mark.parametrize("value", [10 ** 400, -(10 ** 400), float("inf"), "12", True])
def test_unusable_measures_are_ignored(value):
    event = make_event(EventKind.search, event_id="a", occurred_at=_at(0), payload={"query": "racing", "results_count": value})
    assert measure_of(event) is None

    total = _total(aggregate_events(EventKind.search, [event], 60), _at(0))
    assert total.count == 1
    assert total.minimum is None


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------

NOW = _at(20)


def _aggregator(store):
    return RollupAggregator(
        store,
        bucket_seconds=60,
        grace=120.0,
        lookback=600.0,
        kinds=(EventKind.page_view,),
        clock=lambda: NOW,
    )


@pytest.mark.asyncio
async def test_run_once_materialises_and_finalizes_windows():
    store = InMemoryEventStore()
    await store.insert(EventKind.page_view, [make_event(event_id=f"e{i}", occurred_at=_at(15.5)) for i in range(3)])
    aggregator = _aggregator(store)

    outcome = await aggregator.run_once(NOW)

    # windows 10:10..10:19; those ending 2 min before now are final
    assert outcome.computed == 10
    assert outcome.finalized == 8
    assert outcome.failed == 0
    assert aggregator.finalized_windows(EventKind.page_view) == {_at(m) for m in range(10, 18)}

    stored = await store.read_rollups(EventKind.page_view, _at(15), _at(16), 60)
    assert _total(stored, _at(15)).count == 3
    assert _total(stored, _at(15)).finalized


@pytest.mark.asyncio
async def test_recompute_is_idempotent():
    store = InMemoryEventStore()
    await store.insert(EventKind.page_view, [make_event(event_id="e1", occurred_at=_at(18.2))])
    aggregator = _aggregator(store)

    first = await aggregator.recompute(EventKind.page_view, _at(18), NOW)
    second = await aggregator.recompute(EventKind.page_view, _at(18), NOW)

    assert first == second
    stored = await store.read_rollups(EventKind.page_view, _at(18), _at(19), 60)
    assert stored == second
    assert _total(stored, _at(18)).count == 1


@pytest.mark.asyncio
async def test_open_window_picks_up_late_events():
    store = InMemoryEventStore()
    aggregator = _aggregator(store)
    await aggregator.run_once(NOW)

    await store.insert(EventKind.page_view, [make_event(event_id="late", occurred_at=_at(19.5))])
    outcome = await aggregator.run_once(NOW)

    # only the two open windows were recomputed
    assert outcome.computed == 2
    stored = await store.read_rollups(EventKind.page_view, _at(19), _at(20), 60)
    assert _total(stored, _at(19)).count == 1


@pytest.mark.asyncio
async def test_ledger_is_seeded_from_store():
    store = InMemoryEventStore()
    await _aggregator(store).run_once(NOW)

    fresh = _aggregator(store)
    outcome = await fresh.run_once(NOW)

    assert outcome.computed == 2
    assert len(fresh.finalized_windows(EventKind.page_view)) == 8


@pytest.mark.asyncio
async def test_failed_window_is_retried_next_pass():
    class BrokenScan(InMemoryEventStore):
        broken = True

        async def scan(self, kind, start, end):
            if self.broken and start == _at(12):
                raise RuntimeError("scan failed")
            return await super().scan(kind, start, end)

    store = BrokenScan()
    aggregator = _aggregator(store)

    outcome = await aggregator.run_once(NOW)
    assert outcome.failed == 1
    assert _at(12) not in aggregator.finalized_windows(EventKind.page_view)

    store.broken = False
    outcome = await aggregator.run_once(NOW)
    assert outcome.failed == 0
    assert _at(12) in aggregator.finalized_windows(EventKind.page_view)
