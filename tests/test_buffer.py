from datetime import datetime, timedelta, timezone

import pytest

from lugx_analytics.models import EventKind, SubmitOutcome
from lugx_analytics.settings import PipelineSettings
from lugx_analytics.utils.buffer import BatchingBuffer
from tests.conftest import make_event


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _events(n, kind=EventKind.page_view):
    base = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
    return [make_event(kind, event_id=f"e{i}", occurred_at=base + timedelta(seconds=i)) for i in range(n)]


def _buffer(batches, *, size=10, age=5.0, pending=100, clock=None):
    return BatchingBuffer(
        EventKind.page_view,
        batches.append,
        max_batch_size=size,
        max_batch_age=age,
        max_pending=pending,
        clock=clock or FakeClock(),
    )


def test_flushes_when_batch_is_full():
    batches = []
    buf = _buffer(batches, size=3)

    for event in _events(3):
        assert buf.submit(event) is SubmitOutcome.accepted

    assert len(batches) == 1
    assert [e.event_id for e in batches[0].events] == ["e0", "e1", "e2"]
    assert buf.depth == 0
    assert buf.in_flight == 3


def test_every_event_lands_in_exactly_one_batch_in_order():
    batches = []
    buf = _buffer(batches, size=10)
    events = _events(25)

    for event in events:
        buf.submit(event)
    buf.flush()

    assert [len(b) for b in batches] == [10, 10, 5]
    flattened = [e for b in batches for e in b.events]
    assert flattened == events
    assert all(b.kind is EventKind.page_view for b in batches)
    assert len({b.batch_id for b in batches}) == 3


def test_age_based_flush_uses_oldest_event():
    clock = FakeClock(100.0)
    batches = []
    buf = _buffer(batches, age=5.0, clock=clock)
    first, second = _events(2)

    buf.submit(first)
    clock.now = 103.0
    buf.submit(second)

    assert buf.tick(104.9) is None
    batch = buf.tick(105.0)
    assert batch is not None and len(batch) == 2
    assert batches == [batch]


def test_tick_horizon_flushes_early():
    clock = FakeClock(0.0)
    batches = []
    buf = _buffer(batches, age=5.0, clock=clock)
    buf.submit(_events(1)[0])

    # next tick would be at 5.5 – the event would be late, so flush now
    assert buf.tick(4.5, horizon=1.0) is not None


def test_tick_on_empty_buffer_is_noop():
    batches = []
    buf = _buffer(batches)
    assert buf.tick(10_000.0) is None
    assert buf.flush() is None
    assert batches == []


def test_busy_when_pending_limit_reached():
    batches = []
    buf = _buffer(batches, size=10, pending=4)
    events = _events(6)

    for event in events[:4]:
        assert buf.submit(event) is SubmitOutcome.accepted
    assert buf.submit(events[4]) is SubmitOutcome.busy

    # handed off but not yet written still counts
    buf.flush()
    assert buf.submit(events[4]) is SubmitOutcome.busy

    buf.release(4)
    assert buf.submit(events[4]) is SubmitOutcome.accepted


def test_close_flushes_and_refuses():
    batches = []
    buf = _buffer(batches)
    buf.submit(_events(1)[0])

    batch = buf.close()
    assert batch is not None and len(batch) == 1
    assert buf.closed
    assert buf.submit(_events(2)[1]) is SubmitOutcome.closed


def test_wrong_kind_is_refused():
    buf = _buffer([])
    with pytest.raises(ValueError):
        buf.submit(make_event(EventKind.search))


def test_settings_reject_inconsistent_limits():
    with pytest.raises(ValueError):
        PipelineSettings(max_batch_size=100, max_pending=10)
    with pytest.raises(ValueError):
        PipelineSettings(max_batch_size=0)
