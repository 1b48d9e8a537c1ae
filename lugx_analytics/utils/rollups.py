"""Time-bucketed aggregation of raw events.

``aggregate_events`` is pure and deterministic: the same events always give
the same buckets, whatever their order.  Both the rollup aggregator and the
dashboard's live path use it, so a window looks identical whether it was
served from a stored rollup or computed on the fly.

Per kind:

=============  ==============================  ======================
kind           dimension                       measure (total/min/max)
=============  ==============================  ======================
page_view      page_category, else page_url    time_on_page_seconds
interaction    action                          amount
search         lower-cased query               results_count
performance    service_name:metric_type        metric_value
=============  ==============================  ======================

Every window also gets a ``"*"`` bucket holding the window total; it is
emitted even for an empty window when ``windows`` are passed explicitly.

Some kinds are additionally grouped along other axes so the game, funnel
and user-behaviour reports can be served from the same rollups.  Those
buckets carry a *grouped* dimension, ``<group>\\x1f<value>[\\x1f<value>]``:

* ``target\\x1f<target_id>`` and ``target_action\\x1f<target_id>\\x1f<action>``
  for interactions (measure: ``amount``);
* ``session\\x1f<session_id>`` for page views, whose measure is the event's
  epoch second, so min/max give the first and last view of the session.

Plain dimension values never contain the separator.
"""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from lugx_analytics.models import TOTAL_DIMENSION, Event, EventKind, RollupBucket

__all__ = [
    "aggregate_events",
    "bucket_floor",
    "iter_windows",
    "dimension_of",
    "grouped_dimensions",
    "group_dimension",
    "split_dimension",
    "measure_of",
    "GROUP_SEPARATOR",
    "TARGET_GROUP",
    "TARGET_ACTION_GROUP",
    "SESSION_GROUP",
]

GROUP_SEPARATOR = "\x1f"
TARGET_GROUP = "target"
TARGET_ACTION_GROUP = "target_action"
SESSION_GROUP = "session"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def bucket_floor(ts: datetime, bucket_seconds: int) -> datetime:
    """Start of the window containing ``ts`` (windows aligned on the Unix epoch)."""
    seconds = (ts.astimezone(timezone.utc) - _EPOCH) // timedelta(seconds=1)
    return _EPOCH + timedelta(seconds=seconds - seconds % bucket_seconds)


def iter_windows(start: datetime, end: datetime, bucket_seconds: int) -> Iterator[datetime]:
    """Starts of every aligned window intersecting ``[start, end)``."""
    step = timedelta(seconds=bucket_seconds)
    cursor = bucket_floor(start, bucket_seconds)
    while cursor < end:
        yield cursor
        cursor += step


def _text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).replace(GROUP_SEPARATOR, " ").strip()
    return text or None


def group_dimension(group: str, *parts: str) -> str:
    return GROUP_SEPARATOR.join((group,) + parts)


def split_dimension(dimension: str) -> Optional[Tuple[str, Tuple[str, ...]]]:
    """``(group, values)`` for a grouped dimension, ``None`` for a plain one."""
    if GROUP_SEPARATOR not in dimension:
        return None
    group, *parts = dimension.split(GROUP_SEPARATOR)
    return group, tuple(parts)


def dimension_of(event: Event) -> str:
    p = event.payload
    if event.kind is EventKind.page_view:
        return _text(p.get("page_category")) or _text(p.get("page_url")) or "unknown"
    if event.kind is EventKind.interaction:
        return _text(p.get("action")) or "unknown"
    if event.kind is EventKind.search:
        return (_text(p.get("query")) or "unknown").lower()
    return f"{_text(p.get('service_name')) or 'unknown'}:{_text(p.get('metric_type')) or 'unknown'}"


_MEASURE_FIELD = {
    EventKind.page_view: "time_on_page_seconds",
    EventKind.interaction: "amount",
    EventKind.search: "results_count",
    EventKind.performance: "metric_value",
}


def _as_float(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None


def measure_of(event: Event) -> Optional[float]:
    name = _MEASURE_FIELD.get(event.kind)
    if name is None:
        return None
    return _as_float(event.payload.get(name))


def grouped_dimensions(event: Event, value: Optional[float]) -> List[Tuple[str, Optional[float]]]:
    """Extra ``(dimension, measure)`` pairs an event contributes to besides its plain dimension."""
    if event.kind is EventKind.interaction:
        target = _text(event.payload.get("target_id")) or "unknown"
        return [
            (group_dimension(TARGET_GROUP, target), value),
            (group_dimension(TARGET_ACTION_GROUP, target, dimension_of(event)), value),
        ]
    if event.kind is EventKind.page_view and event.session_id:
        seen_at = (event.occurred_at - _EPOCH) / timedelta(seconds=1)
        return [(group_dimension(SESSION_GROUP, _text(event.session_id) or "unknown"), seen_at)]
    return []


class _Acc:
    __slots__ = ("count", "total", "minimum", "maximum", "sessions", "users")

    def __init__(self) -> None:
        self.count = 0
        self.total = 0.0
        self.minimum: Optional[float] = None
        self.maximum: Optional[float] = None
        self.sessions: set = set()
        self.users: set = set()

    def add(self, event: Event, value: Optional[float]) -> None:
        self.count += 1
        if value is not None:
            self.total += value
            self.minimum = value if self.minimum is None else min(self.minimum, value)
            self.maximum = value if self.maximum is None else max(self.maximum, value)
        if event.session_id:
            self.sessions.add(event.session_id)
        if event.user_id:
            self.users.add(event.user_id)


def aggregate_events(
    kind: EventKind,
    events: Iterable[Event],
    bucket_seconds: int,
    *,
    windows: Optional[Sequence[datetime]] = None,
    finalized: bool = False,
) -> List[RollupBucket]:
    """Group ``events`` into ``(window, dimension)`` buckets plus a ``"*"`` total per window.

    When ``windows`` is given, only events inside those windows are counted
    and each of them gets a (possibly zero) ``"*"`` bucket.
    """
    wanted = set(windows) if windows is not None else None
    accs: Dict[Tuple[datetime, str], _Acc] = defaultdict(_Acc)
    if wanted is not None:
        for window in wanted:
            accs.setdefault((window, TOTAL_DIMENSION), _Acc())

    for event in events:
        if event.kind is not kind:
            continue
        window = bucket_floor(event.occurred_at, bucket_seconds)
        if wanted is not None and window not in wanted:
            continue
        value = measure_of(event)
        accs[(window, TOTAL_DIMENSION)].add(event, value)
        accs[(window, dimension_of(event))].add(event, value)
        for dimension, measure in grouped_dimensions(event, value):
            accs[(window, dimension)].add(event, measure)

    buckets = [
        RollupBucket(
            kind=kind,
            bucket_start=window,
            dimension=dimension,
            count=acc.count,
            total=acc.total,
            minimum=acc.minimum,
            maximum=acc.maximum,
            session_ids=frozenset(acc.sessions),
            user_ids=frozenset(acc.users),
            finalized=finalized,
        )
        for (window, dimension), acc in accs.items()
    ]
    buckets.sort(key=lambda b: (b.bucket_start, b.dimension != TOTAL_DIMENSION, b.dimension))
    return buckets
