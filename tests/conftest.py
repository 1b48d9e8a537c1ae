from __future__ import annotations

"""Pytest fixtures for the analytics service.

External services (ClickHouse, Supabase) are replaced by in-process fakes so
we can exercise the request pipeline end-to-end without network round-trips.
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest
from starlette.testclient import TestClient

# ---------------------------------------------------------------------------
# Runtime env for the application
# ---------------------------------------------------------------------------

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test_key")
os.environ.setdefault("FRONTEND_ORIGIN", "https://shop.test")
os.environ.setdefault("APP_ENV", "development")
os.environ.pop("CLICKHOUSE_HTTP_ENDPOINT", None)

# Ensure project root on PYTHONPATH so `import lugx_analytics` works when pytest is run
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lugx_analytics.main import create_app, limiter  # noqa: E402, WPS433
from lugx_analytics.models import DeadLetterRecord, Event, EventKind  # noqa: E402
from lugx_analytics.settings import PipelineSettings  # noqa: E402
from lugx_analytics.utils.store import InMemoryEventStore  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class RecordingDeadLetter:
    """Dead-letter sink that keeps records in memory; can be told to fail."""

    name = "recording"

    def __init__(self) -> None:
        self.records: List[DeadLetterRecord] = []
        self.fail = False

    async def put(self, records: Sequence[DeadLetterRecord]) -> None:
        if self.fail:
            raise OSError("dead-letter storage unavailable")
        self.records.extend(records)

    @property
    def reasons(self) -> List[str]:
        return [r.reason for r in self.records]


def make_event(
    kind: EventKind = EventKind.page_view,
    *,
    event_id: str = "evt-1",
    occurred_at: Optional[datetime] = None,
    session_id: str = "sess-1",
    user_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Event:
    defaults = {
        EventKind.page_view: {"page_url": "/games", "page_category": "catalog"},
        EventKind.interaction: {"target_id": "game-7", "action": "add_to_cart"},
        EventKind.search: {"query": "Racing", "results_count": 4},
        EventKind.performance: {"service_name": "orders", "metric_type": "latency_ms", "metric_value": 12.5},
    }
    return Event(
        event_id=event_id,
        kind=kind,
        occurred_at=occurred_at or datetime(2025, 1, 15, 10, 0, 30, tzinfo=timezone.utc),
        session_id=session_id,
        user_id=user_id,
        payload=dict(payload if payload is not None else defaults[kind]),
    )


def raw_event(kind: str = "page_view", **overrides: Any) -> Dict[str, Any]:
    """Producer-shaped dict as the storefront tracker would send it."""
    payloads = {
        "page_view": {"page_url": "/games", "page_category": "catalog"},
        "interaction": {"target_id": "game-7", "action": "add_to_cart"},
        "search": {"query": "racing", "results_count": 3},
        "performance": {"service_name": "orders", "metric_type": "latency_ms", "metric_value": 40},
    }
    body: Dict[str, Any] = {
        "kind": kind,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "session_id": "sess-1",
        "payload": payloads.get(kind, {}),
    }
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture()
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture()
def dead_letter() -> RecordingDeadLetter:
    return RecordingDeadLetter()


@pytest.fixture()
def settings() -> PipelineSettings:
    return PipelineSettings(
        max_batch_size=10,
        max_batch_age=60.0,
        max_pending=50,
        write_max_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        shutdown_grace=2.0,
    )


@pytest.fixture()
def api_client(store, dead_letter, settings) -> TestClient:  # noqa: D401
    """Client with the lifespan running; background ticker/aggregator disabled."""
    app = create_app(store=store, dead_letter=dead_letter, settings=settings, background=False)
    with TestClient(app) as client:
        yield client


def settle(client: TestClient) -> None:
    """Flush every buffer and wait for the writer tasks (runs on the app loop)."""
    client.portal.call(client.app.state.pipeline.flush_and_drain)
