"""Dead-letter sinks – the side channel for records that cannot be stored.

Two durable implementations:

* ``SupabaseDeadLetterSink`` – rows in the ``dead_letters`` table, used when
  ``SUPABASE_URL``/``SUPABASE_KEY`` are configured.
* ``JsonlDeadLetterSink`` – one JSON object per line in a local file, the
  fallback for single-node and dev deployments.

``scripts/replay_dead_letters.py`` reads either back and re-submits the
events through the sink writer.
"""

from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, Iterator, List, Protocol, Sequence

from lugx_analytics import SUPABASE_URL
from lugx_analytics.models import DeadLetterRecord, Event
from lugx_analytics.utils.database import insert_data, query_many
from lugx_analytics.utils.logger import logger

__all__ = [
    "DeadLetterSink",
    "JsonlDeadLetterSink",
    "SupabaseDeadLetterSink",
    "build_dead_letter_sink",
    "events_from_records",
    "DEAD_LETTER_TABLE",
]

DEAD_LETTER_TABLE = "dead_letters"


class DeadLetterSink(Protocol):
    name: str

    async def put(self, records: Sequence[DeadLetterRecord]) -> None:
        """Persist records durably; raise if they could not be stored."""


class JsonlDeadLetterSink:
    name = "jsonl"

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _append(self, lines: List[str]) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.writelines(lines)
                fh.flush()

    async def put(self, records: Sequence[DeadLetterRecord]) -> None:
        if not records:
            return
        lines = [json.dumps(r.to_dict(), separators=(",", ":")) + "\n" for r in records]
        await asyncio.to_thread(self._append, lines)

    def read(self) -> Iterator[Dict[str, Any]]:
        if not self.path.exists():
            return
        with self.path.open(encoding="utf-8") as fh:
            for line in fh:
                if line.strip():
                    yield json.loads(line)


class SupabaseDeadLetterSink:
    name = "supabase"

    def __init__(self, client_factory: Callable[[], AsyncGenerator[Any, None]] | None = None):
        if client_factory is None:
            from lugx_analytics.utils.dependencies import get_supabase_async  # noqa: WPS433

            client_factory = get_supabase_async
        self._client_factory = client_factory

    async def put(self, records: Sequence[DeadLetterRecord]) -> None:
        if not records:
            return
        async for supabase in self._client_factory():
            await insert_data(
                supabase,
                DEAD_LETTER_TABLE,
                [r.to_dict() for r in records],
                error_message="Failed to persist dead letters",
            )

    async def fetch(self, limit: int | None = None) -> List[Dict[str, Any]]:
        async for supabase in self._client_factory():
            return await query_many(
                supabase,
                DEAD_LETTER_TABLE,
                order_by=("failed_at", False),
                limit=limit,
            )
        return []


def events_from_records(rows: Sequence[Dict[str, Any]]) -> List[Event]:
    """Rebuild ``Event``s from stored dead-letter rows (skips unreadable rows)."""
    events: List[Event] = []
    for row in rows:
        try:
            events.append(Event.from_row(row["event"]))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("dead_letter.unreadable", extra={"event_id": row.get("event_id"), "error": str(exc)})
    return events


def build_dead_letter_sink(path: str) -> DeadLetterSink:
    if SUPABASE_URL:
        return SupabaseDeadLetterSink()
    return JsonlDeadLetterSink(path)
