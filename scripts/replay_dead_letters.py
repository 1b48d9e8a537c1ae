#!/usr/bin/env python3
"""Re-submit dead-lettered events to the analytics store.

Sources
-------
• default: the ``dead_letters`` Supabase table when ``SUPABASE_URL`` is set
• ``--file PATH``: a JSONL file written by the local dead-letter sink

Events keep their original ``event_id`` so replaying twice (or replaying
events that did land after all) never double-counts.  Events that fail
again go back to the dead-letter sink with a fresh reason.

The source is never modified; clean it up once the replay looks right.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections import defaultdict
from pathlib import Path
from typing import Dict, List

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lugx_analytics import SUPABASE_URL  # noqa: E402
from lugx_analytics.models import Batch, Event, EventKind  # noqa: E402
from lugx_analytics.settings import PipelineSettings  # noqa: E402
from lugx_analytics.utils.clickhouse import ClickHouseEventStore  # noqa: E402
from lugx_analytics.utils.dead_letter import (  # noqa: E402
    JsonlDeadLetterSink,
    SupabaseDeadLetterSink,
    build_dead_letter_sink,
    events_from_records,
)
from lugx_analytics.utils.logger import configure_logging  # noqa: E402
from lugx_analytics.utils.sink import SinkWriter  # noqa: E402
from lugx_analytics.utils.utils import generate_uuid  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay dead-lettered analytics events")
    parser.add_argument("--file", type=Path, default=None, help="JSONL dead-letter file to read")
    parser.add_argument("--limit", type=int, default=None, help="replay at most N records")
    parser.add_argument("--dry-run", action="store_true", help="only report what would be replayed")
    return parser.parse_args(argv)


async def _load(args: argparse.Namespace) -> List[Event]:
    if args.file is not None:
        rows = list(JsonlDeadLetterSink(args.file).read())
        if args.limit:
            rows = rows[: args.limit]
    elif SUPABASE_URL:
        rows = await SupabaseDeadLetterSink().fetch(limit=args.limit)
    else:
        raise SystemExit("Pass --file or configure SUPABASE_URL / SUPABASE_KEY.")
    return events_from_records(rows)


async def main(argv: list[str] | None = None) -> None:  # noqa: D401
    args = _parse_args(argv)
    configure_logging()

    events = await _load(args)
    by_kind: Dict[EventKind, List[Event]] = defaultdict(list)
    for event in events:
        by_kind[event.kind].append(event)

    print(f"📦 {len(events)} dead-lettered events loaded")
    for kind, items in by_kind.items():
        print(f"   → {kind.value}: {len(items)}")
    if args.dry_run or not events:
        return

    settings = PipelineSettings.from_env()
    store = ClickHouseEventStore.from_env()
    writer = SinkWriter(
        store,
        build_dead_letter_sink(settings.dead_letter_path),
        max_attempts=settings.write_max_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )

    written = dead_lettered = lost = 0
    try:
        for kind, items in by_kind.items():
            for offset in range(0, len(items), settings.max_batch_size):
                chunk = tuple(items[offset: offset + settings.max_batch_size])
                result = await writer.write(Batch(batch_id=f"replay-{generate_uuid()}", kind=kind, events=chunk))
                written += result.written
                dead_lettered += result.dead_lettered
                lost += result.lost
    finally:
        await store.close()

    print(f"✅ Replay complete: written={written} dead_lettered_again={dead_lettered} lost={lost}")
    if lost:
        raise SystemExit(1)


if __name__ == "__main__":
    asyncio.run(main())
