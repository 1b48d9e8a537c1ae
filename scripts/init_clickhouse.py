#!/usr/bin/env python3
"""Create the ClickHouse tables used by the analytics service.

Tables
------
• ``events_raw``    – ReplacingMergeTree keyed by (kind, occurred_at, event_id)
• ``event_rollups`` – ReplacingMergeTree keyed by (kind, bucket_seconds, bucket_start, dimension)

Connection comes from ``CLICKHOUSE_HTTP_ENDPOINT`` / ``CLICKHOUSE_USER`` /
``CLICKHOUSE_PASSWORD`` / ``CLICKHOUSE_DATABASE``.  Statements use
``IF NOT EXISTS`` so the script is repeatable.

Retention is off unless ``--ttl-days`` is given.  ``--print`` only dumps the
DDL (handy for migrations reviewed by hand).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lugx_analytics.utils.clickhouse import ClickHouseEventStore, schema_statements  # noqa: E402
from lugx_analytics.utils.errors import StoreError  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--ttl-days", type=int, default=None, help="drop rows older than N days")
    parser.add_argument("--print", dest="print_only", action="store_true", help="print DDL and exit")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:  # noqa: D401
    args = _parse_args(argv)
    if args.ttl_days is not None and args.ttl_days < 1:
        raise SystemExit("--ttl-days must be >= 1")

    if args.print_only:
        for statement in schema_statements(args.ttl_days):
            print(statement + ";\n")
        return

    try:
        store = ClickHouseEventStore.from_env()
    except RuntimeError as exc:
        raise SystemExit(str(exc))

    print(f"🗄️  Creating tables in {store.database} at {store.endpoint} …")
    try:
        await store.ensure_schema(args.ttl_days)
    except StoreError as exc:
        raise SystemExit(f"⚠️  Schema creation failed: {exc}")
    finally:
        await store.close()
    print("✅ Schema ready.")


if __name__ == "__main__":
    asyncio.run(main())
