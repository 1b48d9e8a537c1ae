"""ClickHouse-backed ``EventStore`` over the HTTP interface (JSONEachRow).

Idempotency: ``events_raw`` is a ReplacingMergeTree whose sorting key ends
with ``event_id`` and every read uses ``FINAL``, so a re-delivered event is
collapsed into one row.  Each insert also carries the batch id as
``insert_deduplication_token`` so a retried insert that already landed is
dropped by the server (the table sets ``non_replicated_deduplication_window``
so this also holds on a single, non-replicated node).

Error mapping: network errors, timeouts and 5xx/429 answers become
``TransientStoreError``; answers whose ClickHouse exception code says the
*data* is bad become ``PermanentStoreError``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from lugx_analytics import CLICKHOUSE_DATABASE, CLICKHOUSE_ENDPOINT, CLICKHOUSE_PASSWORD, CLICKHOUSE_USER
from lugx_analytics.models import Event, EventKind, InsertOutcome, RollupBucket, format_ts
from lugx_analytics.utils.errors import PermanentStoreError, TransientStoreError
from lugx_analytics.utils.logger import logger

__all__ = ["ClickHouseEventStore", "schema_statements", "EVENTS_TABLE", "ROLLUPS_TABLE"]

EVENTS_TABLE = "events_raw"
ROLLUPS_TABLE = "event_rollups"

# recent insert blocks remembered for insert_deduplication_token on a single node
DEDUP_WINDOW = 1000

# ClickHouse exception codes meaning "this payload can never be inserted".
_PERMANENT_CODES = {
    "6",    # CANNOT_PARSE_TEXT
    "26",   # CANNOT_PARSE_QUOTED_STRING
    "27",   # CANNOT_PARSE_INPUT_ASSERTION_FAILED
    "38",   # CANNOT_PARSE_DATE
    "41",   # CANNOT_PARSE_DATETIME
    "53",   # TYPE_MISMATCH
    "70",   # CANNOT_CONVERT_TYPE
    "72",   # CANNOT_PARSE_NUMBER
    "117",  # INCORRECT_DATA
    "131",  # TOO_LARGE_STRING_SIZE
    "349",  # CANNOT_INSERT_NULL_IN_ORDINARY_COLUMN
}

_EVENT_COLUMNS = "event_id, kind, occurred_at, session_id, user_id, payload"
_ROLLUP_COLUMNS = (
    "kind, bucket_start, bucket_seconds, dimension, count, total, minimum, maximum, "
    "session_ids, user_ids, finalized"
)


def schema_statements(ttl_days: Optional[int] = None) -> List[str]:
    """DDL for the two tables.  Retention is opt-in; no TTL unless asked."""
    raw_ttl = f"\nTTL toDateTime(occurred_at) + INTERVAL {int(ttl_days)} DAY" if ttl_days else ""
    rollup_ttl = f"\nTTL bucket_start + INTERVAL {int(ttl_days)} DAY" if ttl_days else ""
    return [
        f"""
CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
    event_id String,
    kind LowCardinality(String),
    occurred_at DateTime64(3, 'UTC'),
    session_id String,
    user_id Nullable(String),
    payload String,
    ingested_at DateTime64(3, 'UTC') DEFAULT now64(3)
) ENGINE = ReplacingMergeTree(ingested_at)
PARTITION BY toYYYYMM(occurred_at)
ORDER BY (kind, occurred_at, event_id){raw_ttl}
SETTINGS non_replicated_deduplication_window = {DEDUP_WINDOW}
""".strip(),
        f"""
CREATE TABLE IF NOT EXISTS {ROLLUPS_TABLE} (
    kind LowCardinality(String),
    bucket_start DateTime('UTC'),
    bucket_seconds UInt32,
    dimension String,
    count UInt64,
    total Float64,
    minimum Nullable(Float64),
    maximum Nullable(Float64),
    session_ids Array(String),
    user_ids Array(String),
    finalized UInt8,
    computed_at DateTime64(3, 'UTC') DEFAULT now64(3)
) ENGINE = ReplacingMergeTree(computed_at)
PARTITION BY toYYYYMM(bucket_start)
ORDER BY (kind, bucket_seconds, bucket_start, dimension){rollup_ttl}
""".strip(),
    ]


def _json_each_row(rows: Sequence[Dict[str, Any]]) -> str:
    return "\n".join(json.dumps(row, separators=(",", ":")) for row in rows)


class ClickHouseEventStore:
    backend = "clickhouse"

    def __init__(
        self,
        endpoint: str,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        database: str = "default",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.database = database
        auth = (user, password or "") if user else None
        self._client = client or httpx.AsyncClient(timeout=timeout, auth=auth)
        self.last_error: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ClickHouseEventStore":
        if not CLICKHOUSE_ENDPOINT:
            raise RuntimeError("CLICKHOUSE_HTTP_ENDPOINT not configured")
        return cls(
            CLICKHOUSE_ENDPOINT,
            user=CLICKHOUSE_USER,
            password=CLICKHOUSE_PASSWORD,
            database=CLICKHOUSE_DATABASE,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _execute(self, query: str, *, content: Optional[str] = None, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        query_params: Dict[str, Any] = {"query": query, "database": self.database}
        if params:
            query_params.update(params)
        try:
            resp = await self._client.post(
                f"{self.endpoint}/",
                params=query_params,
                content=content.encode() if content is not None else None,
                headers={"Content-Type": "text/plain"},
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            self.last_error = f"{type(exc).__name__}: {exc}"
            raise TransientStoreError(self.last_error) from exc

        if resp.status_code >= 400:
            code = resp.headers.get("X-ClickHouse-Exception-Code", "")
            message = resp.text.strip()[:500] or f"HTTP {resp.status_code}"
            self.last_error = message
            if code in _PERMANENT_CODES:
                raise PermanentStoreError(message)
            if resp.status_code >= 500 or resp.status_code in (408, 429):
                raise TransientStoreError(message)
            raise PermanentStoreError(message)

        self.last_error = None
        return resp

    async def _select(self, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = await self._execute(
            f"{query} FORMAT JSONEachRow",
            params={**params, "output_format_json_quote_64bit_integers": 0},
        )
        return [json.loads(line) for line in resp.text.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # EventStore
    # ------------------------------------------------------------------

    async def insert(self, kind: EventKind, events: Sequence[Event], *, dedup_token: Optional[str] = None) -> InsertOutcome:
        if not events:
            return InsertOutcome(inserted=0)
        params: Dict[str, Any] = {"date_time_input_format": "best_effort"}
        if dedup_token:
            params["insert_deduplication_token"] = dedup_token
        await self._execute(
            f"INSERT INTO {EVENTS_TABLE} ({_EVENT_COLUMNS}) FORMAT JSONEachRow",
            content=_json_each_row([e.to_row() for e in events]),
            params=params,
        )
        logger.debug("clickhouse.insert", extra={"kind": kind.value, "rows": len(events)})
        return InsertOutcome(inserted=len(events))

    async def scan(self, kind: EventKind, start: datetime, end: datetime) -> List[Event]:
        rows = await self._select(
            f"SELECT {_EVENT_COLUMNS} FROM {EVENTS_TABLE} FINAL "
            "WHERE kind = {kind:String} "
            "AND occurred_at >= {start:DateTime64(3, 'UTC')} "
            "AND occurred_at < {end:DateTime64(3, 'UTC')} "
            "ORDER BY occurred_at, event_id",
            {"param_kind": kind.value, "param_start": format_ts(start), "param_end": format_ts(end)},
        )
        return [Event.from_row(row) for row in rows]

    async def replace_rollups(self, kind: EventKind, bucket_start: datetime, bucket_seconds: int, buckets: Sequence[RollupBucket]) -> None:
        rows = []
        for bucket in buckets:
            row = bucket.to_row(bucket_seconds)
            # DateTime (second precision) column
            row["bucket_start"] = bucket.bucket_start.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
            rows.append(row)
        if not rows:
            return
        await self._execute(
            f"INSERT INTO {ROLLUPS_TABLE} ({_ROLLUP_COLUMNS}) FORMAT JSONEachRow",
            content=_json_each_row(rows),
            params={"date_time_input_format": "best_effort"},
        )

    async def read_rollups(self, kind: EventKind, start: datetime, end: datetime, bucket_seconds: int) -> List[RollupBucket]:
        rows = await self._select(
            f"SELECT {_ROLLUP_COLUMNS} FROM {ROLLUPS_TABLE} FINAL "
            "WHERE kind = {kind:String} "
            "AND bucket_seconds = {secs:UInt32} "
            "AND bucket_start >= {start:DateTime('UTC')} "
            "AND bucket_start < {end:DateTime('UTC')} "
            "ORDER BY bucket_start, dimension",
            {
                "param_kind": kind.value,
                "param_secs": bucket_seconds,
                "param_start": start.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
                "param_end": end.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            },
        )
        return [RollupBucket.from_row(row) for row in rows]

    async def ensure_schema(self, ttl_days: Optional[int] = None) -> None:
        for statement in schema_statements(ttl_days):
            await self._execute(statement)

    async def ping(self) -> bool:
        try:
            resp = await self._client.get(f"{self.endpoint}/ping")
        except httpx.HTTPError as exc:
            self.last_error = f"{type(exc).__name__}: {exc}"
            return False
        return resp.status_code == 200

    async def close(self) -> None:
        await self._client.aclose()
