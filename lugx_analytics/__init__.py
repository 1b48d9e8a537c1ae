"""Top-level package for the LUGX analytics ingestion & aggregation service."""

__all__ = [
    "APP_ENV",
    "CLICKHOUSE_ENDPOINT",
    "CLICKHOUSE_USER",
    "CLICKHOUSE_PASSWORD",
    "CLICKHOUSE_DATABASE",
    "SUPABASE_URL",
    "SUPABASE_KEY",
]

from dotenv import load_dotenv
import os
load_dotenv()

# ClickHouse HTTP interface, e.g. http://clickhouse:8123. Unset → in-memory
# store (dev mode).
CLICKHOUSE_ENDPOINT = os.environ.get("CLICKHOUSE_HTTP_ENDPOINT")
CLICKHOUSE_USER = os.environ.get("CLICKHOUSE_USER")
CLICKHOUSE_PASSWORD = os.environ.get("CLICKHOUSE_PASSWORD")
CLICKHOUSE_DATABASE = os.environ.get("CLICKHOUSE_DATABASE", "lugx_analytics")

# Supabase is only used as the durable dead-letter store. Both or neither.
SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_KEY")

if bool(SUPABASE_URL) != bool(SUPABASE_KEY):
    raise RuntimeError("Supabase env vars only partially configured")

APP_ENV = os.getenv("APP_ENV", "production")
