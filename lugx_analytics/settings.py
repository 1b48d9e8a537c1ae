from __future__ import annotations

"""Application-level configuration helpers (env → constants).

Only generic settings that may be imported *anywhere* in the code-base
should live in this module.  Pipeline tunables are grouped in
``PipelineSettings`` so tests can build one with small values instead of
patching the environment.
"""

# Standard library
import os
from dataclasses import dataclass

from lugx_analytics.utils.utils import get_env_float, get_env_int

__all__ = ["ALLOWED_ORIGINS", "RATE_LIMIT", "MAX_INGEST_BYTES", "PipelineSettings"]


def _collect_origins() -> list[str]:
    """Collect allowed CORS origins from the environment.

    Falls back to the storefront's local nginx origin so the tracker keeps
    working in docker-compose when no explicit env vars are set.
    """
    origins: list[str] = []
    for name in ("FRONTEND_ORIGIN", "DOCS_ORIGIN", "EXTRA_ORIGIN"):
        if (val := os.getenv(name)):
            origins.append(val)

    if not origins:
        origins.extend(["http://localhost", "http://localhost:8080"])
    return origins


ALLOWED_ORIGINS: list[str] = _collect_origins()

# slowapi limit string applied per client IP
RATE_LIMIT: str = os.getenv("RATE_LIMIT", "600/minute")

# Request bodies above this size are refused with 413 before parsing events
MAX_INGEST_BYTES: int = get_env_int("MAX_INGEST_BYTES", 256 * 1024)


@dataclass(frozen=True)
class PipelineSettings:
    """Tunables for buffering, sink retries and rollups (seconds unless noted)."""

    max_batch_size: int = 100
    max_batch_age: float = 5.0
    tick_interval: float = 1.0
    # buffered + in-flight events per kind before submit() answers Busy
    max_pending: int = 10_000
    write_max_attempts: int = 5
    retry_base_delay: float = 0.2
    retry_max_delay: float = 5.0
    shutdown_grace: float = 10.0
    bucket_seconds: int = 60
    rollup_grace: float = 120.0
    rollup_lookback: float = 6 * 3600.0
    rollup_interval: float = 30.0
    rollup_concurrency: int = 8
    max_future_skew: float = 24 * 3600.0
    dead_letter_path: str = "dead_letters.jsonl"

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        if self.max_pending < self.max_batch_size:
            raise ValueError("max_pending must be >= max_batch_size")
        if self.write_max_attempts < 1:
            raise ValueError("write_max_attempts must be >= 1")
        if self.bucket_seconds < 1:
            raise ValueError("bucket_seconds must be >= 1")

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            max_batch_size=get_env_int("ANALYTICS_MAX_BATCH_SIZE", cls.max_batch_size),
            max_batch_age=get_env_float("ANALYTICS_MAX_BATCH_AGE", cls.max_batch_age),
            tick_interval=get_env_float("ANALYTICS_TICK_INTERVAL", cls.tick_interval),
            max_pending=get_env_int("ANALYTICS_MAX_PENDING", cls.max_pending),
            write_max_attempts=get_env_int("ANALYTICS_WRITE_MAX_ATTEMPTS", cls.write_max_attempts),
            retry_base_delay=get_env_float("ANALYTICS_RETRY_BASE_DELAY", cls.retry_base_delay),
            retry_max_delay=get_env_float("ANALYTICS_RETRY_MAX_DELAY", cls.retry_max_delay),
            shutdown_grace=get_env_float("ANALYTICS_SHUTDOWN_GRACE", cls.shutdown_grace),
            bucket_seconds=get_env_int("ANALYTICS_BUCKET_SECONDS", cls.bucket_seconds),
            rollup_grace=get_env_float("ANALYTICS_ROLLUP_GRACE", cls.rollup_grace),
            rollup_lookback=get_env_float("ANALYTICS_ROLLUP_LOOKBACK", cls.rollup_lookback),
            rollup_interval=get_env_float("ANALYTICS_ROLLUP_INTERVAL", cls.rollup_interval),
            rollup_concurrency=get_env_int("ANALYTICS_ROLLUP_CONCURRENCY", cls.rollup_concurrency),
            max_future_skew=get_env_float("ANALYTICS_MAX_FUTURE_SKEW", cls.max_future_skew),
            dead_letter_path=os.getenv("ANALYTICS_DEAD_LETTER_PATH", cls.dead_letter_path),
        )
