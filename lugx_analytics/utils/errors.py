"""Error taxonomy shared by the ingest path, the sink and the HTTP layer.

``ValidationError`` is the caller's problem and is never retried.
``TransientStoreError`` is retried with backoff by the sink writer,
``PermanentStoreError`` sends records to the dead-letter sink, and
``CapacityError`` is what a producer sees as ``Busy``.
"""

from __future__ import annotations

__all__ = [
    "AnalyticsError",
    "ValidationError",
    "StoreError",
    "TransientStoreError",
    "PermanentStoreError",
    "CapacityError",
]


class AnalyticsError(Exception):
    """Base class for every error raised on purpose by this package."""


class ValidationError(AnalyticsError):
    """Bad input from a caller (malformed request, range, kind...)."""

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason


class StoreError(AnalyticsError):
    """The analytics store refused or failed an operation."""


class TransientStoreError(StoreError):
    """Connection error, timeout or overload; the same call may succeed later."""


class PermanentStoreError(StoreError):
    """The store rejected the data itself; retrying the same payload is useless."""


class CapacityError(AnalyticsError):
    """Buffers are full and flushing is lagging; retry later."""

    def __init__(self, retry_after: float, body: dict | None = None):
        super().__init__(f"busy, retry after {retry_after:g}s")
        self.retry_after = retry_after
        self.body = body
