from __future__ import annotations

"""Pydantic models for request/response bodies.

Domain types (``Event``, ``RollupBucket`` ...) live in
``lugx_analytics.models``; this package only describes what goes over HTTP.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .events import EventIngest  # noqa: E402, F401


class RejectionItem(BaseModel):
    index: int
    reason: str = Field(..., examples=["UnknownKind"])


class IngestionResponse(BaseModel):
    accepted: int
    rejected: List[RejectionItem] = Field(default_factory=list)
    dead_lettered: int = 0


class ErrorResponse(BaseModel):
    reason: str = Field(..., examples=["invalid_range"])


class SeriesPoint(BaseModel):
    bucket_start: datetime
    count: int
    total: float
    unique_sessions: int
    unique_users: int


class DimensionCount(BaseModel):
    dimension: str
    count: int
    total: float
    average: float


class KindSummary(BaseModel):
    count: int = 0
    total: float = 0.0
    average: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    unique_sessions: int = 0
    unique_users: int = 0
    series: List[SeriesPoint] = Field(default_factory=list)
    top_dimensions: List[DimensionCount] = Field(default_factory=list)
    rollup_buckets: int = Field(0, description="Windows served from finalized rollups")
    live_buckets: int = Field(0, description="Windows aggregated live from raw events")


class DashboardView(BaseModel):
    start: datetime
    end: datetime
    bucket_seconds: int
    generated_at: datetime
    kinds: Dict[str, KindSummary]


class GameStats(BaseModel):
    target_id: str
    interactions: int
    unique_sessions: int
    views: int = 0
    cart_additions: int = 0
    purchases: int = 0
    conversion_rate: float = Field(0.0, description="Purchases per view, in percent")
    revenue: float = 0.0


class GamesView(BaseModel):
    start: datetime
    end: datetime
    total_games: int
    games: List[GameStats] = Field(default_factory=list)


class FunnelStep(BaseModel):
    step: str
    step_count: int
    unique_sessions: int
    revenue: float
    conversion_rate: float = Field(..., description="Percent of the previous step")
    drop_off_rate: float


class FunnelView(BaseModel):
    start: datetime
    end: datetime
    steps: List[FunnelStep]
    total_revenue: float


class UserMetrics(BaseModel):
    sessions: int = 0
    unique_users: int = 0
    avg_session_duration_seconds: float = 0.0
    avg_pages_per_session: float = 0.0
    bounce_sessions: int = 0
    bounce_rate: float = Field(0.0, description="Single-page sessions, in percent")


class DailyUserMetrics(UserMetrics):
    date: datetime


class UserBehaviourView(BaseModel):
    start: datetime
    end: datetime
    overall: UserMetrics
    daily: List[DailyUserMetrics] = Field(default_factory=list)
    top_searches: List[DimensionCount] = Field(default_factory=list)


class BufferHealth(BaseModel):
    depth: int
    in_flight: int
    written: int
    dead_lettered: int


class SinkHealth(BaseModel):
    connected: bool
    backend: str
    last_error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    sink: SinkHealth
    buffers: Dict[str, BufferHealth]


__all__ = [
    "EventIngest",
    "RejectionItem",
    "IngestionResponse",
    "ErrorResponse",
    "SeriesPoint",
    "DimensionCount",
    "KindSummary",
    "DashboardView",
    "GameStats",
    "GamesView",
    "FunnelStep",
    "FunnelView",
    "UserMetrics",
    "DailyUserMetrics",
    "UserBehaviourView",
    "BufferHealth",
    "SinkHealth",
    "HealthResponse",
]
