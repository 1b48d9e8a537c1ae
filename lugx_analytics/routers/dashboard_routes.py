from __future__ import annotations

"""Dashboard endpoints – merged rollup + live aggregates over a time range."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from lugx_analytics.models import EventKind
from lugx_analytics.schemas import DashboardView, ErrorResponse, FunnelView, GamesView, UserBehaviourView
from lugx_analytics.utils.dependencies import get_pipeline
from lugx_analytics.utils.errors import ValidationError
from lugx_analytics.utils.timerange import parse_range

router = APIRouter(tags=["dashboard"])


def _parse_kinds(values: Optional[List[str]]) -> Optional[List[EventKind]]:
    if not values:
        return None
    kinds: List[EventKind] = []
    for value in values:
        for part in value.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                kinds.append(EventKind(part))
            except ValueError:
                raise ValidationError("unknown_kind", f"unknown kind {part!r}")
    return kinds or None


@router.get(
    "/dashboard",
    response_model=DashboardView,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def get_dashboard(
    range_: Optional[str] = Query(
        None,
        alias="range",
        description="ISO-8601 interval, e.g. 2025-01-15T10:00:00Z/PT1H (default: last 24h)",
    ),
    kind: Optional[List[str]] = Query(None, description="Restrict to these kinds (repeat or comma-separate)"),
    pipeline=Depends(get_pipeline),
):
    start, end = parse_range(range_)
    return await pipeline.dashboard.dashboard(start, end, _parse_kinds(kind))


_RANGE_DESCRIPTION = "ISO-8601 interval (default: last 24h)"


@router.get(
    "/games",
    response_model=GamesView,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def get_games(
    range_: Optional[str] = Query(None, alias="range", description=_RANGE_DESCRIPTION),
    limit: int = Query(20, ge=1, le=100),
    pipeline=Depends(get_pipeline),
):
    """Most interacted-with games, with view → cart → purchase counts."""
    start, end = parse_range(range_)
    return await pipeline.dashboard.games(start, end, limit=limit)


@router.get(
    "/conversion",
    response_model=FunnelView,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def get_conversion(
    range_: Optional[str] = Query(None, alias="range", description=_RANGE_DESCRIPTION),
    pipeline=Depends(get_pipeline),
):
    start, end = parse_range(range_)
    return await pipeline.dashboard.funnel(start, end)


@router.get(
    "/users",
    response_model=UserBehaviourView,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def get_users(
    range_: Optional[str] = Query(None, alias="range", description=_RANGE_DESCRIPTION),
    pipeline=Depends(get_pipeline),
):
    start, end = parse_range(range_)
    return await pipeline.dashboard.user_behaviour(start, end)
