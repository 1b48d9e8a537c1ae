"""Health probe used by the orchestrator: sink connectivity and buffer depth."""

from fastapi import APIRouter, Depends

from lugx_analytics.schemas import HealthResponse
from lugx_analytics.utils.dependencies import get_pipeline

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(pipeline=Depends(get_pipeline)):
    return await pipeline.health()
