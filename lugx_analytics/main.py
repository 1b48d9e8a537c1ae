"""Entry-point for the ASGI server → FastAPI app.

This module constructs the FastAPI instance, wires global middleware and
error handlers, registers the route groups, and exposes the `app` variable
uvicorn imports (``lugx_analytics.main:app``).

Every stateful component (buffers, writer tasks, rollup aggregator) hangs off
one ``IngestionPipeline`` created in the lifespan and kept on ``app.state``.
"""

from __future__ import annotations

import os
import logging
import traceback
from contextlib import asynccontextmanager
from contextvars import ContextVar
from time import perf_counter
from typing import Callable, Awaitable, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from lugx_analytics import APP_ENV, CLICKHOUSE_ENDPOINT
from lugx_analytics.utils.logger import configure_logging, logger
from lugx_analytics.settings import ALLOWED_ORIGINS, RATE_LIMIT, PipelineSettings
from lugx_analytics.utils.errors import CapacityError, StoreError, ValidationError
from lugx_analytics.utils.store import EventStore, InMemoryEventStore
from lugx_analytics.utils.dead_letter import DeadLetterSink, build_dead_letter_sink

# ---------------------------------------------------------------------------
# Runtime environment
# ---------------------------------------------------------------------------


# Rate limiter (IP-based by default)
limiter = Limiter(key_func=get_remote_address, default_limits=[RATE_LIMIT])

# Legacy tracker builds post to /api/analytics/*
LEGACY_PREFIX = "/api/analytics"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach request-level context vars for structured logging."""

    _request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:  # type: ignore[override]
        start = perf_counter()
        request_id = request.headers.get("X-Request-Id", os.urandom(4).hex())
        token = self._request_id_ctx.set(request_id)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration_ms = (perf_counter() - start) * 1000
            logger.info(
                "request.complete",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                    "request_id": request_id,
                },
            )
            self._request_id_ctx.reset(token)
        return response


def _default_store() -> EventStore:
    if CLICKHOUSE_ENDPOINT:
        from lugx_analytics.utils.clickhouse import ClickHouseEventStore  # noqa: WPS433

        return ClickHouseEventStore.from_env()
    logger.warning("store.in_memory", extra={"note": "CLICKHOUSE_HTTP_ENDPOINT unset – dev mode, data is not persisted"})
    return InMemoryEventStore()


def create_app(
    *,
    store: Optional[EventStore] = None,
    dead_letter: Optional[DeadLetterSink] = None,
    settings: Optional[PipelineSettings] = None,
    background: bool = True,
) -> FastAPI:  # noqa: C901
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from lugx_analytics.pipeline import IngestionPipeline  # noqa: WPS433

        pipeline_settings = settings or PipelineSettings.from_env()
        app_store = store if store is not None else _default_store()
        sink = dead_letter if dead_letter is not None else build_dead_letter_sink(pipeline_settings.dead_letter_path)

        pipeline = IngestionPipeline(app_store, sink, pipeline_settings)
        await pipeline.start(ticker=background, aggregator=background)
        app.state.pipeline = pipeline
        try:
            yield
        finally:
            await pipeline.stop()
            # caller-provided stores are closed by their owner
            if store is None:
                await app_store.close()

    app = FastAPI(
        title="LUGX Analytics Ingestion API",
        version="0.1.0",
        docs_url="/docs" if APP_ENV != "production" else None,
        redoc_url=None,
        openapi_url="/openapi.json" if APP_ENV != "production" else None,
        lifespan=lifespan,
    )

    # Global middleware
    app.add_middleware(RequestContextMiddleware)
    # Rate limiting middleware (SlowAPI expects limiter via app.state)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    # Register default handler for 429 responses from SlowAPI
    from slowapi.errors import RateLimitExceeded  # noqa: WPS433  (runtime import)
    from slowapi import _rate_limit_exceeded_handler

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # -------------------------------------------------------------------
    # Domain errors → HTTP
    # -------------------------------------------------------------------

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"reason": exc.reason, "detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"reason": "malformed_request", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("store.unavailable", extra={"path": request.url.path, "error": str(exc)})
        return JSONResponse(status_code=503, content={"reason": "store_unavailable"})

    @app.exception_handler(CapacityError)
    async def capacity_error_handler(request: Request, exc: CapacityError):
        return JSONResponse(
            status_code=429,
            content=exc.body or {"reason": "busy"},
            headers={"Retry-After": str(max(1, int(round(exc.retry_after))))},
        )

    # Global exception handler - logs full tracebacks for any unhandled 500s
    @app.exception_handler(Exception)
    async def log_unhandled_exceptions(request: Request, exc: Exception):
        """Log full traceback for any unhandled exception that would become a 500."""
        error_logger = logging.getLogger("uvicorn.error")
        error_logger.error(
            "UNHANDLED %s at %s %s\n%s",
            type(exc).__name__,
            request.method,
            request.url.path,
            "".join(traceback.format_tb(exc.__traceback__))
        )
        # Re-raise so FastAPI still returns the appropriate status code
        raise exc

    # -------------------------------------------------------------------
    # CORS (env-driven allow-list; the storefront posts from the browser)
    # -------------------------------------------------------------------

    logger.debug("cors.origins", extra={"allowed_origins": ALLOWED_ORIGINS})
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-Id"],
        max_age=600,
    )

    # Liveness
    @app.get("/")
    async def root() -> Dict[str, str]:  # pylint: disable=unused-variable
        return {"status": "ok"}

    if APP_ENV != "production":
        from lugx_analytics.openapi import install_openapi_route  # noqa: WPS433 (runtime import)

        install_openapi_route(app)

    from lugx_analytics.routers import events_routes, dashboard_routes, health_routes

    for module in (events_routes, dashboard_routes, health_routes):
        app.include_router(module.router)
        app.include_router(module.router, prefix=LEGACY_PREFIX, include_in_schema=False)

    return app

# The object uvicorn imports
app = create_app()
