"""Event ingest – validates producer events and stages them for batched writes."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError

from lugx_analytics.schemas import ErrorResponse, EventIngest, IngestionResponse
from lugx_analytics.settings import MAX_INGEST_BYTES
from lugx_analytics.utils.dependencies import get_pipeline
from lugx_analytics.utils.errors import CapacityError

router = APIRouter(tags=["events"])


def _too_large() -> HTTPException:
    return HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Payload too large")


async def read_ingest_body(request: Request) -> EventIngest:
    """Read and parse the request body, refusing anything over ``MAX_INGEST_BYTES``.

    The declared ``Content-Length`` is checked first; chunked bodies are
    counted while they stream in, so nothing oversized is ever buffered
    whole or parsed.
    """
    # ---------------------------------------------------------------------
    # Payload size guard
    # ---------------------------------------------------------------------
    content_length = request.headers.get("content-length")
    try:
        declared = int(content_length) if content_length else 0
    except ValueError:
        declared = 0
    if declared > MAX_INGEST_BYTES:
        raise _too_large()

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > MAX_INGEST_BYTES:
            raise _too_large()

    try:
        data = json.loads(bytes(body))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RequestValidationError(
            [{"type": "json_invalid", "loc": ("body",), "msg": "JSON decode error", "input": {}, "ctx": {"error": str(exc)}}]
        )
    try:
        return EventIngest.model_validate(data)
    except PydanticValidationError as exc:
        raise RequestValidationError(
            [{**error, "loc": ("body", *error["loc"])} for error in exc.errors(include_url=False)]
        )


@router.post(
    "/events",
    response_model=IngestionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        200: {"model": IngestionResponse, "description": "Empty batch"},
        400: {"model": ErrorResponse},
        413: {"description": "Body larger than MAX_INGEST_BYTES"},
        429: {"model": IngestionResponse, "description": "Buffers full, retry later"},
    },
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": EventIngest.model_json_schema()}},
        }
    },
)
async def ingest_events(
    response: Response,
    batch: EventIngest = Depends(read_ingest_body),
    pipeline=Depends(get_pipeline),
):
    if not batch.events:
        response.status_code = status.HTTP_200_OK
        return IngestionResponse(accepted=0, rejected=[], dead_lettered=0)

    result = await pipeline.ingest(batch.events)

    # Nothing got in and at least part of it only for lack of room → 429
    if result.accepted == 0 and result.busy:
        raise CapacityError(retry_after=pipeline.settings.max_batch_age, body=result.to_dict())

    return IngestionResponse(**result.to_dict())
