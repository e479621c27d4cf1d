from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from chatjobs.api.schemas import (
    CleanupOutcomeResponse,
    HealthResponse,
    QueuedResponse,
    TitleOutcomeResponse,
    error_responses,
)
from chatjobs.logging import get_logger
from chatjobs.service.dispatcher import EndpointPolicy, InboundRequest
from chatjobs.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

CLEANUP_POLICY = EndpointPolicy(operator=True, end_user_rejection="cleanup token required")
TITLE_POLICY = EndpointPolicy(
    end_user=True,
    operator_rejection="operator token not accepted for title generation",
)


async def _inbound(request: Request) -> InboundRequest:
    """Snapshot the raw request; signatures cover the exact body bytes."""
    return InboundRequest(
        method=request.method,
        url=str(request.url),
        base_url=str(request.base_url),
        host=request.url.hostname or "",
        headers=request.headers,
        body=await request.body(),
        cookie=request.headers.get("cookie"),
    )


@router.post(
    "/workflow/cleanup",
    response_model=CleanupOutcomeResponse,
    responses={202: {"model": QueuedResponse}, **error_responses(400, 401, 403, 409, 500)},
    tags=["workflow"],
)
async def run_cleanup(request: Request):
    runtime = get_runtime()
    result = await runtime.dispatcher.dispatch(
        runtime.cleanup_job, await _inbound(request), CLEANUP_POLICY
    )
    return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)


@router.post(
    "/workflow/generate-title",
    response_model=TitleOutcomeResponse,
    responses={
        202: {"model": QueuedResponse},
        **error_responses(400, 401, 403, 409, 429, 500, 502),
    },
    tags=["workflow"],
)
async def generate_title(request: Request):
    runtime = get_runtime()
    result = await runtime.dispatcher.dispatch(
        runtime.title_job, await _inbound(request), TITLE_POLICY
    )
    return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)


@router.get("/healthz", response_model=HealthResponse, tags=["meta"])
async def health():
    runtime = get_runtime()
    try:
        cache_ok = await runtime.cache.ping()
    except Exception as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        cache_ok = False
    body = HealthResponse(
        status="healthy" if cache_ok else "unhealthy",
        cache="healthy" if cache_ok else "unhealthy",
        queue_configured=runtime.queue.configured,
        signing_keys_configured=runtime.verifier.signing_keys_configured,
    )
    return JSONResponse(body.model_dump(), status_code=200 if cache_ok else 503)
