from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import httpx

from chatjobs.config import TrustProxyMode
from chatjobs.jobs.base import JobCredentials, WorkflowJob
from chatjobs.logging import get_logger, log_workflow_trace
from chatjobs.service.client_identity import resolve_client_ip
from chatjobs.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    ServerError,
    UpstreamError,
    ValidationError,
)
from chatjobs.service.signatures import RequestKind, SignatureVerifier
from chatjobs.storage.errors import BackendAuthError, BackendError
from chatjobs.workflow.context import DurableContext, InlineContext, WorkflowSuspended
from chatjobs.workflow.queue import QUEUE_NOT_CONFIGURED, WorkflowQueue

logger = get_logger(__name__)

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "[::1]"})

RateLimitFn = Callable[[str, int, int], Awaitable[Tuple[bool, int, int]]]


@dataclass
class InboundRequest:
    """Transport-neutral view of an HTTP request hitting a workflow endpoint."""

    method: str
    url: str
    base_url: str
    host: str
    headers: Mapping[str, str]
    body: bytes = b""
    cookie: Optional[str] = None


@dataclass
class DispatchResult:
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class EndpointPolicy:
    """Which caller kinds a workflow endpoint accepts directly."""

    operator: bool = False
    end_user: bool = False
    operator_rejection: str = "operator token not accepted for this workflow"
    end_user_rejection: str = "authentication required"


def _decode_json(body: bytes) -> Any:
    if not body or not body.strip():
        return {}
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError("request body must be valid JSON") from exc


class ExecutionDispatcher:
    """Route each workflow request to the callback, inline, or queued path.

    Signed callbacks resume the durable run without further auth. Operator
    and end-user requests are validated first, then either run inline (local
    hosts) or are published to the queue. End-user tokens only cross into the
    queue as an opaque bridge reference.
    """

    def __init__(
        self,
        *,
        verifier: SignatureVerifier,
        queue: WorkflowQueue,
        bridge,
        session_auth,
        store,
        cache,
        rate_limit: RateLimitFn,
        trust_proxy: TrustProxyMode = TrustProxyMode.UNSET,
        user_rate_limit: int = 20,
        ip_rate_limit: int = 60,
        rate_limit_window_seconds: int = 60,
        public_base_url: Optional[str] = None,
        state_ttl_seconds: int = 24 * 60 * 60,
        run_lock_seconds: int = 120,
        step_max_retries: int = 2,
        step_backoff_ms: int = 1000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.verifier = verifier
        self.queue = queue
        self.bridge = bridge
        self.session_auth = session_auth
        self.store = store
        self.cache = cache
        self.rate_limit = rate_limit
        self.trust_proxy = trust_proxy
        self.user_rate_limit = user_rate_limit
        self.ip_rate_limit = ip_rate_limit
        self.rate_limit_window_seconds = rate_limit_window_seconds
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.state_ttl_seconds = state_ttl_seconds
        self.run_lock_seconds = run_lock_seconds
        self.step_max_retries = step_max_retries
        self.step_backoff_ms = step_backoff_ms
        self.transport = transport
        self.sleeper = sleeper

    def callback_url(self, job: WorkflowJob, request: InboundRequest) -> str:
        base = self.public_base_url or request.base_url.rstrip("/")
        return f"{base}/workflow/{job.name}"

    @staticmethod
    def is_local(request: InboundRequest) -> bool:
        return (request.host or "").lower() in LOCAL_HOSTS

    async def dispatch(
        self, job: WorkflowJob, request: InboundRequest, policy: EndpointPolicy
    ) -> DispatchResult:
        callback_url = self.callback_url(job, request)
        classification = self.verifier.classify(
            method=request.method,
            url=request.url,
            headers=request.headers,
            body=request.body,
            callback_url=callback_url,
        )
        kind = classification.kind
        logger.info("workflow_request_classified", job=job.name, kind=kind.value)

        if kind == RequestKind.REJECTED and classification.status_code != 403:
            # Signature failures and missing signing keys
            classification.raise_for_rejection()
        if kind == RequestKind.WORKFLOW_CALLBACK:
            return await self.handle_callback(job, request, callback_url)
        if kind == RequestKind.OPERATOR:
            if not policy.operator:
                raise ForbiddenError(policy.operator_rejection)
            return await self._handle_operator(job, request, callback_url)
        if not policy.end_user:
            # Browser-shaped requests never reach operator-only workflows
            raise AuthenticationError(policy.end_user_rejection)
        classification.raise_for_rejection()
        return await self._handle_end_user(job, request, callback_url)

    async def _handle_operator(
        self, job: WorkflowJob, request: InboundRequest, callback_url: str
    ) -> DispatchResult:
        payload = job.parse_payload(_decode_json(request.body))
        if self.is_local(request):
            return await self.run_inline(job, payload, JobCredentials())
        return await self._enqueue(job, payload, callback_url)

    async def _handle_end_user(
        self, job: WorkflowJob, request: InboundRequest, callback_url: str
    ) -> DispatchResult:
        token = await self.session_auth.exchange_cookie(request.cookie)
        if not token:
            raise AuthenticationError("authentication required")
        session_user = await self.session_auth.get_session_user(request.cookie)
        if not session_user:
            raise AuthenticationError("authentication required")
        try:
            user_id = await self.store.resolve_user(session_user, token=token)
        except BackendAuthError as exc:
            raise AuthenticationError("authentication required") from exc
        except BackendError as exc:
            raise UpstreamError("unable to resolve user") from exc
        if not user_id:
            raise AuthenticationError("authentication required")

        client_ip = resolve_client_ip(request.headers, self.trust_proxy)
        if not client_ip:
            logger.warning(
                "client_ip_unresolved", job=job.name, trust_proxy=self.trust_proxy.value
            )
            raise ValidationError("unable to determine client identity")
        await self._enforce_rate_limit(f"{job.name}:ip:{client_ip}", self.ip_rate_limit)
        await self._enforce_rate_limit(f"{job.name}:{user_id}", self.user_rate_limit)

        payload = job.parse_payload(_decode_json(request.body))
        payload = payload.model_copy(update={"user_id": user_id, "auth_token_ref": None})

        if self.is_local(request):
            return await self.run_inline(job, payload, JobCredentials(token=token))

        if not self.queue.configured:
            raise ConfigurationError(QUEUE_NOT_CONFIGURED)
        token_ref = await self.bridge.store_token(token)
        if not token_ref:
            raise ServerError("auth token store unavailable")
        payload = payload.model_copy(update={"auth_token_ref": token_ref})
        try:
            return await self._enqueue(job, payload, callback_url)
        except Exception:
            await self.bridge.revoke_token(token_ref)
            raise

    async def _enforce_rate_limit(self, key: str, limit: int) -> None:
        window = self.rate_limit_window_seconds
        try:
            allowed, remaining, reset_seconds = await self.rate_limit(key, limit, window)
        except Exception as exc:
            logger.error(
                "rate_limiter_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise ServerError("rate limiter unavailable") from exc
        if not allowed:
            retry_after = max(1, math.ceil(reset_seconds or window))
            raise RateLimitedError(
                "rate limit exceeded",
                retry_after=retry_after,
                limit=limit,
                remaining=remaining,
                reset_seconds=reset_seconds,
            )

    async def _enqueue(
        self, job: WorkflowJob, payload, callback_url: str
    ) -> DispatchResult:
        if not self.queue.configured:
            raise ConfigurationError(QUEUE_NOT_CONFIGURED)
        run_id = await self.queue.publish(callback_url, job.queue_payload(payload))
        logger.info("workflow_enqueued", job=job.name, run_id=run_id)
        return DispatchResult(202, {"queued": True, "workflowRunId": run_id})

    async def run_inline(
        self, job: WorkflowJob, payload, credentials: JobCredentials
    ) -> DispatchResult:
        ctx = InlineContext(transport=self.transport, sleeper=self.sleeper)
        try:
            outcome = await job.execute(ctx, payload, credentials)
        except BackendError as exc:
            logger.error(
                "workflow_inline_backend_error",
                job=job.name,
                status=exc.status,
                error=exc.message,
            )
            raise UpstreamError("document store request failed") from exc
        log_workflow_trace(ctx.trace, logger)
        return DispatchResult(job.http_status(outcome), job.serialize(outcome))

    async def handle_callback(
        self, job: WorkflowJob, request: InboundRequest, callback_url: str
    ) -> DispatchResult:
        envelope = _decode_json(request.body)
        if not isinstance(envelope, dict):
            raise ValidationError("workflow delivery must be a JSON object")
        run_id = envelope.get("workflowRunId")
        if not isinstance(run_id, str) or not run_id.strip():
            raise ValidationError("workflowRunId is required")
        raw_payload = envelope.get("payload")
        payload = job.parse_payload(raw_payload)

        holder = await self.cache.acquire_run_lock(run_id, self.run_lock_seconds)
        if holder is None:
            raise ConflictError("workflow run already in progress")
        try:
            stored = await self.cache.get_workflow_result(run_id)
            if stored is not None:
                logger.info("workflow_result_replayed", job=job.name, run_id=run_id)
                return DispatchResult(200, stored)

            async def _continue(delay_seconds: float) -> None:
                await self.queue.publish(
                    callback_url,
                    job.queue_payload(payload),
                    run_id=run_id,
                    delay_seconds=delay_seconds,
                )

            ctx = DurableContext(
                run_id=run_id,
                cache=self.cache,
                schedule_continuation=_continue,
                state_ttl_seconds=self.state_ttl_seconds,
                max_retries=self.step_max_retries,
                backoff_ms=self.step_backoff_ms,
                transport=self.transport,
                sleeper=self.sleeper,
            )
            token_ref = getattr(payload, "auth_token_ref", None)
            try:
                outcome = await job.execute(ctx, payload, JobCredentials(token_ref=token_ref))
            except WorkflowSuspended as suspended:
                log_workflow_trace(ctx.trace, logger)
                return DispatchResult(
                    200,
                    {"suspended": True, "workflowRunId": run_id, "step": suspended.step},
                )

            body = job.serialize(outcome)
            await self.cache.set_workflow_result(run_id, body, self.state_ttl_seconds)
            if token_ref:
                await self.bridge.revoke_token(token_ref)
            log_workflow_trace(ctx.trace, logger)
            logger.info("workflow_run_completed", job=job.name, run_id=run_id)
            return DispatchResult(200, body)
        finally:
            await self.cache.release_run_lock(run_id, holder)
