from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

import httpx

from chatjobs.logging import get_logger
from chatjobs.service.errors import ConfigurationError, UpstreamError

logger = get_logger(__name__)

QUEUE_NOT_CONFIGURED = "Workflow queue is not configured (missing QSTASH_TOKEN)"
PUBLISH_TIMEOUT_SECONDS = 10.0


def new_run_id() -> str:
    return f"wfr_{uuid.uuid4().hex}"


class WorkflowQueue:
    """Publish workflow deliveries to an HTTP message queue.

    The queue POSTs the body back to ``callback_url`` with a signature header,
    at least once and after ``delay_seconds``.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        *,
        retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = PUBLISH_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.retries = retries
        self.transport = transport
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.token)

    async def publish(
        self,
        callback_url: str,
        payload: Dict[str, Any],
        *,
        run_id: Optional[str] = None,
        delay_seconds: float = 0,
    ) -> str:
        if not self.configured:
            raise ConfigurationError(QUEUE_NOT_CONFIGURED)
        run_id = run_id or new_run_id()
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(self.retries),
        }
        if delay_seconds > 0:
            headers["Upstash-Delay"] = f"{max(1, int(round(delay_seconds)))}s"
        body = {"workflowRunId": run_id, "payload": payload}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/v2/publish/{callback_url}",
                    headers=headers,
                    json=body,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "workflow_publish_http_error",
                run_id=run_id,
                status_code=exc.response.status_code,
            )
            raise UpstreamError("failed to enqueue workflow") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "workflow_publish_failed", run_id=run_id, error_type=type(exc).__name__
            )
            raise UpstreamError("failed to enqueue workflow") from exc
        logger.info(
            "workflow_published",
            run_id=run_id,
            callback_url=callback_url,
            delay_seconds=delay_seconds,
        )
        return run_id
