from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from chatjobs.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STEP_TIMEOUT_SECONDS = 30.0
DEFAULT_STEP_MAX_RETRIES = 2  # Up to 2 retries (3 total attempts)
DEFAULT_BACKOFF_MS = 1000  # Quadruples each retry: 1s, 4s
MAX_RETRIES_HARD_CAP = 3
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


class WorkflowSuspended(Exception):
    """Raised by a durable sleep once the continuation has been scheduled."""

    def __init__(self, step: str, delay_seconds: float):
        super().__init__(f"suspended at {step}")
        self.step = step
        self.delay_seconds = delay_seconds


@dataclass
class CallResult:
    """Recorded outcome of an outbound HTTP step.

    ``status`` is None when no response was received; ``error`` then names the
    transport failure.
    """

    status: Optional[int]
    body: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300

    def to_dict(self) -> dict:
        return {"status": self.status, "body": self.body, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict) -> "CallResult":
        return cls(status=data.get("status"), body=data.get("body"), error=data.get("error"))


def _normalize(value: Any) -> Any:
    # Step values cross a JSON boundary in durable mode; apply it inline too
    return json.loads(json.dumps(value))


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class StepContext(ABC):
    """Execution substrate handed to a job body.

    Job bodies only talk to the substrate through named steps, so the same
    body runs synchronously or as a resumable workflow.
    """

    durable: bool = False

    def __init__(
        self,
        *,
        run_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.run_id = run_id
        self.transport = transport
        self.trace: List[Dict[str, Any]] = []

    @abstractmethod
    async def run(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        timeout: Optional[float] = DEFAULT_STEP_TIMEOUT_SECONDS,
    ) -> Any:
        """Execute ``fn`` as step ``name`` and return its JSON-compatible value."""

    @abstractmethod
    async def sleep(self, name: str, seconds: float) -> None:
        ...

    @abstractmethod
    async def call(
        self,
        name: str,
        *,
        url: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
        retries: int = 0,
    ) -> CallResult:
        ...

    def _record(self, name: str, status: str, **extra: Any) -> None:
        self.trace.append({"step": name, "status": status, **extra})

    async def _send(
        self,
        *,
        url: str,
        method: str,
        headers: Optional[Dict[str, str]],
        body: Any,
        timeout: float,
    ) -> CallResult:
        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=False, transport=self.transport
            ) as client:
                response = await asyncio.wait_for(
                    client.request(method, url, headers=headers, json=body),
                    timeout=timeout,
                )
        except asyncio.TimeoutError:
            return CallResult(status=None, error="timeout")
        except httpx.HTTPError as exc:
            return CallResult(status=None, error=type(exc).__name__)
        return CallResult(status=response.status_code, body=_decode_body(response))


class InlineContext(StepContext):
    """Runs steps directly on the request's event loop with no retries."""

    durable = False

    def __init__(
        self,
        *,
        run_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(run_id=run_id, transport=transport)
        self._sleeper = sleeper

    async def run(self, name, fn, *, timeout=DEFAULT_STEP_TIMEOUT_SECONDS):
        value = await fn()
        self._record(name, "executed")
        return _normalize(value)

    async def sleep(self, name: str, seconds: float) -> None:
        if seconds > 0:
            await self._sleeper(seconds)
        self._record(name, "slept", seconds=seconds)

    async def call(
        self,
        name,
        *,
        url,
        method="POST",
        headers=None,
        body=None,
        timeout=DEFAULT_STEP_TIMEOUT_SECONDS,
        retries=0,
    ):
        result = await self._send(
            url=url, method=method, headers=headers, body=body, timeout=timeout
        )
        self._record(name, "executed", http_status=result.status)
        return CallResult.from_dict(_normalize(result.to_dict()))


class DurableContext(StepContext):
    """Checkpoints every completed step in the run-state cache.

    A redelivered callback replays recorded steps instead of executing them
    again. Sleeps park the run: the continuation is published with a delay
    and the current invocation ends with :class:`WorkflowSuspended`.
    """

    durable = True

    def __init__(
        self,
        *,
        run_id: str,
        cache,
        schedule_continuation: Callable[[float], Awaitable[None]],
        state_ttl_seconds: int = 24 * 60 * 60,
        max_retries: int = DEFAULT_STEP_MAX_RETRIES,
        backoff_ms: int = DEFAULT_BACKOFF_MS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(run_id=run_id, transport=transport)
        self.cache = cache
        self.schedule_continuation = schedule_continuation
        self.state_ttl_seconds = state_ttl_seconds
        self.max_retries = min(max(0, max_retries), MAX_RETRIES_HARD_CAP)
        self.backoff_ms = backoff_ms
        self._sleeper = sleeper
        self._steps: Optional[Dict[str, Any]] = None

    async def load(self) -> Dict[str, Any]:
        if self._steps is None:
            self._steps = await self.cache.get_workflow_steps(self.run_id)
        return self._steps

    async def _save(self, name: str, record: dict) -> None:
        steps = await self.load()
        steps[name] = record
        await self.cache.set_workflow_step(
            self.run_id, name, record, self.state_ttl_seconds
        )

    async def _backoff(self, name: str, attempt: int) -> None:
        # backoff_ms * (4 ^ (attempt - 1))
        delay_ms = self.backoff_ms * (4 ** (attempt - 1))
        if delay_ms > 0:
            logger.info(
                "workflow_step_backoff",
                run_id=self.run_id,
                step=name,
                attempt=attempt,
                backoff_ms=delay_ms,
            )
            await self._sleeper(delay_ms / 1000.0)

    async def run(self, name, fn, *, timeout=DEFAULT_STEP_TIMEOUT_SECONDS):
        steps = await self.load()
        recorded = steps.get(name)
        if recorded and recorded.get("status") == "done":
            self._record(name, "replayed")
            return recorded.get("value")

        attempt = 0
        while True:
            try:
                if timeout:
                    value = await asyncio.wait_for(fn(), timeout=timeout)
                else:
                    value = await fn()
                break
            except asyncio.TimeoutError as exc:
                error: Exception = exc
                retryable = True
            except Exception as exc:
                error = exc
                retryable = bool(getattr(exc, "retryable", False))
            attempt += 1
            if not retryable or attempt > self.max_retries:
                logger.error(
                    "workflow_step_retries_exhausted" if retryable else "workflow_step_failed",
                    run_id=self.run_id,
                    step=name,
                    attempts=attempt,
                    error_type=type(error).__name__,
                    error=str(error),
                )
                raise error
            logger.warning(
                "workflow_step_retry",
                run_id=self.run_id,
                step=name,
                attempt=attempt,
                max_retries=self.max_retries,
                error_type=type(error).__name__,
            )
            await self._backoff(name, attempt)

        value = _normalize(value)
        await self._save(name, {"status": "done", "value": value, "at": time.time()})
        self._record(name, "executed", attempts=attempt + 1)
        return value

    async def sleep(self, name: str, seconds: float) -> None:
        steps = await self.load()
        recorded = steps.get(name)
        if recorded and recorded.get("status") in {"scheduled", "done"}:
            if recorded.get("status") == "scheduled":
                await self._save(name, {"status": "done", "at": time.time()})
            self._record(name, "resumed")
            return
        if seconds <= 0:
            await self._save(name, {"status": "done", "at": time.time()})
            self._record(name, "skipped")
            return
        await self._save(name, {"status": "scheduled", "at": time.time()})
        await self.schedule_continuation(seconds)
        self._record(name, "scheduled", seconds=seconds)
        raise WorkflowSuspended(name, seconds)

    async def call(
        self,
        name,
        *,
        url,
        method="POST",
        headers=None,
        body=None,
        timeout=DEFAULT_STEP_TIMEOUT_SECONDS,
        retries=0,
    ):
        steps = await self.load()
        recorded = steps.get(name)
        if recorded and recorded.get("status") == "done":
            self._record(name, "replayed")
            return CallResult.from_dict(recorded.get("value") or {})

        budget = min(max(0, retries), MAX_RETRIES_HARD_CAP)
        attempt = 0
        while True:
            result = await self._send(
                url=url, method=method, headers=headers, body=body, timeout=timeout
            )
            transient = result.status is None or result.status in RETRYABLE_STATUSES
            if result.ok or not transient or attempt >= budget:
                break
            attempt += 1
            logger.warning(
                "workflow_call_retry",
                run_id=self.run_id,
                step=name,
                attempt=attempt,
                max_retries=budget,
                http_status=result.status,
                error=result.error,
            )
            await self._backoff(name, attempt)

        value = _normalize(result.to_dict())
        await self._save(name, {"status": "done", "value": value, "at": time.time()})
        self._record(name, "executed", attempts=attempt + 1, http_status=result.status)
        return CallResult.from_dict(value)
