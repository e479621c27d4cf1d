"""Tests for durable step execution and queue callback handling."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from chatjobs.service.dispatcher import EndpointPolicy, InboundRequest
from chatjobs.service.errors import ConflictError, ValidationError
from chatjobs.service.runtime import get_runtime
from chatjobs.service.signatures import SIGNATURE_HEADER, sign_callback
from chatjobs.storage.errors import BackendError
from chatjobs.storage.local_cache import MemoryCache
from chatjobs.workflow.context import DurableContext, WorkflowSuspended

BASE_URL = "https://jobs.example.com/"
CLEANUP_POLICY = EndpointPolicy(operator=True)
TITLE_POLICY = EndpointPolicy(end_user=True)


class FakeUpstream:
    """One mock transport for the queue and LLM hosts."""

    def __init__(self):
        self.published = []
        self.llm_calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "queue.test":
            self.published.append(request)
            return httpx.Response(200, json={"messageId": "msg_1"})
        if request.url.host == "llm.test":
            self.llm_calls += 1
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "Soup Recipes"}}]}
            )
        return httpx.Response(404)

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


def _delivery(job_name: str, run_id: str, payload: dict) -> InboundRequest:
    body = json.dumps({"workflowRunId": run_id, "payload": payload}).encode()
    url = f"{BASE_URL}workflow/{job_name}"
    return InboundRequest(
        method="POST",
        url=url,
        base_url=BASE_URL,
        host="jobs.example.com",
        headers={SIGNATURE_HEADER: sign_callback(body, url, "sig-current-key")},
        body=body,
    )


def _seed_stale_chats(store, count):
    user = store.create_user("ext-stale")
    old = datetime.now(timezone.utc) - timedelta(days=365)
    for _ in range(count):
        chat = store.create_chat(user.id)
        store.soft_delete_chat(chat.id, at=old)


class TestDurableContext:
    """Checkpointing, replay and retry semantics of durable steps."""

    def _ctx(self, cache=None, **kwargs):
        return DurableContext(
            run_id="wfr_ctx",
            cache=cache or MemoryCache(),
            schedule_continuation=kwargs.pop("schedule_continuation", AsyncMock()),
            **kwargs,
        )

    async def test_completed_step_is_replayed(self):
        cache = MemoryCache()
        fn = AsyncMock(return_value={"n": 1})

        assert await self._ctx(cache).run("step-a", fn) == {"n": 1}
        assert await self._ctx(cache).run("step-a", fn) == {"n": 1}
        assert fn.await_count == 1

    async def test_retryable_error_backs_off_and_retries(self):
        sleeper = AsyncMock()
        fn = AsyncMock(side_effect=[BackendError("flaky", retryable=True), "ok"])
        ctx = self._ctx(sleeper=sleeper, max_retries=2, backoff_ms=1000)

        assert await ctx.run("step-a", fn) == "ok"
        sleeper.assert_awaited_once_with(1.0)

    async def test_backoff_quadruples(self):
        sleeper = AsyncMock()
        error = BackendError("flaky", retryable=True)
        fn = AsyncMock(side_effect=[error, error, "ok"])
        ctx = self._ctx(sleeper=sleeper, max_retries=2, backoff_ms=1000)

        await ctx.run("step-a", fn)
        assert [call.args[0] for call in sleeper.await_args_list] == [1.0, 4.0]

    async def test_retries_exhausted_raises(self):
        fn = AsyncMock(side_effect=BackendError("down", retryable=True))
        ctx = self._ctx(sleeper=AsyncMock(), max_retries=2)

        with pytest.raises(BackendError):
            await ctx.run("step-a", fn)
        assert fn.await_count == 3

    async def test_non_retryable_error_raises_immediately(self):
        fn = AsyncMock(side_effect=BackendError("bad request", status=400))
        ctx = self._ctx(sleeper=AsyncMock())

        with pytest.raises(BackendError):
            await ctx.run("step-a", fn)
        assert fn.await_count == 1

    async def test_sleep_schedules_and_suspends(self):
        cache = MemoryCache()
        schedule = AsyncMock()

        with pytest.raises(WorkflowSuspended) as exc_info:
            await self._ctx(cache, schedule_continuation=schedule).sleep("sleep-1", 2)
        assert exc_info.value.step == "sleep-1"
        schedule.assert_awaited_once_with(2)

        # The continuation passes straight through the same sleep
        resumed = self._ctx(cache, schedule_continuation=schedule)
        await resumed.sleep("sleep-1", 2)
        assert schedule.await_count == 1
        assert resumed.trace[-1]["status"] == "resumed"

    async def test_zero_sleep_does_not_suspend(self):
        schedule = AsyncMock()
        await self._ctx(schedule_continuation=schedule).sleep("sleep-1", 0)
        schedule.assert_not_awaited()

    async def test_call_retries_transient_status(self):
        statuses = iter([503, 200])

        def handler(request):
            return httpx.Response(next(statuses), json={"ok": True})

        ctx = self._ctx(transport=httpx.MockTransport(handler), sleeper=AsyncMock())
        result = await ctx.call("call-llm", url="http://llm.test/x", body={}, retries=2)

        assert result.status == 200
        assert result.body == {"ok": True}

    async def test_call_does_not_retry_client_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": "bad key"})

        ctx = self._ctx(transport=httpx.MockTransport(handler), sleeper=AsyncMock())
        result = await ctx.call("call-llm", url="http://llm.test/x", body={}, retries=2)

        assert result.status == 401
        assert len(calls) == 1

    async def test_call_result_is_replayed(self):
        cache = MemoryCache()
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"n": len(calls)})

        transport = httpx.MockTransport(handler)
        first = await self._ctx(cache, transport=transport).call("call-llm", url="http://llm.test/x")
        second = await self._ctx(cache, transport=transport).call("call-llm", url="http://llm.test/x")

        assert first.body == second.body == {"n": 1}
        assert len(calls) == 1


class TestCleanupCallbacks:
    """Queue deliveries drive the cleanup loop across suspensions."""

    async def test_cleanup_resumes_without_repeating_deletes(self):
        runtime = get_runtime()
        upstream = FakeUpstream()
        runtime.set_http_transport(upstream.transport)
        runtime.cleanup_job.batch_delay_seconds = 1.0
        _seed_stale_chats(runtime.store, 120)

        deletes = []
        original = runtime.store.delete_stale_batch

        async def counting(retention_days, batch_size, dry_run, *, token=None):
            if not dry_run:
                deletes.append(batch_size)
            return await original(retention_days, batch_size, dry_run, token=token)

        runtime.store.delete_stale_batch = counting
        request = _delivery("cleanup", "wfr_cleanup", {"batchSize": 50})

        first = await runtime.dispatcher.dispatch(runtime.cleanup_job, request, CLEANUP_POLICY)
        assert first.status_code == 200
        assert first.body == {"suspended": True, "workflowRunId": "wfr_cleanup", "step": "sleep-1"}
        assert len(deletes) == 1

        continuation = upstream.published[0]
        assert str(continuation.url) == (
            "http://queue.test/v2/publish/https://jobs.example.com/workflow/cleanup"
        )
        assert continuation.headers["upstash-delay"] == "1s"
        assert json.loads(continuation.content) == {
            "workflowRunId": "wfr_cleanup",
            "payload": {"retentionDays": 90, "batchSize": 50, "dryRun": False},
        }

        # A duplicate delivery of the same step must not delete again
        second = await runtime.dispatcher.dispatch(runtime.cleanup_job, request, CLEANUP_POLICY)
        assert second.body["step"] == "sleep-2"
        assert len(deletes) == 2

        third = await runtime.dispatcher.dispatch(runtime.cleanup_job, request, CLEANUP_POLICY)
        assert third.body["step"] == "sleep-3"

        final = await runtime.dispatcher.dispatch(runtime.cleanup_job, request, CLEANUP_POLICY)
        assert final.status_code == 200
        assert final.body == {"success": True, "batches": 3, "totalDeleted": 120}
        assert len(deletes) == 3

        replay = await runtime.dispatcher.dispatch(runtime.cleanup_job, request, CLEANUP_POLICY)
        assert replay.body == final.body
        assert len(deletes) == 3

    async def test_locked_run_is_conflict(self):
        runtime = get_runtime()
        await runtime.cache.acquire_run_lock("wfr_busy", 60)

        with pytest.raises(ConflictError):
            await runtime.dispatcher.dispatch(
                runtime.cleanup_job, _delivery("cleanup", "wfr_busy", {}), CLEANUP_POLICY
            )

    async def test_missing_run_id_rejected(self):
        runtime = get_runtime()
        request = _delivery("cleanup", "", {})

        with pytest.raises(ValidationError):
            await runtime.dispatcher.dispatch(runtime.cleanup_job, request, CLEANUP_POLICY)

    async def test_lock_released_after_run(self):
        runtime = get_runtime()
        await runtime.dispatcher.dispatch(
            runtime.cleanup_job, _delivery("cleanup", "wfr_done", {}), CLEANUP_POLICY
        )
        assert await runtime.cache.acquire_run_lock("wfr_done", 60) is not None


class TestTitleCallbacks:
    async def test_title_callback_resolves_and_revokes_token_reference(self):
        runtime = get_runtime()
        upstream = FakeUpstream()
        runtime.set_http_transport(upstream.transport)
        owner = runtime.store.create_user("ext-soup")
        chat = runtime.store.create_chat(owner.id)
        runtime.store.add_message(chat.id, owner.id, "user", "best tomato soup?")
        ref = await runtime.bridge.store_token("backend-token")

        request = _delivery(
            "generate-title",
            "wfr_title",
            {"chatId": chat.id, "userId": owner.id, "authTokenRef": ref},
        )
        result = await runtime.dispatcher.dispatch(runtime.title_job, request, TITLE_POLICY)

        assert result.body == {"saved": True, "title": "Soup Recipes"}
        assert runtime.store.get_chat(chat.id).title == "Soup Recipes"
        assert await runtime.bridge.resolve_token(ref) is None

        stored = await runtime.cache.get_workflow_steps("wfr_title")
        assert "backend-token" not in json.dumps(stored)

    async def test_title_callback_with_expired_reference(self):
        runtime = get_runtime()
        upstream = FakeUpstream()
        runtime.set_http_transport(upstream.transport)
        owner = runtime.store.create_user("ext-late")
        chat = runtime.store.create_chat(owner.id)

        request = _delivery(
            "generate-title",
            "wfr_late",
            {"chatId": chat.id, "userId": owner.id, "authTokenRef": "workflow:auth-token:expired"},
        )
        result = await runtime.dispatcher.dispatch(runtime.title_job, request, TITLE_POLICY)

        assert result.status_code == 200
        assert result.body == {"saved": False, "reason": "unauthorized"}
        assert upstream.llm_calls == 0
