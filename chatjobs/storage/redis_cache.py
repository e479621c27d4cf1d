from __future__ import annotations

import hashlib
import json
import math
import time
import uuid
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits, bridged auth tokens and workflow run state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding window log: one sorted-set member per accepted request, scored by ms
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local reset = window
  if oldest[2] then
    reset = tonumber(oldest[2]) + window - now
  end
  return {0, 0, reset}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local reset = tonumber(oldest[2]) + window - now
return {1, limit - count - 1, reset}
"""

    # Release a run lock only if this holder still owns it
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so user-controlled components cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Sliding-window rate limit.

        Returns ``(allowed, remaining, reset_seconds)`` where ``reset_seconds`` is
        the time until the oldest counted request leaves the window.
        """

        now_ms = int(time.time() * 1000)
        window_ms = int(window_seconds * 1000)
        allowed, remaining, reset_ms = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, window_ms, limit, f"{now_ms}-{uuid.uuid4().hex}"],
        )
        reset_seconds = max(0, math.ceil(int(reset_ms) / 1000))
        return (bool(int(allowed)), max(0, int(remaining)), reset_seconds)

    # ------------------------------------------------------------------
    # Bridged auth tokens
    # ------------------------------------------------------------------

    async def set_auth_token(self, ref: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(ref, value, ex=max(1, int(ttl_seconds)))

    async def get_auth_token(self, ref: str) -> Optional[str]:
        return await self.client.get(ref)

    async def pop_auth_token(self, ref: str) -> Optional[str]:
        """Atomically read and delete a bridged token."""
        return await self.client.getdel(ref)

    async def delete_auth_token(self, ref: str) -> None:
        await self.client.delete(ref)

    # ------------------------------------------------------------------
    # Durable workflow runs
    # ------------------------------------------------------------------

    @staticmethod
    def _run_key(run_id: str, part: str) -> str:
        return f"workflow:run:{run_id}:{part}"

    async def get_workflow_steps(self, run_id: str) -> Dict[str, Any]:
        raw = await self.client.hgetall(self._run_key(run_id, "steps"))
        steps: Dict[str, Any] = {}
        for name, encoded in (raw or {}).items():
            try:
                steps[name] = json.loads(encoded)
            except (json.JSONDecodeError, TypeError):
                # Corrupted entry; the step re-executes
                continue
        return steps

    async def set_workflow_step(
        self, run_id: str, step: str, record: dict, ttl_seconds: int
    ) -> None:
        key = self._run_key(run_id, "steps")
        pipe = self.client.pipeline()
        pipe.hset(key, step, json.dumps(record))
        pipe.expire(key, ttl_seconds)
        await pipe.execute()

    async def get_workflow_result(self, run_id: str) -> Optional[dict]:
        cached = await self.client.get(self._run_key(run_id, "result"))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_workflow_result(
        self, run_id: str, result: dict, ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._run_key(run_id, "result"), json.dumps(result), ex=ttl_seconds
        )

    async def acquire_run_lock(self, run_id: str, ttl_seconds: int) -> Optional[str]:
        """Claim a run with SET NX; returns the holder token or None if taken."""
        holder = uuid.uuid4().hex
        acquired = await self.client.set(
            self._run_key(run_id, "lock"), holder, ex=ttl_seconds, nx=True
        )
        return holder if acquired else None

    async def release_run_lock(self, run_id: str, holder: str) -> None:
        await self._release_lock(keys=[self._run_key(run_id, "lock")], args=[holder])

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
