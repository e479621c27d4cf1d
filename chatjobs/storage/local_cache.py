from __future__ import annotations

import copy
import math
import threading
import time
import uuid
from collections import deque
from typing import Any, Deque, Dict, Optional, Tuple


class MemoryCache:
    """In-process stand-in for :class:`RedisCache`.

    Only used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV; state is lost on
    restart and is not shared between workers.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._rate_windows: Dict[str, Deque[float]] = {}
        self._values: Dict[str, Tuple[Any, float]] = {}

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    def _get(self, key: str) -> Any:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._values[key] = (value, self._clock() + max(1, ttl_seconds))

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        now = self._clock()
        with self._lock:
            window = self._rate_windows.setdefault(key, deque())
            while window and window[0] <= now - window_seconds:
                window.popleft()
            if len(window) >= limit:
                reset = window[0] + window_seconds - now
                return (False, 0, max(0, math.ceil(reset)))
            window.append(now)
            reset = window[0] + window_seconds - now
            return (True, limit - len(window), max(0, math.ceil(reset)))

    async def set_auth_token(self, ref: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(ref, value, ttl_seconds)

    async def get_auth_token(self, ref: str) -> Optional[str]:
        with self._lock:
            return self._get(ref)

    async def pop_auth_token(self, ref: str) -> Optional[str]:
        with self._lock:
            value = self._get(ref)
            self._values.pop(ref, None)
            return value

    async def delete_auth_token(self, ref: str) -> None:
        with self._lock:
            self._values.pop(ref, None)

    async def get_workflow_steps(self, run_id: str) -> Dict[str, Any]:
        with self._lock:
            steps = self._get(f"workflow:run:{run_id}:steps") or {}
            return copy.deepcopy(steps)

    async def set_workflow_step(
        self, run_id: str, step: str, record: dict, ttl_seconds: int
    ) -> None:
        key = f"workflow:run:{run_id}:steps"
        with self._lock:
            steps = dict(self._get(key) or {})
            steps[step] = copy.deepcopy(record)
            self._set(key, steps, ttl_seconds)

    async def get_workflow_result(self, run_id: str) -> Optional[dict]:
        with self._lock:
            return copy.deepcopy(self._get(f"workflow:run:{run_id}:result"))

    async def set_workflow_result(
        self, run_id: str, result: dict, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(f"workflow:run:{run_id}:result", copy.deepcopy(result), ttl_seconds)

    async def acquire_run_lock(self, run_id: str, ttl_seconds: int) -> Optional[str]:
        key = f"workflow:run:{run_id}:lock"
        with self._lock:
            if self._get(key) is not None:
                return None
            holder = uuid.uuid4().hex
            self._set(key, holder, ttl_seconds)
            return holder

    async def release_run_lock(self, run_id: str, holder: str) -> None:
        key = f"workflow:run:{run_id}:lock"
        with self._lock:
            if self._get(key) == holder:
                self._values.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._rate_windows.clear()
