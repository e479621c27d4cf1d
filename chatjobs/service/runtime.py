from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

import httpx

from chatjobs.config import get_settings, reset_settings_cache
from chatjobs.jobs.cleanup import CleanupJob
from chatjobs.jobs.title import TitleJob
from chatjobs.logging import get_logger
from chatjobs.service.crypto import TokenCipher
from chatjobs.service.dispatcher import ExecutionDispatcher
from chatjobs.service.session_auth import SessionAuthClient
from chatjobs.service.signatures import SignatureVerifier
from chatjobs.service.token_bridge import AuthTokenBridge
from chatjobs.storage.backend import BackendStore
from chatjobs.storage.local_cache import MemoryCache
from chatjobs.storage.memory import MemoryStore
from chatjobs.storage.redis_cache import RedisCache
from chatjobs.workflow.queue import WorkflowQueue

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the service graph for the FastAPI app.

    Collaborators are built once here and passed down explicitly, so tests
    can swap any of them (or the outbound HTTP transport) on a fresh runtime.
    """

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        self.cipher = TokenCipher.from_base64(settings.openrouter_encryption_key)

        if settings.use_memory_store:
            self.store = MemoryStore(cipher=self.cipher)
        else:
            if not settings.backend_api_url:
                raise RuntimeError(
                    "BACKEND_API_URL is required unless USE_MEMORY_STORE=true"
                )
            self.store = BackendStore(
                settings.backend_api_url,
                workflow_token=settings.workflow_cleanup_token,
                cipher=self.cipher,
            )
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if settings.use_memory_store else "backend",
        )

        self.cache = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits, bridged auth tokens, and workflow run state; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits, token references, "
                    "and workflow runs are in-memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.bridge = AuthTokenBridge(
            self.cache,
            cipher=self.cipher,
            ttl_seconds=settings.workflow_auth_token_ttl_seconds,
        )
        self.session_auth = SessionAuthClient(
            settings.backend_site_url,
            token_path=settings.auth_token_path,
            session_path=settings.auth_session_path,
        )
        self.queue = WorkflowQueue(
            settings.qstash_url,
            settings.qstash_token,
            retries=settings.workflow_delivery_retries,
        )
        self.verifier = SignatureVerifier(
            current_signing_key=settings.qstash_current_signing_key,
            next_signing_key=settings.qstash_next_signing_key,
            operator_token=settings.workflow_cleanup_token,
            allowed_origins=[settings.app_origin] if settings.app_origin else [],
        )
        self.cleanup_job = CleanupJob(
            self.store,
            max_batches=settings.cleanup_max_batches,
            batch_delay_seconds=settings.cleanup_batch_delay_seconds,
        )
        self.title_job = TitleJob(
            self.store,
            self.bridge,
            platform_api_key=settings.openrouter_api_key,
            api_url=settings.llm_api_url,
            model_id=settings.title_model_id,
            referer=settings.llm_referer,
            app_title=settings.llm_app_title,
            timeout_seconds=settings.title_llm_timeout_seconds,
            retries=settings.title_llm_retries,
        )

        async def _rate_limit(key: str, limit: int, window_seconds: int):
            return await check_rate_limit(
                self, key, limit, window_seconds, return_remaining=True
            )

        self.dispatcher = ExecutionDispatcher(
            verifier=self.verifier,
            queue=self.queue,
            bridge=self.bridge,
            session_auth=self.session_auth,
            store=self.store,
            cache=self.cache,
            rate_limit=_rate_limit,
            trust_proxy=settings.trust_proxy,
            user_rate_limit=settings.title_rate_limit_per_minute,
            ip_rate_limit=settings.title_ip_rate_limit_per_minute,
            rate_limit_window_seconds=settings.rate_limit_window_seconds,
            public_base_url=settings.workflow_public_base_url,
            state_ttl_seconds=settings.workflow_state_ttl_seconds,
            run_lock_seconds=settings.workflow_run_lock_seconds,
            step_max_retries=settings.workflow_step_max_retries,
            step_backoff_ms=settings.workflow_step_backoff_ms,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            queue_configured=self.queue.configured,
            signing_keys_configured=self.verifier.signing_keys_configured,
            trust_proxy=settings.trust_proxy.value,
            encryption_configured=self.cipher is not None,
        )

    def set_http_transport(self, transport: Optional[httpx.AsyncBaseTransport]) -> None:
        """Route every outbound HTTP client through ``transport`` (tests, proxies)."""
        self.session_auth.transport = transport
        self.queue.transport = transport
        self.dispatcher.transport = transport
        if isinstance(self.store, BackendStore):
            self.store.transport = transport

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Sliding-window rate limit against the runtime cache.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return (allowed, remaining, reset_seconds)

    Backing-store errors propagate so callers fail closed.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    allowed, remaining, reset_seconds = await runtime.cache.check_rate_limit(
        key, limit, window_seconds
    )
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
