from __future__ import annotations

import base64
import binascii
import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class TrustProxyMode(str, Enum):
    """Which forwarded headers may be trusted to carry the client IP.

    - UNSET: no proxy is trusted; client identity cannot be resolved
    - CLOUDFLARE: ``cf-connecting-ip`` set by the Cloudflare edge
    - VERCEL: ``x-vercel-forwarded-for`` set by the Vercel edge
    - GENERIC: ``x-real-ip``/``true-client-ip`` and, last, ``x-forwarded-for``.
      Only safe when the reverse proxy overwrites these headers.
    """

    UNSET = "unset"
    CLOUDFLARE = "cloudflare"
    VERCEL = "vercel"
    GENERIC = "generic-trust-forwarded"


_TRUST_PROXY_ALIASES = {
    "": TrustProxyMode.UNSET,
    "0": TrustProxyMode.UNSET,
    "false": TrustProxyMode.UNSET,
    "none": TrustProxyMode.UNSET,
    "1": TrustProxyMode.GENERIC,
    "true": TrustProxyMode.GENERIC,
    "generic": TrustProxyMode.GENERIC,
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow job service."""

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables the in-process cache fallback.",
    )
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Use the in-process document store instead of the HTTP backend",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")

    # Document store backend and session exchange
    backend_site_url: str | None = env_field(None, "BACKEND_SITE_URL")
    backend_api_url: str | None = env_field(
        None,
        "BACKEND_API_URL",
        description="Document store HTTP API (query/mutation/action endpoints)",
    )
    auth_token_path: str = env_field("/api/auth/convex/token", "AUTH_TOKEN_PATH")
    auth_session_path: str = env_field("/api/auth/session", "AUTH_SESSION_PATH")
    app_origin: str | None = env_field(
        None, "APP_ORIGIN", description="Public origin accepted for browser requests"
    )

    # Operator and workflow engine credentials
    workflow_cleanup_token: str | None = env_field(None, "WORKFLOW_CLEANUP_TOKEN")
    qstash_url: str = env_field("https://qstash.upstash.io", "QSTASH_URL")
    qstash_token: str | None = env_field(None, "QSTASH_TOKEN")
    qstash_current_signing_key: str | None = env_field(
        None, "QSTASH_CURRENT_SIGNING_KEY"
    )
    qstash_next_signing_key: str | None = env_field(None, "QSTASH_NEXT_SIGNING_KEY")
    workflow_public_base_url: str | None = env_field(
        None,
        "WORKFLOW_PUBLIC_BASE_URL",
        description="Base URL the queue calls back into; defaults to the request's base URL",
    )
    workflow_delivery_retries: int = env_field(3, "WORKFLOW_DELIVERY_RETRIES")

    # Title generation
    openrouter_api_key: str | None = env_field(None, "OPENROUTER_API_KEY")
    openrouter_encryption_key: str | None = env_field(
        None,
        "OPENROUTER_ENCRYPTION_KEY",
        description="Base64 encoded 32 byte AES-GCM key for stored API keys and bridged tokens",
    )
    llm_api_url: str = env_field(
        "https://openrouter.ai/api/v1/chat/completions", "LLM_API_URL"
    )
    title_model_id: str = env_field("google/gemini-2.5-flash-lite", "TITLE_MODEL_ID")
    llm_referer: str = env_field("http://localhost:3000", "LLM_REFERER")
    llm_app_title: str = env_field("OSSChat", "LLM_APP_TITLE")
    title_llm_timeout_seconds: float = env_field(30.0, "TITLE_LLM_TIMEOUT_SECONDS")
    title_llm_retries: int = env_field(2, "TITLE_LLM_RETRIES")

    # Client identity and rate limits
    trust_proxy: TrustProxyMode = env_field(TrustProxyMode.UNSET, "TRUST_PROXY")
    title_rate_limit_per_minute: int = env_field(20, "TITLE_RATE_LIMIT_PER_MINUTE")
    title_ip_rate_limit_per_minute: int = env_field(
        60, "TITLE_IP_RATE_LIMIT_PER_MINUTE"
    )
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")

    # Cleanup job
    cleanup_max_batches: int = env_field(
        1000,
        "CLEANUP_MAX_BATCHES",
        description="Safety ceiling on delete batches per cleanup run",
    )
    cleanup_batch_delay_seconds: float = env_field(
        1.0, "CLEANUP_BATCH_DELAY_SECONDS"
    )

    # Durable execution
    workflow_step_max_retries: int = env_field(2, "WORKFLOW_STEP_MAX_RETRIES")
    workflow_step_backoff_ms: int = env_field(1000, "WORKFLOW_STEP_BACKOFF_MS")
    workflow_state_ttl_seconds: int = env_field(
        24 * 60 * 60, "WORKFLOW_STATE_TTL_SECONDS"
    )
    workflow_run_lock_seconds: int = env_field(120, "WORKFLOW_RUN_LOCK_SECONDS")
    workflow_auth_token_ttl_seconds: int = env_field(
        300, "WORKFLOW_AUTH_TOKEN_TTL_SECONDS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("trust_proxy", mode="before")
    @classmethod
    def _validate_trust_proxy(cls, value: Any) -> TrustProxyMode:
        if value is None:
            return TrustProxyMode.UNSET
        if isinstance(value, TrustProxyMode):
            return value
        normalized = str(value).strip().lower()
        if normalized in _TRUST_PROXY_ALIASES:
            return _TRUST_PROXY_ALIASES[normalized]
        return TrustProxyMode(normalized)

    @field_validator(
        "redis_url",
        "backend_site_url",
        "backend_api_url",
        "app_origin",
        "workflow_cleanup_token",
        "qstash_token",
        "qstash_current_signing_key",
        "qstash_next_signing_key",
        "workflow_public_base_url",
        "openrouter_api_key",
        "openrouter_encryption_key",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("openrouter_encryption_key")
    @classmethod
    def _validate_encryption_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("OPENROUTER_ENCRYPTION_KEY must be base64") from exc
        if len(raw) != 32:
            raise ValueError("OPENROUTER_ENCRYPTION_KEY must decode to 32 bytes")
        return value

    @field_validator("cleanup_max_batches", "rate_limit_window_seconds")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def signing_keys_configured(self) -> bool:
        return bool(self.qstash_current_signing_key and self.qstash_next_signing_key)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
