from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatjobs.jobs.base import JobCredentials, WorkflowJob, parse_model
from chatjobs.logging import get_logger
from chatjobs.storage.errors import BackendAuthError
from chatjobs.workflow.context import StepContext

logger = get_logger(__name__)

TITLE_MAX_LENGTH = 200
SEED_MAX_LENGTH = 300
TITLE_TEMPERATURE = 0.2
TITLE_MAX_TOKENS = 32
TITLE_LLM_TIMEOUT_SECONDS = 30.0
TITLE_LLM_RETRIES = 2

TITLE_STYLE_PROMPTS = {
    "short": "Use 2-4 words.",
    "standard": "Use 4-6 words.",
    "long": "Use 7-10 words.",
}

_PROVIDER_ALIASES = {"osschat": "platform", "openrouter": "personal"}
_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_PUNCT_RE = re.compile(r"[.?!]+$")


class ReasonCode(str, Enum):
    EMPTY_SEED = "empty_seed"
    MISSING_API_KEY = "missing_openrouter_key"
    GENERATION_FAILED = "generation_failed"
    EMPTY_TITLE = "empty_title"
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    UNAUTHORIZED = "unauthorized"


def llm_status_reason(status: int) -> str:
    return f"llm_status_{status}"


_REASON_MESSAGES = {
    ReasonCode.EMPTY_SEED.value: "Send a message first so there is something to title.",
    ReasonCode.MISSING_API_KEY.value: "Connect your OpenRouter API key to generate titles.",
    ReasonCode.GENERATION_FAILED.value: "Title generation failed. Please try again.",
    ReasonCode.EMPTY_TITLE.value: "The model returned an empty title. Please try again.",
    ReasonCode.UNSUPPORTED_PROVIDER.value: "This provider cannot generate titles.",
    ReasonCode.UNAUTHORIZED.value: "Your session expired. Sign in again to generate titles.",
}


def format_title_error(reason: Optional[str]) -> str:
    """Map a reason code to a message the UI can show as-is."""
    if not reason:
        return _REASON_MESSAGES[ReasonCode.GENERATION_FAILED.value]
    if reason in _REASON_MESSAGES:
        return _REASON_MESSAGES[reason]
    if reason.startswith("llm_status_"):
        status = reason[len("llm_status_"):]
        if status == "401":
            return "The title provider rejected the API key. Check your key and try again."
        if status == "402":
            return "The title provider reports insufficient credits."
        if status == "429":
            return "The title provider is rate limiting requests. Try again shortly."
        return f"The title provider returned an error ({status}). Please try again."
    return _REASON_MESSAGES[ReasonCode.GENERATION_FAILED.value]


def normalize_seed(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:SEED_MAX_LENGTH].strip()


def sanitize_title(raw: Any) -> str:
    """Clean an LLM completion into a storable title (possibly empty)."""
    if not isinstance(raw, str):
        return ""
    title = raw.strip()
    if len(title) >= 2 and title[0] == title[-1] and title[0] in {'"', "'"}:
        title = title[1:-1]
    title = _WHITESPACE_RE.sub(" ", title)
    title = _TRAILING_PUNCT_RE.sub("", title).strip()
    return title[:TITLE_MAX_LENGTH].strip()


def build_title_messages(seed: str, length: str) -> list[dict]:
    style = TITLE_STYLE_PROMPTS.get(length, TITLE_STYLE_PROMPTS["standard"])
    system = "\n".join(
        [
            "Create a specific, useful chat title.",
            style,
            "Return only the title in Title Case; no quotes, no trailing punctuation.",
            "Focus on the core topic or task; avoid filler words like and, with, about.",
        ]
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": seed},
    ]


class TitlePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    chat_id: str = Field(..., alias="chatId", min_length=1, max_length=200)
    user_id: str = Field("", alias="userId", max_length=200)
    seed_text: Optional[str] = Field(None, alias="seedText")
    length: str = "standard"
    provider: str = "platform"
    mode: str = "auto"
    auth_token_ref: Optional[str] = Field(None, alias="authTokenRef")

    @field_validator("chat_id", "user_id", mode="before")
    @classmethod
    def _ids(cls, value: Any) -> Any:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("must be a string")
        return value.strip()

    @field_validator("seed_text", mode="before")
    @classmethod
    def _seed(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("seedText must be a string")
        return normalize_seed(value) or None

    @field_validator("length", mode="before")
    @classmethod
    def _length(cls, value: Any) -> str:
        if value is None:
            return "standard"
        if not isinstance(value, str) or value not in TITLE_STYLE_PROMPTS:
            raise ValueError("length must be one of short, standard, long")
        return value

    @field_validator("provider", mode="before")
    @classmethod
    def _provider(cls, value: Any) -> str:
        if value is None:
            return "platform"
        if not isinstance(value, str):
            raise ValueError("provider must be a string")
        return _PROVIDER_ALIASES.get(value, value)

    @field_validator("mode", mode="before")
    @classmethod
    def _mode(cls, value: Any) -> str:
        if value is None:
            return "auto"
        if not isinstance(value, str) or value not in {"auto", "manual"}:
            raise ValueError("mode must be auto or manual")
        return value

    @property
    def force(self) -> bool:
        return self.mode == "manual"


@dataclass
class TitleOutcome:
    saved: bool
    title: Optional[str] = None
    reason: Optional[str] = None
    kept_existing: bool = False

    def to_dict(self) -> dict:
        data: dict = {"saved": self.saved}
        if self.title:
            data["title"] = self.title
        if self.kept_existing:
            data["keptExisting"] = True
        if self.reason:
            data["reason"] = self.reason
        return data

    @classmethod
    def failed(cls, reason: str) -> "TitleOutcome":
        return cls(saved=False, reason=reason)


class TitleJob(WorkflowJob[TitlePayload, TitleOutcome]):
    """Generate and persist a chat title from the first user message."""

    name = "generate-title"
    requires_user_token = True

    def __init__(
        self,
        store,
        bridge,
        *,
        platform_api_key: Optional[str] = None,
        api_url: str = "https://openrouter.ai/api/v1/chat/completions",
        model_id: str = "google/gemini-2.5-flash-lite",
        referer: str = "http://localhost:3000",
        app_title: str = "OSSChat",
        timeout_seconds: float = TITLE_LLM_TIMEOUT_SECONDS,
        retries: int = TITLE_LLM_RETRIES,
    ):
        self.store = store
        self.bridge = bridge
        self.platform_api_key = platform_api_key
        self.api_url = api_url
        self.model_id = model_id
        self.referer = referer
        self.app_title = app_title
        self.timeout_seconds = timeout_seconds
        self.retries = retries

    def parse_payload(self, raw: Any) -> TitlePayload:
        return parse_model(TitlePayload, raw)

    def serialize(self, outcome: TitleOutcome) -> dict:
        return outcome.to_dict()

    async def _resolve_token(self, credentials: JobCredentials) -> Optional[str]:
        if credentials.token:
            return credentials.token
        return await self.bridge.resolve_token(credentials.token_ref)

    async def _resolve_api_key(
        self, ctx: StepContext, payload: TitlePayload, token: str
    ) -> Optional[str]:
        if payload.provider == "platform":
            return self.platform_api_key

        async def _has_key() -> bool:
            return await self.store.has_api_key(payload.user_id, token=token)

        # Only the boolean is checkpointed; the key itself is fetched per invocation
        if not await ctx.run("resolve-api-key", _has_key):
            return None
        return await self.store.get_or_decrypt_api_key(payload.user_id, token=token)

    async def execute(
        self, ctx: StepContext, payload: TitlePayload, credentials: JobCredentials
    ) -> TitleOutcome:
        try:
            return await self._execute(ctx, payload, credentials)
        except BackendAuthError:
            logger.warning("title_backend_unauthorized", run_id=ctx.run_id, chat_id=payload.chat_id)
            return TitleOutcome.failed(ReasonCode.UNAUTHORIZED.value)

    async def _execute(
        self, ctx: StepContext, payload: TitlePayload, credentials: JobCredentials
    ) -> TitleOutcome:
        if payload.provider not in {"platform", "personal"}:
            return TitleOutcome.failed(ReasonCode.UNSUPPORTED_PROVIDER.value)

        token = await self._resolve_token(credentials)
        if not token or not payload.user_id:
            logger.warning("title_auth_token_unresolved", run_id=ctx.run_id, chat_id=payload.chat_id)
            return TitleOutcome.failed(ReasonCode.UNAUTHORIZED.value)

        seed = payload.seed_text or ""
        if not seed:
            async def _first_message() -> Optional[str]:
                return await self.store.get_first_user_message(
                    payload.chat_id, payload.user_id, token=token
                )

            seed = normalize_seed(await ctx.run("get-messages", _first_message))
        if not seed:
            return TitleOutcome.failed(ReasonCode.EMPTY_SEED.value)

        api_key = await self._resolve_api_key(ctx, payload, token)
        if not api_key:
            return TitleOutcome.failed(ReasonCode.MISSING_API_KEY.value)

        result = await ctx.call(
            "call-llm",
            url=self.api_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "HTTP-Referer": self.referer,
                "X-Title": self.app_title,
            },
            body={
                "model": self.model_id,
                "messages": build_title_messages(seed, payload.length),
                "temperature": TITLE_TEMPERATURE,
                "max_tokens": TITLE_MAX_TOKENS,
            },
            timeout=self.timeout_seconds,
            retries=self.retries,
        )
        if result.status is None:
            logger.warning("title_llm_unreachable", run_id=ctx.run_id, error=result.error)
            return TitleOutcome.failed(ReasonCode.GENERATION_FAILED.value)
        if not result.ok:
            logger.warning("title_llm_status", run_id=ctx.run_id, http_status=result.status)
            return TitleOutcome.failed(llm_status_reason(result.status))

        title = sanitize_title(_completion_text(result.body))
        if not title:
            if _completion_text(result.body) is None:
                return TitleOutcome.failed(ReasonCode.GENERATION_FAILED.value)
            return TitleOutcome.failed(ReasonCode.EMPTY_TITLE.value)

        async def _save() -> bool:
            return await self.store.set_title(
                payload.chat_id, payload.user_id, title, force=payload.force, token=token
            )

        updated = await ctx.run("save-title", _save)
        logger.info(
            "title_saved",
            run_id=ctx.run_id,
            chat_id=payload.chat_id,
            forced=payload.force,
            updated=bool(updated),
        )
        return TitleOutcome(saved=True, title=title, kept_existing=not updated)


def _completion_text(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else None
