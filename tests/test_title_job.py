"""Tests for chat title generation: sanitizing, reason codes and persistence."""

import json

import httpx
import pytest

from chatjobs.jobs.base import JobCredentials
from chatjobs.jobs.title import (
    TITLE_MAX_LENGTH,
    TitleJob,
    TitlePayload,
    build_title_messages,
    format_title_error,
    sanitize_title,
)
from chatjobs.service.crypto import TokenCipher
from chatjobs.service.errors import ValidationError
from chatjobs.service.token_bridge import AuthTokenBridge
from chatjobs.storage.errors import BackendAuthError
from chatjobs.storage.local_cache import MemoryCache
from chatjobs.storage.memory import MemoryStore
from chatjobs.workflow.context import InlineContext

LLM_URL = "http://llm.test/api/v1/chat/completions"
CIPHER = TokenCipher(b"k" * 32)


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class LLMStub:
    """Records LLM requests and answers with a fixed status and body."""

    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body if body is not None else _completion("Garden Planning Tips")
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


@pytest.fixture
def store():
    return MemoryStore(cipher=CIPHER)


@pytest.fixture
def owner(store):
    return store.create_user("ext-owner")


@pytest.fixture
def chat(store, owner):
    chat = store.create_chat(owner.id, title="New Chat")
    store.add_message(chat.id, owner.id, "user", "  How should I plan a vegetable garden?  ")
    return chat


def _job(store, *, platform_api_key="platform-key"):
    bridge = AuthTokenBridge(MemoryCache(), cipher=CIPHER)
    return TitleJob(store, bridge, platform_api_key=platform_api_key, api_url=LLM_URL)


def _payload(chat, owner, **extra):
    body = {"chatId": chat.id, "userId": owner.id, **extra}
    return TitlePayload.model_validate(body)


class TestSanitizeTitle:
    """LLM output cleanup before persistence."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ('"Hello World."', "Hello World"),
            ("'Quoted'", "Quoted"),
            ("Trip   Planning\n\nIdeas", "Trip Planning Ideas"),
            ("Why is the sky blue?!", "Why is the sky blue"),
            ("   ", ""),
            ("...", ""),
            (None, ""),
        ],
    )
    def test_sanitize_cases(self, raw, expected):
        assert sanitize_title(raw) == expected

    def test_truncates_to_max_length(self):
        title = sanitize_title("word " * 100)
        assert len(title) <= TITLE_MAX_LENGTH
        assert not title.endswith(" ")

    def test_mismatched_quotes_are_kept(self):
        assert sanitize_title('"Half quoted') == '"Half quoted'


class TestTitlePayload:
    def test_provider_aliases(self, chat, owner):
        assert _payload(chat, owner, provider="osschat").provider == "platform"
        assert _payload(chat, owner, provider="openrouter").provider == "personal"

    def test_manual_mode_forces(self, chat, owner):
        assert _payload(chat, owner, mode="manual").force is True
        assert _payload(chat, owner).force is False

    def test_seed_is_trimmed_and_capped(self, chat, owner):
        payload = _payload(chat, owner, seedText="  " + "x" * 400)
        assert payload.seed_text == "x" * 300

    def test_blank_seed_becomes_none(self, chat, owner):
        assert _payload(chat, owner, seedText="   ").seed_text is None

    def test_missing_chat_id_rejected(self, store):
        with pytest.raises(ValidationError):
            _job(store).parse_payload({"userId": "u"})

    def test_unknown_length_rejected(self, store, chat, owner):
        with pytest.raises(ValidationError):
            _job(store).parse_payload({"chatId": chat.id, "length": "huge"})

    @pytest.mark.parametrize(
        "extra",
        [{"length": []}, {"length": ["short"]}, {"length": {}}, {"mode": {}}, {"mode": ["auto"]}],
    )
    def test_non_string_choice_rejected(self, store, chat, extra):
        with pytest.raises(ValidationError) as exc_info:
            _job(store).parse_payload({"chatId": chat.id, **extra})
        assert exc_info.value.status_code == 400

    def test_build_messages_uses_length_style(self):
        messages = build_title_messages("seed", "short")
        assert "2-4 words" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": "seed"}


class TestTitleGeneration:
    """End-to-end job runs against the in-process store."""

    async def test_generates_and_saves_title(self, store, owner, chat):
        llm = LLMStub(body=_completion('"Garden Planning Tips."'))
        job = _job(store)

        outcome = await job.execute(
            InlineContext(transport=llm.transport),
            _payload(chat, owner),
            JobCredentials(token="backend-token"),
        )

        assert outcome.to_dict() == {"saved": True, "title": "Garden Planning Tips"}
        assert store.get_chat(chat.id).title == "Garden Planning Tips"
        sent = json.loads(llm.requests[0].content)
        assert sent["messages"][1]["content"] == "How should I plan a vegetable garden?"
        assert sent["max_tokens"] == 32
        assert llm.requests[0].headers["authorization"] == "Bearer platform-key"

    async def test_seed_text_skips_message_lookup(self, store, owner):
        empty_chat = store.create_chat(owner.id)
        llm = LLMStub()
        job = _job(store)

        ctx = InlineContext(transport=llm.transport)
        outcome = await job.execute(
            ctx, _payload(empty_chat, owner, seedText="Plan a trip"), JobCredentials(token="t")
        )

        assert outcome.saved is True
        assert "get-messages" not in [entry["step"] for entry in ctx.trace]

    async def test_empty_seed(self, store, owner):
        empty_chat = store.create_chat(owner.id)
        llm = LLMStub()

        outcome = await _job(store).execute(
            InlineContext(transport=llm.transport),
            _payload(empty_chat, owner),
            JobCredentials(token="t"),
        )

        assert outcome.to_dict() == {"saved": False, "reason": "empty_seed"}
        assert llm.requests == []

    async def test_missing_platform_key(self, store, owner, chat):
        outcome = await _job(store, platform_api_key=None).execute(
            InlineContext(transport=LLMStub().transport),
            _payload(chat, owner),
            JobCredentials(token="t"),
        )
        assert outcome.reason == "missing_openrouter_key"

    async def test_personal_provider_without_key(self, store, owner, chat):
        outcome = await _job(store).execute(
            InlineContext(transport=LLMStub().transport),
            _payload(chat, owner, provider="openrouter"),
            JobCredentials(token="t"),
        )
        assert outcome.reason == "missing_openrouter_key"

    async def test_personal_provider_uses_decrypted_key(self, store, owner, chat):
        store.set_api_key(owner.id, "sk-user-key")
        llm = LLMStub()

        outcome = await _job(store).execute(
            InlineContext(transport=llm.transport),
            _payload(chat, owner, provider="personal"),
            JobCredentials(token="t"),
        )

        assert outcome.saved is True
        assert llm.requests[0].headers["authorization"] == "Bearer sk-user-key"

    async def test_llm_error_status(self, store, owner, chat):
        outcome = await _job(store).execute(
            InlineContext(transport=LLMStub(status=402, body={"error": "credits"}).transport),
            _payload(chat, owner),
            JobCredentials(token="t"),
        )
        assert outcome.reason == "llm_status_402"
        assert store.get_chat(chat.id).title == "New Chat"

    async def test_llm_unreachable(self, store, owner, chat):
        def _fail(request):
            raise httpx.ConnectError("refused", request=request)

        outcome = await _job(store).execute(
            InlineContext(transport=httpx.MockTransport(_fail)),
            _payload(chat, owner),
            JobCredentials(token="t"),
        )
        assert outcome.reason == "generation_failed"

    async def test_missing_content_is_generation_failure(self, store, owner, chat):
        outcome = await _job(store).execute(
            InlineContext(transport=LLMStub(body={"choices": []}).transport),
            _payload(chat, owner),
            JobCredentials(token="t"),
        )
        assert outcome.reason == "generation_failed"

    async def test_blank_completion_is_empty_title(self, store, owner, chat):
        outcome = await _job(store).execute(
            InlineContext(transport=LLMStub(body=_completion(' "." ')).transport),
            _payload(chat, owner),
            JobCredentials(token="t"),
        )
        assert outcome.reason == "empty_title"

    async def test_unsupported_provider(self, store, owner, chat):
        outcome = await _job(store).execute(
            InlineContext(), _payload(chat, owner, provider="anthropic"), JobCredentials(token="t")
        )
        assert outcome.reason == "unsupported_provider"

    async def test_expired_token_reference_is_unauthorized(self, store, owner, chat):
        llm = LLMStub()
        outcome = await _job(store).execute(
            InlineContext(transport=llm.transport),
            _payload(chat, owner),
            JobCredentials(token_ref="workflow:auth-token:gone"),
        )
        assert outcome.to_dict() == {"saved": False, "reason": "unauthorized"}
        assert llm.requests == []

    async def test_bridged_token_is_resolved(self, store, owner, chat):
        job = _job(store)
        ref = await job.bridge.store_token("backend-token")

        outcome = await job.execute(
            InlineContext(transport=LLMStub().transport),
            _payload(chat, owner),
            JobCredentials(token_ref=ref),
        )
        assert outcome.saved is True

    async def test_backend_auth_failure_is_unauthorized(self, owner, chat):
        class RejectingStore(MemoryStore):
            async def get_first_user_message(self, chat_id, user_id, *, token=None):
                raise BackendAuthError("messages:getFirstUserMessage unauthorized", status=401)

        outcome = await _job(RejectingStore()).execute(
            InlineContext(), _payload(chat, owner), JobCredentials(token="t")
        )
        assert outcome.reason == "unauthorized"


class TestTitleOverwritePolicy:
    """Auto titles never replace a user-chosen title; manual titles always do."""

    async def test_auto_keeps_user_title(self, store, owner, chat):
        store.rename_chat(chat.id, "My Garden")

        outcome = await _job(store).execute(
            InlineContext(transport=LLMStub().transport),
            _payload(chat, owner, mode="auto"),
            JobCredentials(token="t"),
        )

        assert outcome.saved is True
        assert store.get_chat(chat.id).title == "My Garden"
        assert outcome.to_dict() == {
            "saved": True,
            "title": "Garden Planning Tips",
            "keptExisting": True,
        }

    async def test_manual_overwrites_user_title(self, store, owner, chat):
        store.rename_chat(chat.id, "My Garden")

        await _job(store).execute(
            InlineContext(transport=LLMStub().transport),
            _payload(chat, owner, mode="manual"),
            JobCredentials(token="t"),
        )

        updated = store.get_chat(chat.id)
        assert updated.title == "Garden Planning Tips"
        assert updated.title_set_by_user is True

    async def test_auto_replaces_generated_title(self, store, owner, chat):
        job = _job(store)
        await job.execute(
            InlineContext(transport=LLMStub(body=_completion("First Title")).transport),
            _payload(chat, owner),
            JobCredentials(token="t"),
        )
        await job.execute(
            InlineContext(transport=LLMStub(body=_completion("Second Title")).transport),
            _payload(chat, owner),
            JobCredentials(token="t"),
        )
        assert store.get_chat(chat.id).title == "Second Title"


class TestFormatTitleError:
    def test_known_reasons(self):
        assert "OpenRouter" in format_title_error("missing_openrouter_key")
        assert "credits" in format_title_error("llm_status_402")
        assert "503" in format_title_error("llm_status_503")

    def test_unknown_reason_falls_back(self):
        assert format_title_error("something_else") == format_title_error(None)
