from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from chatjobs.logging import get_logger
from chatjobs.service.crypto import DecryptionError, TokenCipher
from chatjobs.storage.errors import BackendAuthError, BackendError
from chatjobs.storage.models import BatchResult, SessionUser

logger = get_logger(__name__)

BACKEND_TIMEOUT_SECONDS = 15.0
_RETRYABLE_STATUSES = {408, 425, 429, 500, 502, 503, 504}


class BackendStore:
    """Document-store collaborator reached over its HTTP function API.

    Each operation is a named query, mutation, or action posted as
    ``{"path": ..., "args": ..., "format": "json"}``; user-scoped calls carry
    the caller's bearer token.
    """

    def __init__(
        self,
        api_url: str,
        *,
        workflow_token: Optional[str] = None,
        cipher: Optional[TokenCipher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = BACKEND_TIMEOUT_SECONDS,
    ):
        self.api_url = api_url.rstrip("/")
        self.workflow_token = workflow_token
        self.cipher = cipher
        self.transport = transport
        self.timeout = timeout

    async def _invoke(
        self, kind: str, path: str, args: Dict[str, Any], *, token: Optional[str] = None
    ) -> Any:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{self.api_url}/api/{kind}",
                    headers=headers,
                    json={"path": path, "args": args, "format": "json"},
                )
        except httpx.HTTPError as exc:
            logger.warning("backend_transport_error", path=path, error_type=type(exc).__name__)
            raise BackendError(f"{path} unreachable", retryable=True) from exc

        if response.status_code in {401, 403}:
            raise BackendAuthError(f"{path} unauthorized", status=response.status_code)
        if response.status_code >= 400:
            logger.warning("backend_http_error", path=path, status_code=response.status_code)
            raise BackendError(
                f"{path} failed with status {response.status_code}",
                status=response.status_code,
                retryable=response.status_code in _RETRYABLE_STATUSES,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError(f"{path} returned invalid JSON", status=response.status_code) from exc

        if isinstance(data, dict) and data.get("status") == "error":
            message = str(data.get("errorMessage") or "backend function failed")
            if "unauthorized" in message.lower():
                raise BackendAuthError(f"{path} unauthorized", status=response.status_code)
            raise BackendError(f"{path}: {message}", status=response.status_code)
        if isinstance(data, dict) and "value" in data:
            return data["value"]
        return data

    async def resolve_user(
        self, session_user: SessionUser, *, token: str | None = None
    ) -> Optional[str]:
        existing = await self._invoke(
            "query", "users:getByExternalId", {"externalId": session_user.id}, token=token
        )
        if isinstance(existing, dict) and existing.get("_id"):
            return str(existing["_id"])
        args = {"externalId": session_user.id}
        if session_user.email:
            args["email"] = session_user.email
        if session_user.name:
            args["name"] = session_user.name
        created = await self._invoke("mutation", "users:ensure", args, token=token)
        if isinstance(created, dict) and created.get("userId"):
            return str(created["userId"])
        return None

    async def delete_stale_batch(
        self,
        retention_days: int,
        batch_size: int,
        dry_run: bool,
        *,
        token: str | None = None,
    ) -> BatchResult:
        if not self.workflow_token:
            raise BackendError("cleanup requires WORKFLOW_CLEANUP_TOKEN")
        value = await self._invoke(
            "action",
            "cleanupAction:runCleanupBatchForWorkflow",
            {
                "workflowToken": self.workflow_token,
                "retentionDays": retention_days,
                "batchSize": batch_size,
                "dryRun": dry_run,
            },
        )
        if not isinstance(value, dict):
            raise BackendError("cleanup batch returned an unexpected body")
        return BatchResult.from_dict(value)

    async def get_first_user_message(
        self, chat_id: str, user_id: str, *, token: str | None = None
    ) -> Optional[str]:
        value = await self._invoke(
            "query",
            "messages:getFirstUserMessage",
            {"chatId": chat_id, "userId": user_id},
            token=token,
        )
        return value if isinstance(value, str) else None

    async def has_api_key(self, user_id: str, *, token: str | None = None) -> bool:
        value = await self._invoke(
            "query", "users:hasOpenRouterKey", {"userId": user_id}, token=token
        )
        return bool(value)

    async def get_or_decrypt_api_key(
        self, user_id: str, *, token: str | None = None
    ) -> Optional[str]:
        encrypted = await self._invoke(
            "query", "users:getOpenRouterKey", {"userId": user_id}, token=token
        )
        if not isinstance(encrypted, str) or not encrypted:
            return None
        if not self.cipher:
            logger.error("api_key_cipher_missing", user_id=user_id)
            return None
        try:
            return self.cipher.decrypt(encrypted)
        except DecryptionError:
            logger.warning("api_key_decrypt_failed", user_id=user_id)
            return None

    async def set_title(
        self,
        chat_id: str,
        user_id: str,
        title: str,
        *,
        force: bool = False,
        token: str | None = None,
    ) -> bool:
        value = await self._invoke(
            "mutation",
            "chats:setGeneratedTitle",
            {"chatId": chat_id, "userId": user_id, "title": title, "force": force},
            token=token,
        )
        # The mutation returns null when it writes; an explicit false means it kept a user title
        return value is not False
