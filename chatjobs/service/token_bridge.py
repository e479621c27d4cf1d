from __future__ import annotations

import uuid
from typing import Optional

from chatjobs.logging import get_logger
from chatjobs.service.crypto import DecryptionError, TokenCipher

logger = get_logger(__name__)

AUTH_TOKEN_PREFIX = "workflow:auth-token"
DEFAULT_AUTH_TOKEN_TTL_SECONDS = 300


class AuthTokenBridge:
    """Park a backend access token server-side behind an opaque reference.

    Queued workflow bodies carry only the reference; the callback resolves it
    back to the token. References expire with the cache TTL and are revoked
    once the run reaches a terminal outcome.
    """

    def __init__(
        self,
        cache,
        *,
        cipher: Optional[TokenCipher] = None,
        ttl_seconds: int = DEFAULT_AUTH_TOKEN_TTL_SECONDS,
    ):
        self.cache = cache
        self.cipher = cipher
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def is_reference(ref: object) -> bool:
        return isinstance(ref, str) and ref.startswith(f"{AUTH_TOKEN_PREFIX}:")

    async def store_token(self, token: str) -> Optional[str]:
        """Store ``token`` and return its reference, or None if the store is unavailable."""
        if not token or self.cache is None:
            return None
        ref = f"{AUTH_TOKEN_PREFIX}:{uuid.uuid4()}"
        value = self.cipher.encrypt(token) if self.cipher else token
        try:
            await self.cache.set_auth_token(ref, value, self.ttl_seconds)
        except Exception as exc:
            logger.error(
                "auth_token_store_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return None
        return ref

    async def resolve_token(self, ref: Optional[str]) -> Optional[str]:
        """Return the token for ``ref``; None when expired, revoked, or unknown."""
        if not self.is_reference(ref) or self.cache is None:
            return None
        stored = await self.cache.get_auth_token(ref)
        return self._unseal(stored)

    async def consume_token(self, ref: Optional[str]) -> Optional[str]:
        """Single-use read: the reference is deleted atomically with the read."""
        if not self.is_reference(ref) or self.cache is None:
            return None
        stored = await self.cache.pop_auth_token(ref)
        return self._unseal(stored)

    async def revoke_token(self, ref: Optional[str]) -> None:
        if not self.is_reference(ref) or self.cache is None:
            return
        try:
            await self.cache.delete_auth_token(ref)
        except Exception as exc:
            # The TTL still bounds the token's lifetime
            logger.warning("auth_token_revoke_failed", error=str(exc))

    def _unseal(self, stored: Optional[str]) -> Optional[str]:
        if not stored:
            return None
        if not self.cipher:
            return stored
        try:
            return self.cipher.decrypt(stored)
        except DecryptionError:
            logger.warning("auth_token_unseal_failed")
            return None
