"""Tests for bridged auth tokens and the AES-GCM token cipher."""

import base64
from unittest.mock import AsyncMock

import pytest

from chatjobs.service.crypto import DecryptionError, TokenCipher
from chatjobs.service.token_bridge import AUTH_TOKEN_PREFIX, AuthTokenBridge
from chatjobs.storage.local_cache import MemoryCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestTokenCipher:
    def test_round_trip(self):
        cipher = TokenCipher(b"k" * 32)
        sealed = cipher.encrypt("sk-or-secret")
        assert sealed.count(".") == 2
        assert "sk-or-secret" not in sealed
        assert cipher.decrypt(sealed) == "sk-or-secret"

    def test_wrong_key_fails(self):
        sealed = TokenCipher(b"k" * 32).encrypt("value")
        with pytest.raises(DecryptionError):
            TokenCipher(b"j" * 32).decrypt(sealed)

    @pytest.mark.parametrize("payload", ["", "a.b", "!!.??.**", "AAAA.AAAA.AAAA"])
    def test_malformed_payload_fails(self, payload):
        with pytest.raises(DecryptionError):
            TokenCipher(b"k" * 32).decrypt(payload)

    def test_from_base64(self):
        encoded = base64.b64encode(b"z" * 32).decode()
        assert TokenCipher.from_base64(encoded) is not None
        assert TokenCipher.from_base64(None) is None

    def test_short_key_rejected(self):
        with pytest.raises(ValueError):
            TokenCipher(b"short")


class TestAuthTokenBridge:
    async def test_store_and_resolve(self):
        bridge = AuthTokenBridge(MemoryCache(), cipher=TokenCipher(b"k" * 32))
        ref = await bridge.store_token("backend-token")

        assert ref.startswith(f"{AUTH_TOKEN_PREFIX}:")
        assert "backend-token" not in ref
        assert await bridge.resolve_token(ref) == "backend-token"
        # Resolution is repeatable until revoked
        assert await bridge.resolve_token(ref) == "backend-token"

    async def test_value_is_sealed_at_rest(self):
        cache = MemoryCache()
        bridge = AuthTokenBridge(cache, cipher=TokenCipher(b"k" * 32))
        ref = await bridge.store_token("backend-token")
        assert await cache.get_auth_token(ref) != "backend-token"

    async def test_consume_is_single_use(self):
        bridge = AuthTokenBridge(MemoryCache())
        ref = await bridge.store_token("backend-token")

        assert await bridge.consume_token(ref) == "backend-token"
        assert await bridge.consume_token(ref) is None

    async def test_revoke(self):
        bridge = AuthTokenBridge(MemoryCache())
        ref = await bridge.store_token("backend-token")
        await bridge.revoke_token(ref)
        assert await bridge.resolve_token(ref) is None

    async def test_expiry(self):
        clock = FakeClock()
        bridge = AuthTokenBridge(MemoryCache(clock=clock), ttl_seconds=300)
        ref = await bridge.store_token("backend-token")

        clock.now += 301
        assert await bridge.resolve_token(ref) is None

    async def test_non_reference_values_are_ignored(self):
        bridge = AuthTokenBridge(MemoryCache())
        assert await bridge.resolve_token("backend-token") is None
        assert await bridge.resolve_token(None) is None

    async def test_store_failure_returns_none(self):
        cache = AsyncMock()
        cache.set_auth_token.side_effect = ConnectionError("redis down")
        bridge = AuthTokenBridge(cache)
        assert await bridge.store_token("backend-token") is None

    async def test_revoke_failure_is_logged_not_raised(self):
        cache = AsyncMock()
        cache.delete_auth_token.side_effect = ConnectionError("redis down")
        bridge = AuthTokenBridge(cache)
        await bridge.revoke_token(f"{AUTH_TOKEN_PREFIX}:abc")
