from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional
from urllib.parse import urlsplit

from chatjobs.logging import get_logger
from chatjobs.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    ServiceError,
)

logger = get_logger(__name__)

SIGNATURE_HEADER = "upstash-signature"
OPERATOR_TOKEN_HEADER = "x-workflow-cleanup-token"
SIGNATURE_ISSUER = "Upstash"
CLOCK_SKEW_LEEWAY_SECONDS = 5


class RequestKind(str, Enum):
    WORKFLOW_CALLBACK = "workflow_callback"
    OPERATOR = "operator"
    END_USER = "end_user"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Classification:
    kind: RequestKind
    status_code: int = 200
    reason: Optional[str] = None

    def raise_for_rejection(self) -> None:
        if self.kind != RequestKind.REJECTED:
            return
        reason = self.reason or "request rejected"
        if self.status_code == 500:
            raise ConfigurationError(reason)
        if self.status_code == 403:
            raise ForbiddenError(reason)
        if self.status_code == 401:
            raise AuthenticationError(reason)
        raise ServiceError(reason, status_code=self.status_code)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def body_digest(body: bytes) -> str:
    return _b64url_encode(hashlib.sha256(body).digest())


def sign_callback(
    body: bytes,
    url: str,
    signing_key: str,
    *,
    now: Optional[float] = None,
    ttl_seconds: int = 300,
) -> str:
    """Produce a callback signature the way the workflow queue signs deliveries."""
    issued = int(now if now is not None else time.time())
    header = {"alg": "HS256", "typ": "JWT"}
    claims = {
        "iss": SIGNATURE_ISSUER,
        "sub": url,
        "exp": issued + ttl_seconds,
        "nbf": issued,
        "iat": issued,
        "jti": f"jwt_{uuid.uuid4().hex}",
        "body": body_digest(body),
    }
    header_enc = _b64url_encode(json.dumps(header, separators=(",", ":")).encode())
    claims_enc = _b64url_encode(json.dumps(claims, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{claims_enc}"
    signature = hmac.new(
        signing_key.encode(), signing_input.encode(), hashlib.sha256
    ).digest()
    return f"{signing_input}.{_b64url_encode(signature)}"


class SignatureVerifier:
    """Classify inbound workflow requests by who is calling.

    A signature header marks a queue callback; an operator token marks an
    automation request; anything else must look like a same-origin browser
    request. No I/O happens here.
    """

    def __init__(
        self,
        *,
        current_signing_key: Optional[str],
        next_signing_key: Optional[str],
        operator_token: Optional[str] = None,
        allowed_origins: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = CLOCK_SKEW_LEEWAY_SECONDS,
    ):
        self.current_signing_key = current_signing_key
        self.next_signing_key = next_signing_key
        self.operator_token = operator_token
        self.allowed_origins = {o.rstrip("/") for o in allowed_origins if o}
        self._clock = clock
        self._leeway = leeway_seconds
        # Per-process key so digests of the operator token are never reusable
        self._compare_key = secrets.token_bytes(32)

    @property
    def signing_keys_configured(self) -> bool:
        return bool(self.current_signing_key and self.next_signing_key)

    def classify(
        self,
        *,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes,
        callback_url: Optional[str] = None,
    ) -> Classification:
        signature = headers.get(SIGNATURE_HEADER)
        if signature is not None:
            return self._classify_callback(signature, body, callback_url or url)

        if self.operator_token:
            presented = self._presented_operator_token(headers)
            if presented is not None and self._safe_compare(presented, self.operator_token):
                return Classification(RequestKind.OPERATOR)

        if not self.is_same_origin(method, url, headers):
            return Classification(RequestKind.REJECTED, 403, "cross-origin request rejected")
        return Classification(RequestKind.END_USER)

    def _classify_callback(self, signature: str, body: bytes, url: str) -> Classification:
        if not self.signing_keys_configured:
            missing = [
                name
                for name, value in (
                    ("QSTASH_CURRENT_SIGNING_KEY", self.current_signing_key),
                    ("QSTASH_NEXT_SIGNING_KEY", self.next_signing_key),
                )
                if not value
            ]
            logger.error("workflow_signing_keys_missing", missing=missing)
            return Classification(
                RequestKind.REJECTED,
                500,
                f"Workflow signing keys are not configured (missing {', '.join(missing)})",
            )
        for key in (self.current_signing_key, self.next_signing_key):
            if self._verify_signature(signature, key, body, url):
                return Classification(RequestKind.WORKFLOW_CALLBACK)
        logger.warning("workflow_signature_invalid", url=url)
        return Classification(RequestKind.REJECTED, 401, "invalid workflow signature")

    def _verify_signature(self, token: str, key: str, body: bytes, url: str) -> bool:
        try:
            header_b64, claims_b64, sig_b64 = token.split(".")
        except ValueError:
            return False
        try:
            header = json.loads(_b64url_decode(header_b64))
        except ValueError:
            return False
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return False

        signing_input = f"{header_b64}.{claims_b64}"
        expected = _b64url_encode(
            hmac.new(key.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected, sig_b64):
            return False
        try:
            claims: Any = json.loads(_b64url_decode(claims_b64))
        except ValueError:
            return False
        if not isinstance(claims, dict):
            return False
        if claims.get("iss") != SIGNATURE_ISSUER:
            return False
        if claims.get("sub") != url:
            logger.warning("workflow_signature_url_mismatch", expected=url)
            return False
        now = self._clock()
        try:
            exp = float(claims["exp"])
            nbf = float(claims.get("nbf", 0))
        except (KeyError, TypeError, ValueError):
            return False
        if exp <= now - self._leeway or nbf > now + self._leeway:
            return False
        claimed_body = str(claims.get("body", "")).rstrip("=")
        return hmac.compare_digest(claimed_body, body_digest(body))

    @staticmethod
    def _presented_operator_token(headers: Mapping[str, str]) -> Optional[str]:
        auth = headers.get("authorization") or ""
        if auth.lower().startswith("bearer "):
            token = auth[7:].strip()
            if token:
                return token
        custom = headers.get(OPERATOR_TOKEN_HEADER)
        return custom.strip() if custom else None

    def _safe_compare(self, presented: str, expected: str) -> bool:
        # Compare fixed-length digests so neither content nor length leaks
        left = hmac.new(self._compare_key, presented.encode(), hashlib.sha256).digest()
        right = hmac.new(self._compare_key, expected.encode(), hashlib.sha256).digest()
        return hmac.compare_digest(left, right)

    def is_same_origin(self, method: str, url: str, headers: Mapping[str, str]) -> bool:
        origin = headers.get("origin")
        if origin is None:
            # Browsers always send Origin on cross-site and same-site POSTs
            return method.upper() in {"GET", "HEAD"}
        origin = origin.strip().rstrip("/")
        if not origin or origin == "null":
            return False
        parts = urlsplit(url)
        request_origin = f"{parts.scheme}://{parts.netloc}"
        return origin == request_origin or origin in self.allowed_origins
