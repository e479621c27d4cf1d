from __future__ import annotations

from typing import Any, Dict, Optional


class BackendError(Exception):
    """Raised when a document-store call fails.

    ``retryable`` marks transient failures (transport errors, 429, 5xx) that a
    durable step may retry within its budget.
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        retryable: bool = False,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.retryable = retryable
        self.detail = detail or {}


class BackendAuthError(BackendError):
    """The backend rejected the bearer token (401/403)."""


__all__ = ["BackendError", "BackendAuthError"]
