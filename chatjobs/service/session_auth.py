from __future__ import annotations

from typing import Optional

import httpx

from chatjobs.logging import get_logger
from chatjobs.service.errors import ConfigurationError
from chatjobs.storage.models import SessionUser

logger = get_logger(__name__)

SESSION_TIMEOUT_SECONDS = 10.0


class SessionAuthClient:
    """Exchange a browser session cookie with the auth backend.

    The cookie is forwarded verbatim and never stored or logged.
    """

    def __init__(
        self,
        site_url: Optional[str],
        *,
        token_path: str = "/api/auth/convex/token",
        session_path: str = "/api/auth/session",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = SESSION_TIMEOUT_SECONDS,
    ):
        self.site_url = site_url.rstrip("/") if site_url else None
        self.token_path = token_path
        self.session_path = session_path
        self.transport = transport
        self.timeout = timeout

    def _require_site(self) -> str:
        if not self.site_url:
            raise ConfigurationError(
                "Session backend is not configured (missing BACKEND_SITE_URL)"
            )
        return self.site_url

    async def _get_json(self, path: str, cookie: str) -> Optional[dict]:
        site = self._require_site()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                response = await client.get(
                    f"{site}{path}",
                    headers={"Cookie": cookie, "Accept": "application/json"},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "session_backend_http_error",
                path=path,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "session_backend_error", path=path, error_type=type(exc).__name__
            )
            return None
        return data if isinstance(data, dict) else None

    async def exchange_cookie(self, cookie: Optional[str]) -> Optional[str]:
        """Return a backend access token for the session, or None."""
        if not cookie:
            return None
        data = await self._get_json(self.token_path, cookie)
        token = (data or {}).get("token")
        return token if isinstance(token, str) and token else None

    async def get_session_user(self, cookie: Optional[str]) -> Optional[SessionUser]:
        if not cookie:
            return None
        data = await self._get_json(self.session_path, cookie)
        user = (data or {}).get("user")
        if not isinstance(user, dict) or not user.get("id"):
            return None
        return SessionUser(
            id=str(user["id"]),
            email=user.get("email"),
            name=user.get("name"),
        )
