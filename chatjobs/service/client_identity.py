from __future__ import annotations

from ipaddress import ip_address
from typing import Mapping, Optional

from chatjobs.config import TrustProxyMode


def _valid_ip(raw: Optional[str]) -> Optional[str]:
    """Return the canonical form of ``raw`` if it is a literal IPv4/IPv6 address."""
    if not raw:
        return None
    candidate = raw.strip()
    if not candidate:
        return None
    try:
        return str(ip_address(candidate))
    except ValueError:
        return None


def _first_entry(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    return raw.split(",")[0].strip() or None


def resolve_client_ip(
    headers: Mapping[str, str], mode: TrustProxyMode
) -> Optional[str]:
    """Resolve the client IP from headers trusted under ``mode``.

    Returns None when the mode is unset or the expected header is missing or
    malformed; callers must reject the request rather than guess.

    Under ``generic-trust-forwarded`` the final fallback is the first entry of
    ``x-forwarded-for``. That header is client-controlled unless the reverse
    proxy in front of this service overwrites it, so only enable the mode when
    that holds.
    """
    if mode == TrustProxyMode.CLOUDFLARE:
        return _valid_ip(headers.get("cf-connecting-ip"))
    if mode == TrustProxyMode.VERCEL:
        return _valid_ip(_first_entry(headers.get("x-vercel-forwarded-for")))
    if mode == TrustProxyMode.GENERIC:
        for header in ("x-real-ip", "true-client-ip"):
            resolved = _valid_ip(headers.get(header))
            if resolved:
                return resolved
        return _valid_ip(_first_entry(headers.get("x-forwarded-for")))
    return None
