"""Tests for client IP resolution under each proxy trust mode."""

import pytest

from chatjobs.config import Settings, TrustProxyMode
from chatjobs.service.client_identity import resolve_client_ip


class TestResolveClientIp:
    def test_unset_mode_never_resolves(self):
        headers = {"x-real-ip": "203.0.113.5", "x-forwarded-for": "203.0.113.5"}
        assert resolve_client_ip(headers, TrustProxyMode.UNSET) is None

    def test_cloudflare_header(self):
        headers = {"cf-connecting-ip": "198.51.100.7", "x-forwarded-for": "10.0.0.1"}
        assert resolve_client_ip(headers, TrustProxyMode.CLOUDFLARE) == "198.51.100.7"

    def test_cloudflare_ignores_generic_headers(self):
        assert resolve_client_ip({"x-real-ip": "198.51.100.7"}, TrustProxyMode.CLOUDFLARE) is None

    def test_vercel_takes_first_entry(self):
        headers = {"x-vercel-forwarded-for": "198.51.100.9, 10.0.0.2"}
        assert resolve_client_ip(headers, TrustProxyMode.VERCEL) == "198.51.100.9"

    def test_generic_prefers_real_ip(self):
        headers = {
            "x-real-ip": "203.0.113.1",
            "true-client-ip": "203.0.113.2",
            "x-forwarded-for": "203.0.113.3",
        }
        assert resolve_client_ip(headers, TrustProxyMode.GENERIC) == "203.0.113.1"

    def test_generic_falls_back_to_true_client_ip(self):
        headers = {"true-client-ip": "203.0.113.2", "x-forwarded-for": "203.0.113.3"}
        assert resolve_client_ip(headers, TrustProxyMode.GENERIC) == "203.0.113.2"

    def test_generic_falls_back_to_forwarded_for(self):
        headers = {"x-forwarded-for": "203.0.113.3, 10.0.0.1"}
        assert resolve_client_ip(headers, TrustProxyMode.GENERIC) == "203.0.113.3"

    def test_ipv6_is_canonicalized(self):
        headers = {"cf-connecting-ip": "2001:DB8:0:0:0:0:0:1"}
        assert resolve_client_ip(headers, TrustProxyMode.CLOUDFLARE) == "2001:db8::1"

    @pytest.mark.parametrize("value", ["", "   ", "unknown", "1.2.3", "999.1.1.1", "example.com"])
    def test_malformed_values_fail_closed(self, value):
        assert resolve_client_ip({"cf-connecting-ip": value}, TrustProxyMode.CLOUDFLARE) is None


class TestTrustProxySetting:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("cloudflare", TrustProxyMode.CLOUDFLARE),
            ("VERCEL", TrustProxyMode.VERCEL),
            ("generic-trust-forwarded", TrustProxyMode.GENERIC),
            ("true", TrustProxyMode.GENERIC),
            ("", TrustProxyMode.UNSET),
            ("false", TrustProxyMode.UNSET),
        ],
    )
    def test_parses_modes(self, raw, expected):
        assert Settings(trust_proxy=raw).trust_proxy == expected

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            Settings(trust_proxy="akamai")
