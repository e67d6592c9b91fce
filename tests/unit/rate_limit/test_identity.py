"""
Tests for client identity derivation and endpoint classification.
"""

import pytest

from src.siteguard.core.rate_limiter import LimitCategory, classify_endpoint
from src.siteguard.core.request_context import RequestDescriptor, derive_identity, get_client_ip


class TestClientIp:
    """Header precedence for the client address."""

    def test_first_forwarded_hop_wins(self) -> None:
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1, 10.0.0.2", "x-real-ip": "10.9.9.9"}
        assert get_client_ip(headers) == "203.0.113.7"

    def test_real_ip_when_no_forwarded_for(self) -> None:
        assert get_client_ip({"x-real-ip": " 198.51.100.4 "}) == "198.51.100.4"

    def test_unknown_without_headers(self) -> None:
        assert get_client_ip({}) == "unknown"

    def test_title_case_headers(self) -> None:
        assert get_client_ip({"X-Forwarded-For": "192.0.2.1"}) == "192.0.2.1"

    def test_empty_forwarded_for_falls_through(self) -> None:
        assert get_client_ip({"x-forwarded-for": " , 10.0.0.1", "x-real-ip": "192.0.2.9"}) == "192.0.2.9"


class TestIdentity:
    """'<ip>:<user-agent prefix>' partition keys."""

    def test_identity_combines_ip_and_agent(self) -> None:
        headers = {"x-forwarded-for": "203.0.113.7", "user-agent": "curl/8.0"}
        assert derive_identity(headers) == "203.0.113.7:curl/8.0"

    def test_user_agent_truncated_to_fifty_chars(self) -> None:
        agent = "A" * 80
        identity = derive_identity({"x-real-ip": "192.0.2.1", "user-agent": agent})
        assert identity == "192.0.2.1:" + "A" * 50

    def test_missing_everything(self) -> None:
        assert derive_identity({}) == "unknown:unknown"

    def test_same_ip_different_agents_are_distinct(self) -> None:
        first = derive_identity({"x-real-ip": "192.0.2.1", "user-agent": "Firefox"})
        second = derive_identity({"x-real-ip": "192.0.2.1", "user-agent": "Chrome"})
        assert first != second

    def test_descriptor_from_headers(self) -> None:
        descriptor = RequestDescriptor.from_headers(
            {"x-forwarded-for": "203.0.113.7", "user-agent": "curl/8.0", "x-request-id": "req-1"},
            url="http://testserver/login",
            method="POST",
            user_id="user-42",
        )

        assert descriptor.client_ip == "203.0.113.7"
        assert descriptor.identity == "203.0.113.7:curl/8.0"
        assert descriptor.request_id == "req-1"
        assert descriptor.user_id == "user-42"


class TestClassifyEndpoint:
    """Route to category mapping."""

    @pytest.mark.parametrize(
        "method,path,expected",
        [
            ("POST", "/api/auth/signin", LimitCategory.AUTH),
            ("POST", "/login", LimitCategory.AUTH),
            ("GET", "/api/auth/session", LimitCategory.AUTH),
            ("POST", "/api/upload/logo", LimitCategory.UPLOAD),
            ("GET", "/api/clients", LimitCategory.API_READ),
            ("GET", "/api/factures/12", LimitCategory.API_READ),
            ("POST", "/api/factures", LimitCategory.FINANCIAL),
            ("PUT", "/api/devis/3", LimitCategory.FINANCIAL),
            ("POST", "/api/clients", LimitCategory.API_WRITE),
            ("DELETE", "/api/clients/3", LimitCategory.API_WRITE),
            ("OPTIONS", "/api/clients", LimitCategory.API_WRITE),
        ],
    )
    def test_classification(self, method: str, path: str, expected: LimitCategory) -> None:
        assert classify_endpoint(method, path) == expected
