"""
Request descriptor and client identity derivation.

The identity is a heuristic (first forwarded-for hop or real-ip header,
plus a user-agent fragment). A client that controls its own headers can
spoof it unless a trusted reverse proxy rewrites them.
"""

from dataclasses import dataclass
from typing import Mapping, Optional, Union

from starlette.requests import Request

USER_AGENT_PREFIX_LENGTH = 50
UNKNOWN = "unknown"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value or None


def get_client_ip(headers: Mapping[str, str]) -> str:
    """First address of X-Forwarded-For, else X-Real-IP, else 'unknown'."""
    forwarded = _header(headers, "x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = _header(headers, "x-real-ip")
    if real_ip:
        return real_ip.strip()
    return UNKNOWN


def derive_identity(headers: Mapping[str, str]) -> str:
    """Rate limit partition key: '<ip>:<first 50 chars of user-agent>'."""
    ip = get_client_ip(headers)
    user_agent = _header(headers, "user-agent") or UNKNOWN
    return f"{ip}:{user_agent[:USER_AGENT_PREFIX_LENGTH]}"


@dataclass(frozen=True)
class RequestDescriptor:
    """What the core needs to know about an inbound request."""

    client_ip: str = UNKNOWN
    user_agent: str = UNKNOWN
    url: Optional[str] = None
    method: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    identity: str = f"{UNKNOWN}:{UNKNOWN}"

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        url: Optional[str] = None,
        method: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> "RequestDescriptor":
        return cls(
            client_ip=get_client_ip(headers),
            user_agent=_header(headers, "user-agent") or UNKNOWN,
            url=url,
            method=method,
            request_id=_header(headers, "x-request-id"),
            user_id=user_id,
            identity=derive_identity(headers),
        )

    @classmethod
    def from_request(cls, request: Request, user_id: Optional[str] = None) -> "RequestDescriptor":
        return cls.from_headers(
            request.headers,
            url=str(request.url),
            method=request.method,
            user_id=user_id,
        )


RequestLike = Union[RequestDescriptor, Request, None]


def to_descriptor(request: RequestLike) -> Optional[RequestDescriptor]:
    if isinstance(request, Request):
        return RequestDescriptor.from_request(request)
    return request
