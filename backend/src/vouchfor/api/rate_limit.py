"""Rate limiting and client identification for public tracking endpoints."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from vouchfor.settings import settings


def client_ip(request: Request) -> str | None:
    """Visitor address, taken from X-Forwarded-For when behind a trusted proxy."""
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


def _limit_key(request: Request) -> str:
    return client_ip(request) or get_remote_address(request)


# Tracking links are public and unauthenticated; limits only apply in production
limiter = Limiter(
    key_func=_limit_key,
    default_limits=["600/minute"],
    storage_uri="memory://",
    enabled=settings.is_production,
)
