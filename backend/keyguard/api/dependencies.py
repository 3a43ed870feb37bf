"""Common dependencies for FastAPI routes.

Long-lived services (rate limiter, key security manager, audit logger) are
built once in the application lifespan and stored on ``app.state``; the
getters below hand them to route functions.  Operator authentication is
delegated to ``keyguard.core.security`` so JWT validation stays in one
place.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Awaitable, Callable, Iterable, Optional

from fastapi import Depends, HTTPException, Request, status

from keyguard.core.config import settings
from keyguard.core.security import Operator, get_operator
from keyguard.services.audit_service import KeyAuditLogger
from keyguard.services.key_security import KeySecurityManager
from keyguard.services.rate_limit import RATE_LIMITS, RateLimiter, RateLimitResult

logger = logging.getLogger(__name__)

__all__ = [
    "client_ip",
    "get_audit_logger",
    "get_key_manager",
    "get_operator",
    "get_rate_limiter",
    "rate_limit",
]


# -----------------------------------------------------------------------------
# Shared resources

def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_key_manager(request: Request) -> KeySecurityManager:
    return request.app.state.key_manager


def get_audit_logger(request: Request) -> KeyAuditLogger:
    return request.app.state.audit_logger


def _is_trusted_proxy(host: Optional[str], trusted: Iterable[str]) -> bool:
    if not host:
        return False
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return host in trusted
    for entry in trusted:
        try:
            if addr in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def client_ip(request: Request) -> str:
    """Caller address for per-IP budgets.

    ``X-Forwarded-For`` is only honoured when the direct peer is listed in
    ``TRUSTED_PROXIES``; otherwise the header is caller-controlled.
    """
    peer = request.client.host if request.client else None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and _is_trusted_proxy(peer, settings.TRUSTED_PROXIES):
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer or "unknown"


# -----------------------------------------------------------------------------
# Rate limiting helpers

def _raise_limited(result: RateLimitResult) -> None:
    headers = {
        "Retry-After": str(result.retry_after_seconds()),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": str(result.reset),
    }
    raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded", headers=headers)


def rate_limit(route: str, preset: str, by: str = "ip") -> Callable[..., Awaitable[RateLimitResult]]:
    """Build a dependency enforcing the named preset for ``route``.

    ``by="ip"`` keys the window on the caller address; ``by="user"`` keys it
    on the authenticated operator (and so also requires admin auth).
    """
    rule = RATE_LIMITS[preset]
    if by not in ("ip", "user"):
        raise ValueError("by must be 'ip' or 'user'")

    if by == "user":

        async def _by_user(
            limiter: RateLimiter = Depends(get_rate_limiter),
            operator: Operator = Depends(get_operator),
        ) -> RateLimitResult:
            result = await limiter.limit_by_user(operator.user_id, route, rule)
            if not result.ok:
                logger.warning("[rate_limit] user=%s route=%s limited", operator.user_id, route)
                _raise_limited(result)
            return result

        return _by_user

    async def _by_ip(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)) -> RateLimitResult:
        ip = client_ip(request)
        result = await limiter.limit_by_ip(ip, route, rule)
        if not result.ok:
            logger.warning("[rate_limit] ip=%s route=%s limited", ip, route)
            _raise_limited(result)
        return result

    return _by_ip
