"""Redis client construction for the shared rate-limit backend.

Only the rate limiter talks to Redis.  The client is created once at
startup by ``build_rate_limit_store`` and closed in the app lifespan.
"""
from __future__ import annotations

import logging
from typing import Optional

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)


def create_redis_client(url: str, token: Optional[str] = None, timeout_seconds: float = 0.5):
    """Return an async Redis client for ``url``.

    ``token`` is sent as the connection password (managed Redis services
    hand out an access token for this).  Socket timeouts mirror the limiter
    timeout so a stalled connection fails fast.
    """
    kwargs = dict(
        decode_responses=True,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
    )
    if token:
        kwargs["password"] = token
    return aioredis.from_url(url, **kwargs)


async def close_redis(client) -> None:
    """Best-effort close; errors on shutdown are logged, not raised."""
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as exc:  # pragma: no cover - shutdown path
        logger.warning("[rate_limit] error closing redis client: %s", exc)
