"""Health check endpoint for monitoring."""
from typing import Any, Dict

from fastapi import APIRouter, Depends

from keyguard.api.dependencies import get_rate_limiter
from keyguard.core.config import settings
from keyguard.services.rate_limit import RateLimiter

router = APIRouter(tags=["health"])


@router.api_route("/health", methods=["GET", "HEAD"])
async def health_check(limiter: RateLimiter = Depends(get_rate_limiter)) -> Dict[str, Any]:
    """Basic health check (supports GET & HEAD)."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "rateLimitBackend": limiter.backend_name,
    }
