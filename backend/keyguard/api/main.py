"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes the routers and wires the
long-lived services in the lifespan handler.  Every service is built once
at startup and placed on ``app.state``:

* ``rate_limiter``   - ``RateLimiter`` over the configured store
* ``key_manager``    - ``KeySecurityManager`` (owns the ``SecureKeyStore``)
* ``audit_logger``   - ``KeyAuditLogger`` writing to the audit database

Run with ``uvicorn keyguard.api.main:app`` from ``backend/``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from keyguard.api.error_handlers import register_exception_handlers
from keyguard.api.routes.admin_keys import router as admin_keys_router
from keyguard.api.routes.health import router as health_router
from keyguard.core.config import settings
from keyguard.core.database import dispose_engine, get_session_factory, init_db
from keyguard.core.logging_config import setup_logging
from keyguard.core.observability import init_sentry
from keyguard.services.alerting import SecurityAlertNotifier
from keyguard.services.audit_service import KeyAuditLogger
from keyguard.services.key_security import KeySecurityManager
from keyguard.services.key_store import SecureKeyStore
from keyguard.services.rate_limit import RateLimiter, build_rate_limit_store
from keyguard.utils.hashing import AuditHasher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    setup_logging(settings.LOG_LEVEL)
    logger.info("Starting up (environment=%s)...", settings.ENVIRONMENT)
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()

    hasher = AuditHasher.from_secret(settings.AUTH_SECRET)
    audit_logger = KeyAuditLogger(
        get_session_factory(),
        hasher,
        notifier=SecurityAlertNotifier(settings.SECURITY_ALERT_WEBHOOK_URL),
        timeout_seconds=settings.AUDIT_WRITE_TIMEOUT_SECONDS,
        production=settings.is_production,
    )
    key_manager = KeySecurityManager(
        SecureKeyStore.from_settings(settings),
        audit_logger,
        hasher,
        rotation_max_age_days=settings.KEY_ROTATION_MAX_AGE_DAYS,
    )
    app.state.rate_limiter = RateLimiter(build_rate_limit_store(settings))
    app.state.audit_logger = audit_logger
    app.state.key_manager = key_manager

    report = await key_manager.validate_keys()
    if report.issues:
        logger.error("[SECURITY] Key validation failed at startup: %s", report.issues)
        if settings.is_production:
            raise RuntimeError("Refusing to start with invalid credentials")
    yield
    # Shutdown
    logger.info("Shutting down...")
    await app.state.rate_limiter.close()
    key_manager.key_store.clear()
    await dispose_engine()


def _cors_origins() -> list[str]:
    """Development allows every origin; otherwise BACKEND_CORS_ORIGINS."""
    if (settings.ENVIRONMENT or "development").lower() == "development":
        return ["*"]
    seen: set[str] = set()
    return [o for o in settings.BACKEND_CORS_ORIGINS if not (o in seen or seen.add(o))]


def create_app() -> FastAPI:
    app = FastAPI(
        title=f"{settings.PROJECT_NAME} API",
        version="1.0.0",
        lifespan=lifespan,
    )
    origins = _cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials="*" not in origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    register_exception_handlers(app)
    app.include_router(health_router)
    app.include_router(admin_keys_router)
    return app


app = create_app()
