"""Database configuration and session management.

The audit trail is the only state in this service that must survive a
restart, so the database holds a single append-only table.  This module
constructs the asynchronous SQLAlchemy engine and session factory.  When
``DATABASE_URL`` is unset a local SQLite database may be used in
development if ``DB_DEV_FALLBACK_SQLITE`` is enabled.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base

from keyguard.core.config import Settings, settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./keyguard.db"

# Declarative base
Base = declarative_base()


def resolve_database_url(cfg: Settings) -> str:
    """Return an async driver URL for the configured database.

    - SQLite URLs are upgraded to ``sqlite+aiosqlite``.
    - PostgreSQL URLs (plain, psycopg2 or asyncpg) are normalised to
      ``postgresql+psycopg`` with ``sslmode=require`` unless set explicitly.
    """
    db_url = cfg.DATABASE_URL
    if not db_url:
        # Fail fast when no DB URL is provided and fallback is disabled.
        if not cfg.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false a Postgres URL is required."
            )
        return SQLITE_FALLBACK_URL

    url_obj = make_url(db_url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


def masked_url(db_url: str) -> str:
    """Render ``db_url`` without its password for logs."""
    try:
        return make_url(db_url).render_as_string(hide_password=True)
    except Exception:
        return "<unparseable>"


def create_engine_from_settings(cfg: Settings) -> AsyncEngine:
    db_url = resolve_database_url(cfg)
    logger.info("Creating async engine with URL: %s", masked_url(db_url))
    engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)
    return create_async_engine(db_url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Return the process engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine_from_settings(settings)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create the audit tables if they do not exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        # Import all models to ensure metadata is populated
        from keyguard.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
