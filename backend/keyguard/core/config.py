"""Configuration management.

This module defines a ``Settings`` class that reads configuration values
from environment variables and provides sensible defaults.  ``.env``
support is implemented by loading files from the repository root in a
defined order.  Values are read once at startup; request handlers never
re-read the environment.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Any attribute defined here can be overridden by setting the
    corresponding environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    PROJECT_NAME: str = "Keyguard"
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")
    BACKEND_CORS_ORIGINS: List[str] = Field(default_factory=list)

    # Database (audit trail)
    DATABASE_URL: Optional[str] = Field(default=None)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Rate limiting.  Presence of RATE_LIMIT_REDIS_URL switches the limiter
    # to the shared Redis backend at startup.
    RATE_LIMIT_REDIS_URL: Optional[str] = Field(default=None)
    RATE_LIMIT_REDIS_TOKEN: Optional[str] = Field(default=None)
    RATE_LIMIT_MAX_KEYS: int = Field(default=10_000)
    RATE_LIMIT_REMOTE_TIMEOUT_SECONDS: float = Field(default=0.5)
    # Peers allowed to set X-Forwarded-For (addresses or CIDR ranges).
    TRUSTED_PROXIES: List[str] = Field(default_factory=lambda: ["127.0.0.1", "::1"])

    # Audit trail
    AUDIT_WRITE_TIMEOUT_SECONDS: float = Field(default=2.0)
    SECURITY_ALERT_WEBHOOK_URL: Optional[str] = Field(default=None)

    # Managed credentials
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    STRIPE_MODE: str = Field(default="test")
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_SECRET_KEY_LIVE: Optional[str] = Field(default=None)
    STRIPE_SECRET_KEY_TEST: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET_LIVE: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET_TEST: Optional[str] = Field(default=None)
    # Root secret; also keys the audit-trail hash function.
    AUTH_SECRET: str = Field(default="changeme")
    KEY_ROTATION_MAX_AGE_DAYS: int = Field(default=90)

    # Auth
    # Disable auth bypass by default.  Override in .env only when running
    # locally.
    DEV_AUTH_BYPASS: bool = Field(default=False)
    ADMIN_EMAILS: str = Field(default="")
    CLERK_SECRET_KEY: Optional[str] = Field(default=None)
    CLERK_API_URL: Optional[str] = Field(default="https://api.clerk.com/v1")
    CLERK_JWKS_URL: Optional[str] = Field(default=None)
    CLERK_JWT_AUDIENCE: Optional[str] = Field(default=None)
    CLERK_JWT_ISSUER: Optional[str] = Field(default=None)

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    @property
    def is_production(self) -> bool:
        return (self.ENVIRONMENT or "development").lower() == "production"


# Instantiate global settings
settings = Settings()


def get_stripe_secret_key(cfg: Settings | None = None) -> Optional[str]:
    """Return the Stripe secret key for the configured mode.

    Precedence:
    1. STRIPE_SECRET_KEY_LIVE / STRIPE_SECRET_KEY_TEST depending on STRIPE_MODE
    2. Fallback to the legacy singular STRIPE_SECRET_KEY
    """
    cfg = cfg or settings
    is_live = (cfg.STRIPE_MODE or "test").lower() == "live"
    moded = cfg.STRIPE_SECRET_KEY_LIVE if is_live else cfg.STRIPE_SECRET_KEY_TEST
    return moded or cfg.STRIPE_SECRET_KEY


def get_webhook_secret(cfg: Settings | None = None) -> Optional[str]:
    """Return the Stripe webhook secret for the configured mode (same precedence)."""
    cfg = cfg or settings
    is_live = (cfg.STRIPE_MODE or "test").lower() == "live"
    moded = cfg.STRIPE_WEBHOOK_SECRET_LIVE if is_live else cfg.STRIPE_WEBHOOK_SECRET_TEST
    return moded or cfg.STRIPE_WEBHOOK_SECRET


def get_admin_emails(cfg: Settings | None = None) -> set[str]:
    cfg = cfg or settings
    return {e.strip().lower() for e in (cfg.ADMIN_EMAILS or "").split(",") if e.strip()}
