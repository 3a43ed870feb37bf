"""Observability helpers (Sentry init & common scrubbing).

Keeps initialisation a no-op when no DSN is configured so tests and local
runs never talk to Sentry.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from keyguard.core.config import settings

_SCRUB_HEADERS = ("authorization", "cookie", "set-cookie", "x-api-key", "stripe-signature")


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
    """Scrub credentials before sending to Sentry.

    - Drop Authorization, Cookie and signature headers
    - Remove request bodies (rotation payloads carry raw keys)
    """
    try:
        req = event.get("request") or {}
        headers = req.get("headers") or {}
        for k in list(headers.keys()):
            if k.lower() in _SCRUB_HEADERS:
                headers.pop(k, None)
        req.pop("data", None)
        event["request"] = req
    except Exception:  # best effort
        pass
    return event


def init_sentry(service: str) -> bool:
    """Initialise Sentry once for a given process.

    Returns True if Sentry was initialised; False otherwise.
    """
    if not settings.SENTRY_DSN:
        return False
    if getattr(init_sentry, "_done", False):
        return True
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
        environment=settings.ENVIRONMENT,
        release=settings.SENTRY_RELEASE,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", service)
    init_sentry._done = True  # type: ignore[attr-defined]
    return True


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
    """Best-effort: add a breadcrumb for key lifecycle steps."""
    if not settings.SENTRY_DSN:
        return
    try:
        sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})
    except Exception:
        return


def sentry_capture_alert(message: str, level: str, tags: Optional[Dict[str, Any]] = None, extras: Optional[Dict[str, Any]] = None) -> bool:
    """Best-effort: report a security alert as a Sentry message.

    Returns True when the message was handed to the SDK.
    """
    if not settings.SENTRY_DSN:
        return False
    try:
        with sentry_sdk.new_scope() as scope:
            for k, v in (tags or {}).items():
                # Coerce to short strings to avoid large payloads
                scope.set_tag(str(k), str(v)[:128] if v is not None else "")
            for k, v in (extras or {}).items():
                scope.set_extra(str(k), v)
            sentry_sdk.capture_message(message, level=level)
        return True
    except Exception:
        return False


__all__ = ["init_sentry", "sentry_breadcrumb", "sentry_capture_alert"]
