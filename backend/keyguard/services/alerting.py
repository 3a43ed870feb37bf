"""Outbound notification of security alerts.

Used by the audit logger in production only.  Delivery is best effort:
Sentry gets a message (when configured) and an optional webhook receives
the alert JSON.  Nothing here raises to the caller.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from keyguard.core.observability import sentry_capture_alert
from keyguard.models.enums import AlertSeverity
from keyguard.models.schemas import SecurityAlert

logger = logging.getLogger(__name__)

_SENTRY_LEVELS = {
    AlertSeverity.LOW: "info",
    AlertSeverity.MEDIUM: "warning",
    AlertSeverity.HIGH: "error",
    AlertSeverity.CRITICAL: "fatal",
}


class SecurityAlertNotifier:
    def __init__(self, webhook_url: Optional[str] = None, timeout_seconds: float = 3.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def notify(self, alert: SecurityAlert) -> bool:
        """Forward ``alert``; returns True if at least one sink accepted it."""
        delivered = sentry_capture_alert(
            f"[SECURITY_ALERT] {alert.severity.value.upper()} - {alert.reason}",
            level=_SENTRY_LEVELS.get(alert.severity, "warning"),
            tags={"key_type": alert.key_type, "operation": alert.operation, "severity": alert.severity.value},
            extras={"alert_id": alert.id, "details": alert.details},
        )
        if self.webhook_url:
            delivered = await self._post_webhook(alert) or delivered
        return delivered

    async def _post_webhook(self, alert: SecurityAlert) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await client.post(self.webhook_url, json=alert.model_dump(mode="json", by_alias=True))
                resp.raise_for_status()
            return True
        except Exception as exc:
            logger.warning("[SECURITY_MONITORING] alert webhook failed for %s: %s", alert.id, exc)
            return False
