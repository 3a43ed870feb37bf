"""Audit trail for sensitive key usage and security alerts.

``KeyAuditLogger`` is a one-way sink: it appends rows to ``audit_log`` and
holds no live state of its own.  Two properties shape every method here:

1. **Fail-soft.**  A broken or slow audit database must never block the
   operation being audited.  Writes are bounded by a timeout and every
   failure is contained: it is logged locally and reported back as an
   ``AuditOutcome`` with ``persisted=False`` instead of an exception.
2. **No raw secrets.**  The operation identity is stored as a keyed hash
   (``key_hash``) for statistics, and metadata is passed through
   ``scrub_secrets`` before it is written.

In production, suspicious-activity records are also forwarded to the
``SecurityAlertNotifier`` (Sentry and an optional webhook).
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keyguard.core.observability import sentry_breadcrumb
from keyguard.models.enums import AuditEventType
from keyguard.models.schemas import KeyUsageEvent, KeyUsageStats, SecurityAlert
from keyguard.models.tables import AuditLog
from keyguard.services.alerting import SecurityAlertNotifier
from keyguard.utils.hashing import AuditHasher
from keyguard.utils.helpers import as_utc
from keyguard.utils.sanitization import scrub_secrets

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditOutcome:
    """Result of an audit write.  ``persisted=False`` means the sink degraded."""

    persisted: bool
    error: Optional[str] = None
    notified: bool = False


class KeyAuditLogger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hasher: AuditHasher,
        notifier: Optional[SecurityAlertNotifier] = None,
        timeout_seconds: float = 2.0,
        production: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._hasher = hasher
        self._notifier = notifier
        self.timeout_seconds = timeout_seconds
        self.production = production

    # ------------------------------------------------------------------
    # Writes

    async def log_key_access(self, event: KeyUsageEvent) -> AuditOutcome:
        """Persist a ``KEY_ACCESS`` row for ``event``.  Never raises."""
        status = "SUCCESS" if event.success else "FAILED"
        metadata: Dict[str, Any] = {
            "event_type": AuditEventType.KEY_ACCESS.value,
            "user_id": event.user_id,
            "key_type": event.key_type,
            "operation": event.operation,
            "success": event.success,
            "ip_address": event.ip_address or "unknown",
            "user_agent": event.user_agent or "unknown",
            "error_message": event.error_message,
            "response_time_ms": event.response_time_ms,
            "timestamp": event.timestamp.isoformat(),
            "key_hash": self._hasher.digest(f"{event.key_type}:{event.operation}"),
            "details": event.details,
        }
        row = AuditLog(
            user_id=event.user_id,
            event_type=AuditEventType.KEY_ACCESS,
            key_type=event.key_type,
            success=event.success,
            response_time_ms=event.response_time_ms,
            payload=scrub_secrets(metadata),
            ip_address=event.ip_address or "unknown",
            user_agent=event.user_agent or "unknown",
            created_at=event.timestamp,
        )
        outcome = await self._write(row)
        logger.info(
            "[KEY_AUDIT] %s - %s - %s - %s%s",
            event.timestamp.isoformat(),
            event.key_type,
            event.operation,
            status,
            "" if outcome.persisted else " (not persisted)",
        )
        return outcome

    async def log_suspicious_activity(self, alert: SecurityAlert) -> AuditOutcome:
        """Persist a ``SUSPICIOUS_KEY_USAGE`` row and escalate in production."""
        metadata: Dict[str, Any] = {
            "event_type": AuditEventType.SUSPICIOUS_KEY_USAGE.value,
            "alert_id": alert.id,
            "user_id": alert.user_id,
            "key_type": alert.key_type,
            "operation": alert.operation,
            "reason": alert.reason,
            "severity": alert.severity.value,
            "details": alert.details,
            "timestamp": alert.timestamp.isoformat(),
            "key_hash": self._hasher.digest(f"{alert.key_type}:{alert.operation}"),
        }
        row = AuditLog(
            user_id=alert.user_id,
            event_type=AuditEventType.SUSPICIOUS_KEY_USAGE,
            key_type=alert.key_type,
            payload=scrub_secrets(metadata),
            created_at=alert.timestamp,
        )
        outcome = await self._write(row)
        logger.error(
            "[SECURITY_ALERT] %s - %s - %s",
            alert.timestamp.isoformat(),
            alert.severity.value.upper(),
            alert.reason,
        )
        sentry_breadcrumb("security", alert.reason, level="warning", data={"key_type": alert.key_type})
        if self.production and self._notifier is not None:
            notified = await self._notify(alert)
            return AuditOutcome(persisted=outcome.persisted, error=outcome.error, notified=notified)
        return outcome

    async def _write(self, row: AuditLog) -> AuditOutcome:
        try:
            await asyncio.wait_for(self._persist(row), timeout=self.timeout_seconds)
            return AuditOutcome(persisted=True)
        except asyncio.TimeoutError:
            logger.error("[KEY_AUDIT] audit write timed out after %.1fs", self.timeout_seconds)
            return AuditOutcome(persisted=False, error="timeout")
        except Exception as exc:
            logger.error("[KEY_AUDIT] failed to persist audit record: %s", exc)
            return AuditOutcome(persisted=False, error=str(exc))

    async def _persist(self, row: AuditLog) -> None:
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()

    async def _notify(self, alert: SecurityAlert) -> bool:
        try:
            return await asyncio.wait_for(self._notifier.notify(alert), timeout=self.timeout_seconds)
        except Exception as exc:
            logger.warning("[SECURITY_MONITORING] failed to forward alert %s: %s", alert.id, exc)
            return False

    # ------------------------------------------------------------------
    # Reads

    async def get_key_usage_stats(self, key_type: Optional[str] = None, days: int = 30) -> List[KeyUsageStats]:
        """Aggregate ``KEY_ACCESS`` rows per key type over the trailing ``days``.

        Returns an empty list when the query fails.
        """
        since = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=days)
        total = func.count(AuditLog.id).label("total_requests")
        stmt = (
            select(
                AuditLog.key_type,
                total,
                func.sum(case((AuditLog.success.is_(True), 1), else_=0)).label("successful_requests"),
                func.avg(AuditLog.response_time_ms).label("avg_response_time"),
                func.max(AuditLog.created_at).label("last_used"),
            )
            .where(AuditLog.event_type == AuditEventType.KEY_ACCESS)
            .where(AuditLog.created_at >= since)
        )
        if key_type:
            stmt = stmt.where(AuditLog.key_type == key_type)
        stmt = stmt.group_by(AuditLog.key_type).order_by(total.desc())
        try:
            async with self._session_factory() as session:
                rows = (await asyncio.wait_for(session.execute(stmt), timeout=self.timeout_seconds)).all()
        except Exception as exc:
            logger.error("Failed to get key usage stats: %s", exc)
            return []
        return [
            KeyUsageStats(
                key_type=row.key_type or "unknown",
                total_requests=int(row.total_requests or 0),
                successful_requests=int(row.successful_requests or 0),
                avg_response_time=float(row.avg_response_time) if row.avg_response_time is not None else None,
                last_used=as_utc(row.last_used),
            )
            for row in rows
        ]
