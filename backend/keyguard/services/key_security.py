"""Cross-cutting coordination of key validation, usage logging and anomalies.

``KeySecurityManager`` is constructed exactly once per process in the app
lifespan and reached through ``app.state``; request handlers receive it
via ``keyguard.api.dependencies.get_key_manager``.

Anomaly model
-------------
``UsageAnomalyDetector`` keeps two in-memory signals per key type:

* **Usage spike.**  Events are counted in one-minute buckets.  The
  baseline is the mean per-minute count over the trailing hour, counting
  quiet minutes as zero, with a floor of one event per minute.  Once at
  least ``baseline_min_minutes`` of history exist, a current minute with
  ``spike_min_events`` or more events and at least ``spike_medium_ratio``
  times the baseline (a 200% increase) raises a ``medium`` alert;
  ``spike_high_ratio`` times raises ``high``.
* **Repeated failures.**  Failures are tracked per (key type, user) in a
  sliding five minute window.  ``failure_high`` failures raise ``high``,
  ``failure_critical`` raise ``critical``.

Alerts with the same (reason, key type, user) are suppressed during a
cooldown so a sustained incident produces one alert, not one per request.
Detector state is guarded by a ``threading.Lock`` that is never held
across an ``await``.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, TypeVar, Union

from keyguard.core.exceptions import KeyValidationError, ValidationError
from keyguard.models.enums import AlertSeverity, KeyStatus, KeyType
from keyguard.models.schemas import KeyStatusReport, KeyUsageEvent, SecurityAlert
from keyguard.services.audit_service import KeyAuditLogger
from keyguard.services.key_store import KeyRecord, SecureKeyStore
from keyguard.utils.hashing import AuditHasher

logger = logging.getLogger(__name__)

T = TypeVar("T")

REMINDER_COOLDOWN_SECONDS = 86_400


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class AnomalyThresholds:
    spike_min_events: int = 20
    spike_medium_ratio: float = 3.0
    spike_high_ratio: float = 10.0
    baseline_minutes: int = 60
    baseline_min_minutes: int = 5
    failure_window_seconds: int = 300
    failure_high: int = 5
    failure_critical: int = 20
    alert_cooldown_seconds: int = 300
    max_tracked_principals: int = 10_000


class UsageAnomalyDetector:
    def __init__(self, thresholds: Optional[AnomalyThresholds] = None) -> None:
        self.thresholds = thresholds or AnomalyThresholds()
        self._lock = threading.Lock()
        # key_type -> {minute index: count}
        self._minute_counts: Dict[str, Dict[int, int]] = {}
        self._first_minute: Dict[str, int] = {}
        # (key_type, user_id) -> failure timestamps (epoch seconds)
        self._failures: Dict[Tuple[str, str], Deque[float]] = {}
        # (reason, key_type, user_id) -> (last emitted, cooldown seconds)
        self._last_alert: Dict[Tuple[str, str, str], Tuple[float, float]] = {}

    def observe(self, event: KeyUsageEvent) -> List[SecurityAlert]:
        """Record ``event`` and return any alerts it triggers."""
        ts = event.timestamp.timestamp()
        alerts: List[SecurityAlert] = []
        with self._lock:
            spike = self._observe_volume(event, ts)
            if spike is not None:
                alerts.append(spike)
            if not event.success:
                burst = self._observe_failure(event, ts)
                if burst is not None:
                    alerts.append(burst)
        return alerts

    def should_emit(self, reason: str, key_type: str, user_id: str, ts: float, cooldown: Optional[float] = None) -> bool:
        """Cooldown gate shared with alerts raised outside ``observe``."""
        with self._lock:
            return self._cooldown_ok((reason, key_type, user_id), ts, cooldown)

    # -- internals (lock held) -------------------------------------------

    def _cooldown_ok(self, alert_key: Tuple[str, str, str], ts: float, cooldown: Optional[float] = None) -> bool:
        window = self.thresholds.alert_cooldown_seconds if cooldown is None else cooldown
        entry = self._last_alert.get(alert_key)
        if entry is not None and ts - entry[0] < window:
            return False
        if entry is None and len(self._last_alert) >= self.thresholds.max_tracked_principals:
            self._prune(ts)
        self._last_alert[alert_key] = (ts, window)
        return True

    def _baseline_locked(self, key_type: str, minute: int) -> Optional[float]:
        first = self._first_minute.get(key_type)
        if first is None:
            return None
        observed = min(self.thresholds.baseline_minutes, minute - first)
        if observed < self.thresholds.baseline_min_minutes:
            return None
        counts = self._minute_counts.get(key_type, {})
        start = minute - observed
        total = sum(c for m, c in counts.items() if start <= m < minute)
        return max(1.0, total / observed)

    def _observe_volume(self, event: KeyUsageEvent, ts: float) -> Optional[SecurityAlert]:
        t = self.thresholds
        minute = int(ts // 60)
        counts = self._minute_counts.setdefault(event.key_type, {})
        self._first_minute.setdefault(event.key_type, minute)
        counts[minute] = counts.get(minute, 0) + 1
        for m in [m for m in counts if m < minute - t.baseline_minutes]:
            del counts[m]

        current = counts[minute]
        if current < t.spike_min_events:
            return None
        baseline = self._baseline_locked(event.key_type, minute)
        if baseline is None:
            return None
        ratio = current / baseline
        if ratio < t.spike_medium_ratio:
            return None
        if not self._cooldown_ok(("usage_spike", event.key_type, "*"), ts):
            return None
        severity = AlertSeverity.HIGH if ratio >= t.spike_high_ratio else AlertSeverity.MEDIUM
        increase = round((ratio - 1) * 100)
        return SecurityAlert(
            key_type=event.key_type,
            operation=event.operation,
            user_id="system",
            reason=f"{event.key_type} key usage increased by {increase}% over the trailing baseline",
            severity=severity,
            details={
                "type": "usage_spike",
                "current_per_minute": current,
                "baseline_per_minute": round(baseline, 2),
                "ratio": round(ratio, 2),
                "triggered_by": event.user_id,
            },
            timestamp=event.timestamp,
        )

    def _observe_failure(self, event: KeyUsageEvent, ts: float) -> Optional[SecurityAlert]:
        t = self.thresholds
        principal = (event.key_type, event.user_id)
        if principal not in self._failures and len(self._failures) >= t.max_tracked_principals:
            self._prune(ts)
        window = self._failures.setdefault(principal, deque())
        window.append(ts)
        while window and ts - window[0] > t.failure_window_seconds:
            window.popleft()

        failures = len(window)
        if failures < t.failure_high:
            return None
        severity = AlertSeverity.CRITICAL if failures >= t.failure_critical else AlertSeverity.HIGH
        # A critical escalation is reported even inside the high cooldown
        reason_key = f"repeated_failures:{severity.value}"
        if not self._cooldown_ok((reason_key, event.key_type, event.user_id), ts):
            return None
        return SecurityAlert(
            key_type=event.key_type,
            operation=event.operation,
            user_id=event.user_id,
            reason=f"{failures} failed {event.key_type} key operations in {t.failure_window_seconds // 60} minutes",
            severity=severity,
            details={
                "type": "repeated_failures",
                "failures": failures,
                "window_seconds": t.failure_window_seconds,
                "last_error": event.error_message,
            },
            timestamp=event.timestamp,
        )

    def _prune(self, ts: float) -> None:
        horizon = self.thresholds.failure_window_seconds
        stale = [k for k, q in self._failures.items() if not q or ts - q[-1] > horizon]
        for k in stale:
            del self._failures[k]
        expired = [k for k, (last, window) in self._last_alert.items() if ts - last >= window]
        for k in expired:
            del self._last_alert[k]


class KeySecurityManager:
    """Coordinates the key store, the audit trail and anomaly detection."""

    def __init__(
        self,
        key_store: SecureKeyStore,
        audit_logger: KeyAuditLogger,
        hasher: AuditHasher,
        detector: Optional[UsageAnomalyDetector] = None,
        rotation_max_age_days: int = 90,
        history_size: int = 50,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self.key_store = key_store
        self._audit = audit_logger
        self._hasher = hasher
        self._detector = detector or UsageAnomalyDetector()
        self.rotation_max_age = dt.timedelta(days=rotation_max_age_days)
        self._clock = clock
        self._history_lock = threading.Lock()
        self._recent_events: Deque[KeyUsageEvent] = deque(maxlen=history_size)
        self._recent_alerts: Deque[SecurityAlert] = deque(maxlen=history_size)
        self._last_validated: Optional[dt.datetime] = None

    # ------------------------------------------------------------------
    # Usage logging

    async def log_key_usage(
        self,
        key_type: Union[KeyType, str],
        operation: str,
        success: bool,
        *,
        user_id: str = "system",
        response_time_ms: Optional[float] = None,
        error_message: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> List[SecurityAlert]:
        """Record one key usage and escalate any anomaly it reveals.

        Audit persistence is fail-soft, so this never raises because the
        audit sink is down.  Returns the alerts raised (usually none).
        """
        kt = key_type.value if isinstance(key_type, KeyType) else str(key_type)
        event = KeyUsageEvent(
            key_type=kt,
            operation=operation,
            user_id=str(user_id),
            success=success,
            timestamp=self._clock(),
            response_time_ms=response_time_ms,
            error_message=error_message,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )
        with self._history_lock:
            self._recent_events.append(event)
        alerts = self._detector.observe(event)
        logger.info(
            "[KEY_USAGE] %s - %s - %s - %s",
            event.timestamp.isoformat(),
            kt,
            operation,
            "SUCCESS" if success else "FAILED",
        )
        await self._audit.log_key_access(event)
        for alert in alerts:
            await self._raise_alert(alert)
        return alerts

    async def _raise_alert(self, alert: SecurityAlert) -> None:
        with self._history_lock:
            self._recent_alerts.append(alert)
        await self._audit.log_suspicious_activity(alert)

    # ------------------------------------------------------------------
    # Credentials

    def get_key(self, key_type: Union[KeyType, str]) -> str:
        return self.key_store.get_key(key_type)

    async def rotate_key(
        self,
        key_type: Union[KeyType, str],
        new_value: str,
        *,
        actor_id: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> KeyRecord:
        """Rotate a credential and record the attempt either way.

        Raises:
            ValidationError: the new value was rejected; the old key stays live.
        """
        kt_label = key_type.value if isinstance(key_type, KeyType) else str(key_type)
        details: Dict[str, Any] = {"reason": reason or "No reason provided"}
        try:
            record = self.key_store.rotate_key(key_type, new_value)
        except ValidationError as exc:
            await self.log_key_usage(
                kt_label,
                "key_rotation",
                False,
                user_id=actor_id,
                error_message=exc.message,
                ip_address=ip_address,
                user_agent=user_agent,
                details=details,
            )
            raise
        details.update(
            fingerprint=self._hasher.fingerprint(record.value),
            rotation_count=record.rotation_count,
        )
        logger.info(
            "[KEY_ROTATION] Admin %s rotated %s key. Reason: %s",
            actor_id,
            record.key_type.value,
            details["reason"],
        )
        await self.log_key_usage(
            record.key_type,
            "key_rotation",
            True,
            user_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        )
        return record

    async def validate_keys(self, *, actor_id: str = "system") -> KeyStatusReport:
        """Check every stored credential and report per-type status.

        Missing key types are reported as ``missing`` rather than invalid.
        Each failure is written to the audit trail; keys older than the
        rotation policy produce a ``low`` severity reminder alert.
        """
        now = self._clock()
        try:
            self.key_store.validate_keys()
            issues: Dict[str, str] = {}
        except KeyValidationError as exc:
            issues = exc.failures

        configured = set(self.key_store.configured_types())
        statuses: Dict[str, KeyStatus] = {}
        rotation_due: List[str] = []
        for kt in KeyType:
            if kt not in configured:
                statuses[kt.value] = KeyStatus.MISSING
                continue
            statuses[kt.value] = KeyStatus.INVALID if kt.value in issues else KeyStatus.VALID
            record = self.key_store.get_record(kt)
            if now - record.last_rotated_at > self.rotation_max_age:
                rotation_due.append(kt.value)

        self._last_validated = now
        report = KeyStatusReport(
            key_status=statuses,
            issues=issues,
            rotation_due=rotation_due,
            last_validated=now,
        )

        for kt_value, issue in issues.items():
            await self.log_key_usage(kt_value, "key_validation", False, user_id=actor_id, error_message=issue)
        for kt_value in rotation_due:
            await self._remind_rotation(kt_value, now)
        return report

    async def _remind_rotation(self, key_type: str, now: dt.datetime) -> None:
        # One reminder per key type per day
        if not self._detector.should_emit("key_rotation_reminder", key_type, "system", now.timestamp(), cooldown=REMINDER_COOLDOWN_SECONDS):
            return
        days = self.rotation_max_age.days
        await self._raise_alert(
            SecurityAlert(
                key_type=key_type,
                operation="key_rotation_reminder",
                reason=f"{key_type} key has not been rotated in {days} days",
                severity=AlertSeverity.LOW,
                details={"type": "key_rotation_reminder", "max_age_days": days},
                timestamp=now,
            )
        )

    # ------------------------------------------------------------------
    # Monitoring views

    @property
    def last_validated(self) -> Optional[dt.datetime]:
        return self._last_validated

    def recent_events(self, limit: int = 20) -> List[KeyUsageEvent]:
        with self._history_lock:
            events = list(self._recent_events)
        return list(reversed(events))[:limit]

    def recent_alerts(self, limit: int = 20) -> List[SecurityAlert]:
        with self._history_lock:
            alerts = list(self._recent_alerts)
        return list(reversed(alerts))[:limit]


async def with_key_protection(
    manager: KeySecurityManager,
    key_type: Union[KeyType, str],
    operation: str,
    fn: Callable[[], Awaitable[T]],
    *,
    user_id: str = "system",
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> T:
    """Run ``fn`` and log the key usage it represents.

    The wrapped call's result (or exception) is passed through unchanged;
    audit logging failures never replace it.
    """
    started = time.perf_counter()
    try:
        result = await fn()
    except Exception as exc:
        elapsed_ms = (time.perf_counter() - started) * 1000
        await manager.log_key_usage(
            key_type,
            operation,
            False,
            user_id=user_id,
            response_time_ms=round(elapsed_ms, 2),
            error_message=str(exc),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise
    elapsed_ms = (time.perf_counter() - started) * 1000
    await manager.log_key_usage(
        key_type,
        operation,
        True,
        user_id=user_id,
        response_time_ms=round(elapsed_ms, 2),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return result
