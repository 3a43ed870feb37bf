from __future__ import annotations

import asyncio
import datetime as dt
import json

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from keyguard.core.database import Base
from keyguard.models.enums import AlertSeverity, AuditEventType
from keyguard.models.schemas import KeyUsageEvent, SecurityAlert
from keyguard.models.tables import AuditLog
from keyguard.services.audit_service import KeyAuditLogger
from keyguard.utils.hashing import AuditHasher

HASHER = AuditHasher.from_secret("unit-test-root-secret")


async def _session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


async def _rows(Session):
    async with Session() as session:
        return (await session.execute(select(AuditLog).order_by(AuditLog.id))).scalars().all()


def _event(key_type="openai", success=True, response_time_ms=None, **kw):
    return KeyUsageEvent(key_type=key_type, operation="chat", success=success, response_time_ms=response_time_ms, **kw)


class DummyNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, alert):
        self.sent.append(alert)
        return True


@pytest.mark.asyncio
async def test_log_key_access_persists_hashed_row():
    Session = await _session_factory()
    audit = KeyAuditLogger(Session, HASHER)

    outcome = await audit.log_key_access(_event(user_id="u1", ip_address="10.0.0.1", response_time_ms=12.5))

    assert outcome.persisted is True
    (row,) = await _rows(Session)
    assert row.event_type == AuditEventType.KEY_ACCESS
    assert row.key_type == "openai"
    assert row.success is True
    assert row.response_time_ms == 12.5
    assert row.ip_address == "10.0.0.1"
    assert row.user_agent == "unknown"
    assert row.payload["key_hash"] == HASHER.digest("openai:chat")
    assert row.payload["operation"] == "chat"


@pytest.mark.asyncio
async def test_persisted_rows_never_contain_raw_secrets():
    Session = await _session_factory()
    audit = KeyAuditLogger(Session, HASHER)
    secret = "sk-live-abcdef1234567890"

    await audit.log_key_access(
        _event(
            success=False,
            error_message=f"provider rejected {secret}",
            details={"api_key": secret, "reason": "rotated after leak"},
        )
    )

    (row,) = await _rows(Session)
    dumped = json.dumps(row.payload)
    assert secret not in dumped
    assert row.payload["details"]["api_key"] == "[REDACTED]"
    assert row.payload["details"]["reason"] == "rotated after leak"


@pytest.mark.asyncio
async def test_usage_stats_group_by_key_type():
    Session = await _session_factory()
    audit = KeyAuditLogger(Session, HASHER)
    for ms, ok in ((100.0, True), (200.0, True), (300.0, False)):
        await audit.log_key_access(_event("openai", success=ok, response_time_ms=ms))
    await audit.log_key_access(_event("stripe", response_time_ms=50.0))
    old = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=40)
    await audit.log_key_access(_event("stripe", timestamp=old))

    stats = await audit.get_key_usage_stats(days=30)

    assert [s.key_type for s in stats] == ["openai", "stripe"]
    openai = stats[0]
    assert openai.total_requests == 3
    assert openai.successful_requests == 2
    assert openai.avg_response_time == pytest.approx(200.0)
    assert openai.success_rate == pytest.approx(66.67)
    assert openai.last_used.tzinfo is not None
    assert stats[1].total_requests == 1

    only_stripe = await audit.get_key_usage_stats(key_type="stripe", days=60)
    assert [(s.key_type, s.total_requests) for s in only_stripe] == [("stripe", 2)]


@pytest.mark.asyncio
async def test_suspicious_activity_notifies_only_in_production():
    Session = await _session_factory()
    notifier = DummyNotifier()
    alert = SecurityAlert(key_type="openai", operation="chat", reason="spike", severity=AlertSeverity.HIGH)

    dev = KeyAuditLogger(Session, HASHER, notifier=notifier, production=False)
    dev_outcome = await dev.log_suspicious_activity(alert)
    prod = KeyAuditLogger(Session, HASHER, notifier=notifier, production=True)
    prod_outcome = await prod.log_suspicious_activity(alert)

    assert dev_outcome.notified is False
    assert prod_outcome.notified is True
    assert notifier.sent == [alert]
    rows = await _rows(Session)
    assert [r.event_type for r in rows] == [AuditEventType.SUSPICIOUS_KEY_USAGE] * 2
    assert rows[0].payload["severity"] == "high"
    # stats only count key access rows
    assert await dev.get_key_usage_stats() == []


@pytest.mark.asyncio
async def test_storage_failure_is_contained():
    def broken_factory():
        raise RuntimeError("database is down")

    audit = KeyAuditLogger(broken_factory, HASHER)

    outcome = await audit.log_key_access(_event())

    assert outcome.persisted is False
    assert "database is down" in outcome.error
    assert await audit.get_key_usage_stats() == []


@pytest.mark.asyncio
async def test_slow_storage_times_out():
    class SlowSession:
        async def __aenter__(self):
            await asyncio.sleep(1)
            return self

        async def __aexit__(self, *exc):
            return False

    audit = KeyAuditLogger(lambda: SlowSession(), HASHER, timeout_seconds=0.05)

    outcome = await audit.log_suspicious_activity(
        SecurityAlert(key_type="auth", operation="login", reason="burst", severity=AlertSeverity.CRITICAL)
    )

    assert outcome.persisted is False
    assert outcome.error == "timeout"
