"""SQLAlchemy ORM models for the audit trail.

``audit_log`` is append-only: rows are inserted by
``keyguard.services.audit_service.KeyAuditLogger`` and never updated.
``key_type``, ``success`` and ``response_time_ms`` are denormalised out of
the JSON payload so usage statistics can be aggregated portably.
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Enum,
    Float,
    JSON,
    Index,
)

from keyguard.core.database import Base
from .enums import AuditEventType


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class AuditLog(Base):
    """One key access or security alert."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False)
    event_type = Column(Enum(AuditEventType), nullable=False, index=True)
    key_type = Column(String, nullable=True)
    success = Column(Boolean, nullable=True)
    response_time_ms = Column(Float, nullable=True)
    # ``metadata`` is reserved on declarative classes, hence the attribute name
    payload = Column("metadata", JSON, nullable=False, default=dict)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_log_event_key_created", "event_type", "key_type", "created_at"),
    )
