"""Pydantic schemas for audit records and the admin API.

The domain schemas (``KeyUsageEvent``, ``SecurityAlert``) are write-once
records handed to the audit logger.  The API schemas use camelCase aliases
so responses keep the shape existing dashboard clients expect, while
Python code works with snake_case attributes.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import AlertSeverity, KeyStatus, KeyType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Domain records


class KeyUsageEvent(BaseModel):
    """Single use of a sensitive credential.  Immutable once created."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    key_type: str
    operation: str
    user_id: str = "system"
    success: bool
    timestamp: datetime = Field(default_factory=utcnow)
    response_time_ms: Optional[float] = None
    error_message: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    # Free-form context (rotation reason, key fingerprint); scrubbed before persisting
    details: Dict[str, Any] = Field(default_factory=dict)


class SecurityAlert(BaseModel):
    """Anomaly raised by ``KeySecurityManager``.

    ``resolved`` is the only field a later resolution workflow changes.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")
    key_type: str
    operation: str
    user_id: str = "system"
    reason: str
    severity: AlertSeverity
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    resolved: bool = False


class KeyUsageStats(BaseModel):
    """Aggregated usage of one key type over a trailing window."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key_type: str
    total_requests: int
    successful_requests: int
    avg_response_time: Optional[float] = None
    last_used: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return round(100.0 * self.successful_requests / self.total_requests, 2)


# ---------------------------------------------------------------------------
# API request/response schemas


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class KeyRotationRequest(_CamelModel):
    key_type: KeyType
    new_key: str = Field(min_length=1, repr=False)
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("reason", mode="before")
    def sanitize_reason(cls, v):
        from keyguard.utils.sanitization import sanitize_string
        return sanitize_string(v) if v is not None else v


class KeyRotationResponse(_CamelModel):
    success: bool = True
    message: str
    rotated_at: datetime
    rotated_by: str


class KeyStatusReport(_CamelModel):
    """Aggregate credential health returned by ``validate_keys``."""

    key_status: Dict[str, KeyStatus]
    issues: Dict[str, str] = Field(default_factory=dict)
    rotation_due: List[str] = Field(default_factory=list)
    last_validated: datetime = Field(default_factory=utcnow)

    @property
    def all_valid(self) -> bool:
        return all(s != KeyStatus.INVALID for s in self.key_status.values())


class KeyStatusResponse(KeyStatusReport):
    success: bool
    validated_by: str


class MonitoringSummary(_CamelModel):
    total_keys: int
    active_keys: int
    open_alerts: int
    last_validated: datetime


class MonitoringData(_CamelModel):
    key_usage_stats: Dict[str, KeyUsageStats]
    recent_events: List[KeyUsageEvent]
    security_alerts: List[SecurityAlert]
    summary: MonitoringSummary


class MonitoringResponse(_CamelModel):
    success: bool = True
    data: MonitoringData
    generated_at: datetime = Field(default_factory=utcnow)
