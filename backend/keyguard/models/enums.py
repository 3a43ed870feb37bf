"""Enumeration types used throughout the key security core.

Enumerations constrain the values stored in the audit trail and passed
through the admin API.  When adding a key type remember to add its format
rule in ``keyguard.services.key_store``.
"""

from enum import Enum


class KeyType(str, Enum):
    """Managed credential slots.  Exactly one live value per type."""

    OPENAI = "openai"
    STRIPE = "stripe"
    WEBHOOK = "webhook"
    AUTH = "auth"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEventType(str, Enum):
    """Discriminator stored with every audit row."""

    KEY_ACCESS = "KEY_ACCESS"
    SUSPICIOUS_KEY_USAGE = "SUSPICIOUS_KEY_USAGE"


class KeyStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    MISSING = "missing"
