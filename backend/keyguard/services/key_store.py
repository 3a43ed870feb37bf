"""Process-wide store for sensitive credentials.

``SecureKeyStore`` holds exactly one live ``KeyRecord`` per ``KeyType`` for
the lifetime of the process.  Records are never deleted individually, only
replaced by ``rotate_key``, which validates the new value before swapping
it in.  A failed rotation leaves the previous credential untouched.

Each key type has its own lock: two rotations of the same type cannot
interleave, and readers of a type never observe a half-written record.
Different key types are independent.

The store is constructed once at startup (``SecureKeyStore.from_settings``)
and handed to ``KeySecurityManager``; it is not a module-level singleton.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Mapping, Optional, Union

from keyguard.core.config import Settings, get_stripe_secret_key, get_webhook_secret
from keyguard.core.exceptions import KeyNotFoundError, KeyValidationError, ValidationError
from keyguard.models.enums import KeyType

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 10
MIN_AUTH_SECRET_LENGTH = 32

KEY_PREFIXES: Dict[KeyType, str] = {
    KeyType.OPENAI: "sk-",
    KeyType.STRIPE: "sk_",
    KeyType.WEBHOOK: "whsec_",
}

_LABELS: Dict[KeyType, str] = {
    KeyType.OPENAI: "OpenAI key",
    KeyType.STRIPE: "Stripe key",
    KeyType.WEBHOOK: "Webhook secret",
    KeyType.AUTH: "Auth secret",
}


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class KeyRecord:
    key_type: KeyType
    value: str = field(repr=False)
    last_rotated_at: dt.datetime
    rotation_count: int = 0


def coerce_key_type(key_type: Union[KeyType, str]) -> KeyType:
    try:
        return KeyType(key_type)
    except ValueError:
        valid = ", ".join(k.value for k in KeyType)
        raise ValidationError(
            f"Invalid key type. Must be one of: {valid}",
            field_errors={"keyType": f"must be one of: {valid}"},
        ) from None


def key_format_issue(key_type: KeyType, value: Optional[str]) -> Optional[str]:
    """Return a description of why ``value`` is not a valid ``key_type`` key.

    ``None`` means the value passes every rule for its type.
    """
    label = _LABELS[key_type]
    if not value or len(value) < MIN_KEY_LENGTH:
        return f"{label} must be at least {MIN_KEY_LENGTH} characters long"
    prefix = KEY_PREFIXES.get(key_type)
    if prefix and not value.startswith(prefix):
        return f'{label} must start with "{prefix}"'
    if key_type is KeyType.AUTH and len(value) < MIN_AUTH_SECRET_LENGTH:
        return f"{label} must be at least {MIN_AUTH_SECRET_LENGTH} characters long"
    return None


def validate_key_format(key_type: Union[KeyType, str], value: Optional[str]) -> KeyType:
    """Raise ``ValidationError`` unless ``value`` is well-formed for ``key_type``."""
    kt = coerce_key_type(key_type)
    issue = key_format_issue(kt, value)
    if issue:
        raise ValidationError(issue, field_errors={"newKey": issue})
    return kt


class SecureKeyStore:
    """In-memory credential slots with validated, all-or-nothing rotation."""

    def __init__(
        self,
        initial: Optional[Mapping[Union[KeyType, str], Optional[str]]] = None,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._clock = clock
        self._records: Dict[KeyType, KeyRecord] = {}
        self._locks: Dict[KeyType, threading.Lock] = {kt: threading.Lock() for kt in KeyType}
        loaded_at = clock()
        for key_type, value in (initial or {}).items():
            if value:
                kt = coerce_key_type(key_type)
                # Loaded as-is; ``validate_keys`` reports malformed values.
                self._records[kt] = KeyRecord(key_type=kt, value=value, last_rotated_at=loaded_at)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "SecureKeyStore":
        """Load credentials from configuration (called once at startup)."""
        return cls(
            {
                KeyType.OPENAI: cfg.OPENAI_API_KEY,
                KeyType.STRIPE: get_stripe_secret_key(cfg),
                KeyType.WEBHOOK: get_webhook_secret(cfg),
                KeyType.AUTH: cfg.AUTH_SECRET,
            }
        )

    def configured_types(self) -> list[KeyType]:
        return [kt for kt in KeyType if kt in self._records]

    def get_key(self, key_type: Union[KeyType, str]) -> str:
        return self.get_record(key_type).value

    def get_record(self, key_type: Union[KeyType, str]) -> KeyRecord:
        kt = coerce_key_type(key_type)
        with self._locks[kt]:
            record = self._records.get(kt)
        if record is None:
            raise KeyNotFoundError(kt.value)
        return record

    def rotate_key(self, key_type: Union[KeyType, str], new_value: str) -> KeyRecord:
        """Replace the credential for ``key_type`` with ``new_value``.

        Raises:
            ValidationError: the new value fails its format rule; the
                previously stored credential stays in place.
        """
        kt = validate_key_format(key_type, new_value)
        with self._locks[kt]:
            previous = self._records.get(kt)
            if previous is None:
                record = KeyRecord(key_type=kt, value=new_value, last_rotated_at=self._clock(), rotation_count=1)
            else:
                record = replace(
                    previous,
                    value=new_value,
                    last_rotated_at=self._clock(),
                    rotation_count=previous.rotation_count + 1,
                )
            self._records[kt] = record
        logger.info("[KEY_ROTATION] %s key rotated (rotation #%d)", kt.value, record.rotation_count)
        return record

    def validation_issues(self) -> Dict[str, str]:
        """Map each stored key type failing its rule to the issue found."""
        issues: Dict[str, str] = {}
        for kt in KeyType:
            with self._locks[kt]:
                record = self._records.get(kt)
            if record is None:
                continue
            issue = key_format_issue(kt, record.value)
            if issue:
                issues[kt.value] = issue
        return issues

    def validate_keys(self) -> None:
        """Re-check every stored credential.

        Raises:
            KeyValidationError: listing every key type that fails.
        """
        issues = self.validation_issues()
        if issues:
            raise KeyValidationError(issues)

    def clear(self) -> None:
        """Drop every credential from memory (process shutdown)."""
        for kt in KeyType:
            with self._locks[kt]:
                self._records.pop(kt, None)
        logger.info("[SECURITY] All keys cleared from memory")
