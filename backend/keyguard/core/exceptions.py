"""Exception taxonomy for the key security core.

``LimitExceeded`` is intentionally absent: a rejected rate-limit check is a
normal ``RateLimitResult`` with ``ok=False`` and the HTTP layer decides how
to respond.
"""

from __future__ import annotations

from typing import Dict, Optional


class KeyGuardError(Exception):
    """Base class for errors raised by the key security core."""


class ValidationError(KeyGuardError, ValueError):
    """Rejected key format or rotation input.  Previous state is unchanged."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field_errors = field_errors or {}


class KeyValidationError(KeyGuardError):
    """One or more stored credentials fail their format rule.

    ``failures`` maps each failing key type to a human readable issue.
    """

    def __init__(self, failures: Dict[str, str]) -> None:
        self.failures = dict(failures)
        summary = ", ".join(f"{k}: {v}" for k, v in sorted(self.failures.items()))
        super().__init__(f"Security validation failed: {summary}")

    @property
    def key_types(self) -> list[str]:
        return sorted(self.failures)


class KeyNotFoundError(KeyGuardError, LookupError):
    def __init__(self, key_type: str) -> None:
        super().__init__(f"Key {key_type} not found")
        self.key_type = key_type


class BackendUnavailable(KeyGuardError):
    """A remote dependency (rate-limit store, audit storage) is unreachable.

    Never surfaced to end callers; converted into a degraded result.
    """

    def __init__(self, backend: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{backend} unavailable{detail}")
        self.backend = backend
        self.cause = cause
