"""Keyed one-way hashing for the audit trail.

Operation identities persisted for statistics are stored as HMAC-SHA256
digests.  The HMAC key is derived from the root secret (``AUTH_SECRET``)
with a fixed context label so the root secret itself never keys anything
directly.
"""

from __future__ import annotations

import hashlib
import hmac

_CONTEXT = b"keyguard/audit-hash/v1"


class AuditHasher:
    def __init__(self, key: bytes) -> None:
        if not key:
            raise ValueError("hash key must not be empty")
        self._key = key

    @classmethod
    def from_secret(cls, root_secret: str) -> "AuditHasher":
        derived = hmac.new(root_secret.encode("utf-8"), _CONTEXT, hashlib.sha256).digest()
        return cls(derived)

    def digest(self, value: str) -> str:
        return hmac.new(self._key, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def fingerprint(self, secret: str, length: int = 12) -> str:
        """Short, non-reversible identifier for a credential, safe to log."""
        return self.digest(secret)[:length]

    def __repr__(self) -> str:
        return "AuditHasher(<redacted>)"
