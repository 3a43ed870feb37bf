"""
Input and payload sanitization utilities.

``sanitize_string`` cleans free-text operator input (rotation reasons).
``scrub_secrets`` removes credential-looking values from metadata before it
is written to the audit trail, which must never hold raw secrets.
"""

import re
from typing import Any, Optional

_SECRET_FIELD_RE = re.compile(r"(key|secret|token|password|authorization|credential)", re.IGNORECASE)
_SECRET_VALUE_RE = re.compile(r"^(sk[-_]|rk_|whsec_|Bearer\s)", re.IGNORECASE)
_INLINE_SECRET_RE = re.compile(r"\b(sk[-_]|rk_|whsec_)[A-Za-z0-9_\-]{4,}")
REDACTED = "[REDACTED]"


def sanitize_string(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    # Remove leading/trailing whitespace and control characters
    value = value.strip()
    value = re.sub(r'[\x00-\x1F\x7F]', '', value)
    # Escape HTML
    value = value.replace('<', '&lt;').replace('>', '&gt;')
    return value


def scrub_secrets(value: Any, _depth: int = 0) -> Any:
    """Return a copy of ``value`` with secret-looking entries redacted.

    Dict entries are redacted when the key name looks sensitive (``api_key``,
    ``token``...) or when the string value carries a known credential prefix.
    ``key_type`` and ``key_hash`` are descriptive, not secret, and pass through.
    """
    if _depth > 8:
        return REDACTED
    if isinstance(value, dict):
        cleaned = {}
        for k, v in value.items():
            name = str(k)
            if name not in ("key_type", "key_hash", "keyType") and _SECRET_FIELD_RE.search(name) and isinstance(v, str):
                cleaned[name] = REDACTED
            else:
                cleaned[name] = scrub_secrets(v, _depth + 1)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [scrub_secrets(v, _depth + 1) for v in value]
    if isinstance(value, str):
        if _SECRET_VALUE_RE.match(value):
            return REDACTED
        return _INLINE_SECRET_RE.sub(REDACTED, value)
    return value
