"""Operator authentication for the admin key endpoints.

Token issuance is handled by Clerk; this module only verifies Clerk-issued
JWTs against the instance JWKS and decides whether the caller is an
operator allowed to rotate or inspect credentials.  An operator either
carries an ``admin`` role claim or has an email listed in ``ADMIN_EMAILS``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Dict

import requests
from fastapi import HTTPException, Request, status
from jose import jwt

from keyguard.core.config import settings, get_admin_emails

# JWKS cache.  Cleared and refetched once when an unknown kid shows up.
_clerk_jwks: Optional[Dict] = None


@dataclass(frozen=True)
class Operator:
    """Authenticated caller of an admin endpoint."""

    user_id: str
    email: Optional[str] = None
    roles: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_admin(self) -> bool:
        if "admin" in self.roles:
            return True
        return bool(self.email) and self.email.lower() in get_admin_emails()


DEV_OPERATOR = Operator(user_id="user_dev123", email="dev@example.com", roles=("admin",))


def get_clerk_jwks() -> Dict:
    """Fetch and cache the JWKS used to verify Clerk tokens.

    Raises an HTTP 500 if the endpoint is not configured, unreachable or
    returns an invalid payload.
    """
    global _clerk_jwks
    if _clerk_jwks is not None:
        return _clerk_jwks
    if not settings.CLERK_JWKS_URL:
        raise HTTPException(status_code=500, detail="CLERK_JWKS_URL is not configured")
    try:
        resp = requests.get(settings.CLERK_JWKS_URL, timeout=5)
        resp.raise_for_status()
        data = resp.json()
    except Exception as exc:
        raise HTTPException(status_code=500, detail=f"Failed to fetch JWKS: {exc}") from exc
    if not isinstance(data, dict) or "keys" not in data:
        raise HTTPException(status_code=500, detail="Invalid JWKS payload from Clerk")
    _clerk_jwks = data
    return data


def _find_key(kid: str) -> Optional[Dict]:
    jwks = get_clerk_jwks()
    return next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)


def decode_clerk_jwt(token: str) -> Dict:
    """Decode and verify a Clerk JWT.

    Audience and issuer claims are checked only when ``CLERK_JWT_AUDIENCE``
    / ``CLERK_JWT_ISSUER`` are configured.

    Raises:
        HTTPException: 401 if the token is malformed or invalid.
    """
    global _clerk_jwks
    try:
        header = jwt.get_unverified_header(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token header: {exc}") from exc
    kid = header.get("kid")
    if not kid:
        raise HTTPException(status_code=401, detail="Invalid Clerk token: missing kid header")
    key = _find_key(kid)
    if not key:
        # Signing key rotation: clear cache and retry once
        _clerk_jwks = None
        key = _find_key(kid)
        if not key:
            raise HTTPException(status_code=401, detail="Unknown signing key (kid) for Clerk token")
    decode_kwargs: Dict = {"algorithms": ["RS256"], "options": {}}
    if settings.CLERK_JWT_AUDIENCE:
        decode_kwargs["audience"] = settings.CLERK_JWT_AUDIENCE
    else:
        decode_kwargs["options"]["verify_aud"] = False
    if settings.CLERK_JWT_ISSUER:
        decode_kwargs["issuer"] = settings.CLERK_JWT_ISSUER
    try:
        return jwt.decode(token, key, **decode_kwargs)
    except Exception as exc:
        raise HTTPException(status_code=401, detail=f"Invalid Clerk token: {exc}") from exc


def operator_from_claims(payload: Dict) -> Operator:
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Invalid Clerk token: no sub claim")
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return Operator(user_id=str(sub), email=payload.get("email"), roles=tuple(str(r) for r in roles))


async def get_operator(request: Request) -> Operator:
    """Resolve and authorize the operator calling an admin endpoint."""
    if settings.DEV_AUTH_BYPASS:
        return DEV_OPERATOR
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Clerk JWT")
    token = auth_header.split(" ", 1)[1]
    operator = operator_from_claims(decode_clerk_jwt(token))
    if not operator.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Requires admin role")
    return operator
