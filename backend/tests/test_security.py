from __future__ import annotations

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from keyguard.core import config as cfg
from keyguard.core import security
from keyguard.core.security import DEV_OPERATOR, Operator, get_operator, operator_from_claims


def _request(headers=None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/admin/rotate-keys", "headers": raw})


def test_operator_from_claims_reads_roles():
    op = operator_from_claims({"sub": "user_1", "email": "a@example.com", "roles": "admin"})
    assert op == Operator(user_id="user_1", email="a@example.com", roles=("admin",))
    assert op.is_admin is True


def test_operator_from_claims_requires_sub():
    with pytest.raises(HTTPException) as exc:
        operator_from_claims({"email": "a@example.com"})
    assert exc.value.status_code == 401


def test_admin_by_email_allowlist(monkeypatch):
    monkeypatch.setattr(cfg.settings, "ADMIN_EMAILS", "Ops@Example.com, sec@example.com")
    assert Operator(user_id="u", email="ops@example.com").is_admin is True
    assert Operator(user_id="u", email="dev@example.com").is_admin is False
    assert Operator(user_id="u").is_admin is False


@pytest.mark.asyncio
async def test_get_operator_dev_bypass(monkeypatch):
    monkeypatch.setattr(cfg.settings, "DEV_AUTH_BYPASS", True)
    assert await get_operator(_request()) is DEV_OPERATOR


@pytest.mark.asyncio
async def test_get_operator_missing_token(monkeypatch):
    monkeypatch.setattr(cfg.settings, "DEV_AUTH_BYPASS", False)
    with pytest.raises(HTTPException) as exc:
        await get_operator(_request())
    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_get_operator_rejects_non_admin(monkeypatch):
    monkeypatch.setattr(cfg.settings, "DEV_AUTH_BYPASS", False)
    monkeypatch.setattr(cfg.settings, "ADMIN_EMAILS", "")
    monkeypatch.setattr(security, "decode_clerk_jwt", lambda token: {"sub": "user_2", "email": "x@example.com", "roles": []})
    with pytest.raises(HTTPException) as exc:
        await get_operator(_request({"Authorization": "Bearer token"}))
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_get_operator_accepts_admin(monkeypatch):
    monkeypatch.setattr(cfg.settings, "DEV_AUTH_BYPASS", False)
    monkeypatch.setattr(security, "decode_clerk_jwt", lambda token: {"sub": "user_3", "roles": ["admin"]})
    op = await get_operator(_request({"Authorization": "Bearer token"}))
    assert op.user_id == "user_3"
