from __future__ import annotations

import datetime as dt

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from keyguard.api.error_handlers import register_exception_handlers
from keyguard.api.routes.admin_keys import router as admin_router
from keyguard.api.routes.health import router as health_router
from keyguard.core.security import Operator, get_operator
from keyguard.models.schemas import KeyUsageStats
from keyguard.services.audit_service import AuditOutcome
from keyguard.services.key_security import KeySecurityManager
from keyguard.services.key_store import SecureKeyStore
from keyguard.services.rate_limit import InMemoryRateLimitStore, RateLimiter
from keyguard.utils.hashing import AuditHasher

GOOD = {
    "openai": "sk-test-openai-0000",
    "stripe": "sk_test_stripe_0000",
    "webhook": "whsec_test_0000",
    "auth": "a" * 32,
}
ADMIN = Operator(user_id="admin_1", email="ops@example.com", roles=("admin",))


class DummyAudit:
    def __init__(self):
        self.events = []
        self.alerts = []

    async def log_key_access(self, event):
        self.events.append(event)
        return AuditOutcome(persisted=True)

    async def log_suspicious_activity(self, alert):
        self.alerts.append(alert)
        return AuditOutcome(persisted=True)

    async def get_key_usage_stats(self, key_type=None, days=30):
        return [
            KeyUsageStats(
                key_type="openai",
                total_requests=12,
                successful_requests=11,
                avg_response_time=180.0,
                last_used=dt.datetime(2026, 1, 2, tzinfo=dt.timezone.utc),
            )
        ]


def _build_app(values=None, authenticated=True):
    audit = DummyAudit()
    manager = KeySecurityManager(SecureKeyStore(GOOD if values is None else values), audit, AuditHasher.from_secret("route-tests"))
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(health_router)
    app.include_router(admin_router)
    app.state.rate_limiter = RateLimiter(InMemoryRateLimitStore())
    app.state.key_manager = manager
    app.state.audit_logger = audit
    if authenticated:
        app.dependency_overrides[get_operator] = lambda: ADMIN
    return app, manager, audit


@pytest.fixture
def app_client():
    app, manager, audit = _build_app()
    return TestClient(app), manager, audit


def test_rotate_key_happy_path(app_client):
    client, manager, audit = app_client
    resp = client.post(
        "/admin/rotate-keys",
        json={"keyType": "openai", "newKey": "sk-new-openai-key-123", "reason": "scheduled"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["rotatedBy"] == "admin_1"
    assert "rotatedAt" in body
    assert manager.get_key("openai") == "sk-new-openai-key-123"
    assert audit.events[-1].operation == "key_rotation"
    assert audit.events[-1].ip_address == "testclient"


def test_rotate_key_rejects_bad_format(app_client):
    client, manager, audit = app_client
    resp = client.post("/admin/rotate-keys", json={"keyType": "webhook", "newKey": "not-a-webhook-secret"})
    assert resp.status_code == 400
    body = resp.json()
    assert "whsec_" in body["error"]
    assert "newKey" in body["fieldErrors"]
    assert manager.get_key("webhook") == GOOD["webhook"]
    assert audit.events[-1].success is False


def test_rotate_key_rejects_unknown_type_and_missing_fields(app_client):
    client, _, _ = app_client
    resp = client.post("/admin/rotate-keys", json={"keyType": "github"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid request data"
    assert set(body["fieldErrors"]) == {"keyType", "newKey"}


def test_rotate_key_is_rate_limited(app_client):
    client, _, _ = app_client
    for _ in range(10):
        assert client.post("/admin/rotate-keys", json={}).status_code == 400
    resp = client.post("/admin/rotate-keys", json={})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1


def test_key_status_all_valid(app_client):
    client, _, _ = app_client
    resp = client.get("/admin/rotate-keys")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["validatedBy"] == "admin_1"
    assert body["keyStatus"] == {"openai": "valid", "stripe": "valid", "webhook": "valid", "auth": "valid"}
    assert body["rotationDue"] == []
    assert "lastValidated" in body


def test_key_status_returns_503_when_a_key_is_invalid():
    app, _, _ = _build_app(values={**GOOD, "auth": "short-auth-secret"})
    resp = TestClient(app).get("/admin/rotate-keys")
    assert resp.status_code == 503
    body = resp.json()
    assert body["success"] is False
    assert body["keyStatus"]["auth"] == "invalid"
    assert "auth" in body["issues"]


def test_key_monitoring(app_client):
    client, manager, _ = app_client
    client.post("/admin/rotate-keys", json={"keyType": "stripe", "newKey": "sk_test_rotated_0001"})
    resp = client.get("/admin/key-monitoring", params={"days": 7})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    data = body["data"]
    assert data["keyUsageStats"]["openai"]["totalRequests"] == 12
    assert data["recentEvents"][0]["operation"] == "key_rotation"
    assert data["securityAlerts"] == []
    assert data["summary"]["totalKeys"] == 4
    assert data["summary"]["activeKeys"] == 4
    assert "generatedAt" in body


def test_key_monitoring_rejects_bad_days(app_client):
    client, _, _ = app_client
    assert client.get("/admin/key-monitoring", params={"days": 0}).status_code == 422


def test_admin_routes_require_auth(monkeypatch):
    from keyguard.core import config as cfg

    monkeypatch.setattr(cfg.settings, "DEV_AUTH_BYPASS", False)
    app, _, _ = _build_app(authenticated=False)
    client = TestClient(app)
    assert client.get("/admin/rotate-keys").status_code == 401
    assert client.post("/admin/rotate-keys", json={}).status_code == 401


def test_health_reports_backend(app_client):
    client, _, _ = app_client
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["rateLimitBackend"] == "memory"
    assert resp.json()["status"] == "healthy"


def test_spoofed_forwarded_for_does_not_reset_ip_budget(app_client):
    client, _, _ = app_client
    codes = [
        client.post("/admin/rotate-keys", json={}, headers={"X-Forwarded-For": f"203.0.113.{i}"}).status_code
        for i in range(12)
    ]
    assert codes[:10] == [400] * 10
    assert codes[10:] == [429, 429]


def test_forwarded_for_is_honoured_from_trusted_proxy(monkeypatch):
    from keyguard.api.dependencies import client_ip
    from keyguard.core import config as cfg
    from starlette.requests import Request

    def _request(peer):
        scope = {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": [(b"x-forwarded-for", b"198.51.100.7, 10.0.0.1")],
            "client": (peer, 5000),
        }
        return Request(scope)

    monkeypatch.setattr(cfg.settings, "TRUSTED_PROXIES", ["10.0.0.0/8"])
    assert client_ip(_request("10.1.2.3")) == "198.51.100.7"
    assert client_ip(_request("203.0.113.9")) == "203.0.113.9"
