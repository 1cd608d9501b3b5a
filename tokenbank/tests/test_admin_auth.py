"""
Operator authentication.

Tests:
- Legacy X-Admin-Key allowed in dev/test, blocked in prod unless opted in
- Bearer JWT with role ADMIN grants operator access
- X-User-Role is ignored once JWT_SECRET is configured
- Actor identity recorded in the audit log
"""
from tokenbank.core import auth
from tokenbank.core.config import settings
from tokenbank.features.audit.service import list_admin_audit


def _create(client, headers):
    resp = client.post("/api/payments/create", json={"plan_type": "P", "payment_method": "HUMO"}, headers=headers)
    assert resp.status_code == 201
    return resp.json()["payment"]


def test_legacy_key_allowed_in_test_env(client, admin_headers):
    resp = client.get("/api/payments/admin/pending", headers=admin_headers)
    assert resp.status_code == 200


def test_wrong_legacy_key_rejected(client):
    resp = client.get("/api/payments/admin/pending", headers={"X-Admin-Key": "nope"})
    assert resp.status_code == 403


def test_legacy_key_blocked_in_prod(client, admin_headers, monkeypatch):
    monkeypatch.setattr(settings, "ENVIRONMENT", "prod")
    monkeypatch.delenv("ALLOW_LEGACY_ADMIN_KEY", raising=False)
    resp = client.get("/api/payments/admin/pending", headers=admin_headers)
    assert resp.status_code == 403


def test_legacy_key_opt_in_for_prod(client, admin_headers, monkeypatch):
    monkeypatch.setattr(settings, "ENVIRONMENT", "prod")
    monkeypatch.setenv("ALLOW_LEGACY_ADMIN_KEY", "true")
    resp = client.get("/api/payments/admin/pending", headers=admin_headers)
    assert resp.status_code == 200


def test_admin_api_key_env_overrides_settings(client, monkeypatch):
    monkeypatch.setenv("ADMIN_API_KEY", "env-key")
    assert client.get("/api/payments/admin/pending", headers={"X-Admin-Key": "env-key"}).status_code == 200
    assert client.get("/api/payments/admin/pending", headers={"X-Admin-Key": "test-admin-key"}).status_code == 403


def test_jwt_user_and_operator(client, monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", "unit-test-secret")
    user_token = auth.create_access_token("jwt-buyer")
    admin_token = auth.create_access_token("jwt-admin", role=auth.ROLE_ADMIN)

    payment = _create(client, {"Authorization": f"Bearer {user_token}"})
    assert payment["user_id"] == "jwt-buyer"

    denied = client.post(
        f"/api/payments/admin/{payment['id']}/approve",
        headers={"Authorization": f"Bearer {user_token}"},
    )
    assert denied.status_code == 403

    approved = client.post(
        f"/api/payments/admin/{payment['id']}/approve",
        headers={"Authorization": f"Bearer {admin_token}"},
    )
    assert approved.status_code == 200
    assert approved.json()["payment"]["settled_by"] == "jwt-admin"

    audit = list_admin_audit(target_user_id="jwt-buyer", action="payment_approved")
    assert len(audit) == 1
    assert audit[0]["actor"] == "jwt-admin"
    assert audit[0]["target_resource"] == payment["id"]


def test_role_header_ignored_when_jwt_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", "unit-test-secret")
    resp = client.get(
        "/api/payments/admin/pending",
        headers={"X-User-Id": "sneaky", "X-User-Role": "ADMIN"},
    )
    assert resp.status_code == 403


def test_invalid_token_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", "unit-test-secret")
    resp = client.get("/api/tokens/balance", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "http_error"


def test_token_signed_with_other_secret_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET", "first-secret")
    token = auth.create_access_token("someone")
    monkeypatch.setattr(settings, "JWT_SECRET", "second-secret")
    resp = client.get("/api/tokens/balance", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_legacy_actor_identity_is_hashed(client, admin_headers):
    payment = _create(client, {"X-User-Id": "legacy-buyer"})
    resp = client.post(f"/api/payments/admin/{payment['id']}/reject", headers=admin_headers)
    settled_by = resp.json()["payment"]["settled_by"]
    assert settled_by.startswith("legacy:")
    assert "test-admin-key" not in settled_by
