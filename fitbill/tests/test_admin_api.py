"""
Admin authentication and the admin payment routes.

Tests:
- Legacy X-Admin-Key allowed outside prod, refused in prod unless mode="legacy"
- Bearer JWT with admin role; non-admin and expired tokens refused
- The authenticated actor lands in the audit log
- 503 when no admin credential is configured at all
"""
from datetime import timedelta

import pytest

from fitbill.conftest import JWT_SECRET
from fitbill.core.clock import utcnow
from fitbill.core.identity_auth import create_test_jwt
from fitbill.features.payments.requests import submit_payment_request


@pytest.fixture
def pending(seeded, now):
    return submit_payment_request("user-a", "ELITE", "receipts/a.png", 9990, now=now)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_legacy_key_allowed_outside_prod(client, admin_headers):
    resp = client.get("/v1/admin/payments/pending-count", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json() == {"pending": 0}


def test_wrong_legacy_key(client):
    resp = client.get("/v1/admin/payments/pending-count", headers={"X-Admin-Key": "guess"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "admin_unauthorized"


def test_legacy_key_blocked_in_prod(client, admin_headers, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "ENVIRONMENT", "prod")
    resp = client.get("/v1/admin/payments/pending-count", headers=admin_headers)
    assert resp.status_code == 401


def test_legacy_mode_allows_key_in_prod(client, admin_headers, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "ENVIRONMENT", "prod")
    monkeypatch.setattr(test_settings, "ADMIN_AUTH_MODE", "legacy")
    resp = client.get("/v1/admin/payments/pending-count", headers=admin_headers)
    assert resp.status_code == 200


def test_jwt_mode_ignores_legacy_key(client, admin_headers, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "ADMIN_AUTH_MODE", "jwt")
    resp = client.get("/v1/admin/payments/pending-count", headers=admin_headers)
    assert resp.status_code == 401


def test_admin_jwt_allowed(client, admin_jwt):
    resp = client.get("/v1/admin/payments", headers=_bearer(admin_jwt))
    assert resp.status_code == 200
    assert resp.json() == []


def test_non_admin_jwt_refused(client):
    token = create_test_jwt(sub="user-a", email="a@x.com", role="member", secret=JWT_SECRET)
    resp = client.get("/v1/admin/payments", headers=_bearer(token))
    assert resp.status_code == 401


def test_expired_jwt_refused(client):
    token = create_test_jwt(sub="admin-1", role="admin", exp_minutes=-5, secret=JWT_SECRET)
    resp = client.get("/v1/admin/payments", headers=_bearer(token))
    assert resp.status_code == 401


def test_unconfigured_admin_auth_is_503(client, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "ADMIN_KEY", None)
    monkeypatch.setattr(test_settings, "IDENTITY_JWT_SECRET", None)
    resp = client.get("/v1/admin/payments")
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "admin_auth_unconfigured"


def test_approve_records_jwt_actor(client, admin_jwt, pending):
    resp = client.post(f"/v1/admin/payments/{pending.id}/approve", headers=_bearer(admin_jwt))
    assert resp.status_code == 200
    assert resp.json()["status"] == "approved"
    assert resp.json()["processed_by"] == "admin-1"

    audit = client.get("/v1/admin/audit", headers=_bearer(admin_jwt)).json()
    assert audit[0]["action"] == "payment_approved"
    assert audit[0]["actor_id"] == "admin-1"
    assert audit[0]["actor_email"] == "admin@fitbill.app"

    again = client.post(f"/v1/admin/payments/{pending.id}/approve", headers=_bearer(admin_jwt))
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "already_processed"


def test_legacy_actor_is_hashed(client, admin_headers, pending):
    client.post(
        f"/v1/admin/payments/{pending.id}/reject",
        headers=admin_headers,
        json={"reason": "comprovante ilegível"},
    )
    audit = client.get("/v1/admin/audit", headers=admin_headers).json()
    assert audit[0]["actor_id"].startswith("legacy:")
    assert "test-admin-key" not in audit[0]["actor_id"]


def test_reject_without_reason_is_400(client, admin_headers, pending):
    resp = client.post(f"/v1/admin/payments/{pending.id}/reject", headers=admin_headers, json={})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "reason_required"


def test_listing_filters(client, admin_headers, pending):
    resp = client.get("/v1/admin/payments?status=pending", headers=admin_headers)
    assert [r["id"] for r in resp.json()] == [pending.id]
    assert resp.json()[0]["user_name"] == "Ana"

    assert client.get("/v1/admin/payments?status=approved", headers=admin_headers).json() == []
    assert client.get("/v1/admin/payments?status=weird", headers=admin_headers).status_code == 400


def test_override_endpoint(client, admin_headers):
    expires_at = (utcnow() + timedelta(days=30)).isoformat()
    resp = client.post(
        "/v1/admin/entitlements/override",
        headers=admin_headers,
        json={"user_id": "user-b", "plan_tier": "elite", "expires_at": expires_at, "reason": "parceria"},
    )
    assert resp.status_code == 200
    assert resp.json()["plan_tier"] == "ELITE"

    bad = client.post(
        "/v1/admin/entitlements/override",
        headers=admin_headers,
        json={"user_id": "user-b", "plan_tier": "gold", "reason": "x"},
    )
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "invalid_plan_tier"
