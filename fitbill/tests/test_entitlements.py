"""
Entitlement derivation and overrides.

The stored tier only counts while its expiry is in the future; every reader
goes through effective_tier/has_tier.
"""
from datetime import timedelta

import pytest
from sqlalchemy import insert, select

from fitbill.conftest import JWT_SECRET
from fitbill.core.database import admin_actions, entitlements, get_db_session
from fitbill.core.errors import NotFoundError, ValidationError
from fitbill.core.identity_auth import create_test_jwt
from fitbill.features.entitlements.models import Entitlement
from fitbill.features.entitlements.service import (
    ads_active,
    build_status,
    effective_tier,
    get_entitlement_status,
    has_tier,
    override_entitlement,
    renewed_expiry,
)
from fitbill.features.plans.resolver import PlanTier


def test_effective_tier_follows_expiry(now):
    active = Entitlement("u", PlanTier.ELITE, now + timedelta(seconds=1))
    lapsed = Entitlement("u", PlanTier.ELITE, now - timedelta(seconds=1))
    no_expiry = Entitlement("u", PlanTier.ADVANCE, None)

    assert effective_tier(active, now) is PlanTier.ELITE
    assert effective_tier(lapsed, now) is PlanTier.FREE
    assert effective_tier(no_expiry, now) is PlanTier.FREE


def test_ads_derivation(now):
    assert ads_active(Entitlement("u", ads_active=True, ads_expires_at=now + timedelta(days=1)), now)
    assert not ads_active(Entitlement("u", ads_active=True, ads_expires_at=now - timedelta(days=1)), now)
    assert not ads_active(Entitlement("u", ads_active=False, ads_expires_at=now + timedelta(days=1)), now)


def test_renewed_expiry_is_extend_only(now):
    active = Entitlement("u", PlanTier.ADVANCE, now + timedelta(days=12))
    lapsed = Entitlement("u", PlanTier.ADVANCE, now - timedelta(days=12))

    assert renewed_expiry(active, 30, now) == now + timedelta(days=42)
    assert renewed_expiry(lapsed, 30, now) == now + timedelta(days=30)
    assert renewed_expiry(Entitlement("u"), 30, now) == now + timedelta(days=30)


def test_status_days_left_and_banner(now):
    soon = build_status(Entitlement("u", PlanTier.ELITE, now + timedelta(days=6, hours=1)), now)
    assert soon.is_active
    assert soon.days_left == 7
    assert soon.expiring_soon

    later = build_status(Entitlement("u", PlanTier.ELITE, now + timedelta(days=20)), now)
    assert later.days_left == 20
    assert not later.expiring_soon

    lapsed = build_status(Entitlement("u", PlanTier.ELITE, now - timedelta(days=1)), now)
    assert lapsed.effective_tier is PlanTier.FREE
    assert lapsed.stored_tier is PlanTier.ELITE
    assert lapsed.days_left is None
    assert not lapsed.expiring_soon


def test_has_tier_reads_stored_row(seeded, now):
    with get_db_session() as session:
        session.execute(insert(entitlements).values(
            user_id="user-a", plan_tier="ADVANCE", plan_expires_at=now + timedelta(days=3),
        ))

    assert has_tier("user-a", PlanTier.ADVANCE, now)
    assert not has_tier("user-a", PlanTier.ELITE, now)
    assert not has_tier("user-a", PlanTier.ADVANCE, now + timedelta(days=4))
    assert has_tier("user-b", PlanTier.FREE, now)
    assert get_entitlement_status("user-b", now).effective_tier is PlanTier.FREE


def test_override_replaces_and_audits(seeded, now):
    with get_db_session() as session:
        session.execute(insert(entitlements).values(
            user_id="user-a", plan_tier="ELITE", plan_expires_at=now + timedelta(days=90),
        ))

    updated = override_entitlement(
        "user-a", PlanTier.ADVANCE, now + timedelta(days=5),
        actor_id="admin-1", reason="chargeback", now=now,
    )
    assert updated.plan_tier is PlanTier.ADVANCE
    assert updated.plan_expires_at == now + timedelta(days=5)

    with get_db_session() as session:
        row = session.execute(select(admin_actions)).fetchone()
    assert row.action == "entitlement_overridden"
    assert row.actor_id == "admin-1"
    assert row.details["previous_plan"] == "ELITE"
    assert row.details["reason"] == "chargeback"


def test_override_to_free_clears_expiry(seeded, now):
    updated = override_entitlement("user-a", PlanTier.FREE, now + timedelta(days=5),
                                   actor_id="admin-1", reason="refund", now=now)
    assert updated.plan_tier is PlanTier.FREE
    assert updated.plan_expires_at is None


@pytest.mark.parametrize(
    "tier,delta,reason",
    [
        (PlanTier.ELITE, None, "x"),
        (PlanTier.ELITE, timedelta(days=-1), "x"),
        (PlanTier.ELITE, timedelta(days=1), "  "),
    ],
)
def test_override_validation(seeded, now, tier, delta, reason):
    expires_at = now + delta if delta is not None else None
    with pytest.raises(ValidationError):
        override_entitlement("user-a", tier, expires_at, actor_id="admin-1", reason=reason, now=now)


def test_override_unknown_user(seeded, now):
    with pytest.raises(NotFoundError):
        override_entitlement("ghost", PlanTier.ELITE, now + timedelta(days=1),
                             actor_id="admin-1", reason="x", now=now)


def test_entitlement_endpoint(client, user_headers):
    resp = client.get("/api/entitlements/me", headers=user_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan_tier"] == "FREE"
    assert body["is_active"] is False
    assert body["days_left"] is None


def test_user_header_is_refused_in_prod(client, user_headers, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "ENVIRONMENT", "prod")
    resp = client.get("/api/entitlements/me", headers=user_headers)
    assert resp.status_code == 401


def test_bearer_identity_works_in_prod(client, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "ENVIRONMENT", "prod")
    token = create_test_jwt(sub="user-a", secret=JWT_SECRET)
    resp = client.get("/api/entitlements/me", headers={"Authorization": f"Bearer {token}", "X-User-Id": "user-b"})
    assert resp.status_code == 200
    assert resp.json()["user_id"] == "user-a"
