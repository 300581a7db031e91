"""User-side manual payment requests."""
import pytest

from fitbill.core.errors import ConflictError, NotFoundError, ValidationError
from fitbill.features.payments.models import MANUAL_PROVIDER, MAX_AMOUNT_CENTS, MERCADOPAGO_PROVIDER, PaymentStatus
from fitbill.features.payments.requests import list_user_payment_requests, open_checkout, submit_payment_request
from fitbill.features.payments.review import reject_payment
from fitbill.features.plans.resolver import PlanTier


def test_submit_creates_pending_manual_request(seeded, now):
    created = submit_payment_request("user-a", "elite", " receipts/a.png ", 9990, now=now)

    assert created.status is PaymentStatus.PENDING
    assert created.provider == MANUAL_PROVIDER
    assert created.desired_plan_tier is PlanTier.ELITE
    assert created.evidence_reference == "receipts/a.png"
    assert created.external_transaction_id is None


@pytest.mark.parametrize("tier", ["FREE", "gold", ""])
def test_only_paid_tiers_can_be_requested(seeded, now, tier):
    with pytest.raises(ValidationError):
        submit_payment_request("user-a", tier, "receipts/a.png", now=now)


def test_evidence_is_required(seeded, now):
    with pytest.raises(ValidationError):
        submit_payment_request("user-a", "ADVANCE", "  ", now=now)


def test_one_pending_request_per_user(seeded, now):
    first = submit_payment_request("user-a", "ADVANCE", "r/1.png", now=now)
    with pytest.raises(ConflictError):
        submit_payment_request("user-a", "ELITE", "r/2.png", now=now)

    reject_payment(first.id, "admin-1", "ilegível", now=now)
    again = submit_payment_request("user-a", "ELITE", "r/2.png", now=now)
    assert again.status is PaymentStatus.PENDING


def test_unknown_user(seeded, now):
    with pytest.raises(NotFoundError):
        submit_payment_request("nobody", "ELITE", "r/1.png", now=now)


def test_history_is_scoped_to_user(seeded, now):
    submit_payment_request("user-a", "ELITE", "r/a.png", now=now)
    submit_payment_request("user-b", "ADVANCE", "r/b.png", now=now)

    history = list_user_payment_requests("user-a")
    assert [r.user_id for r in history] == ["user-a"]


def test_submit_and_list_over_http(client, user_headers):
    resp = client.post(
        "/api/payments/requests",
        headers=user_headers,
        json={"desired_plan_tier": "ELITE", "evidence_reference": "receipts/a.png"},
    )
    assert resp.status_code == 201
    assert resp.json()["status"] == "pending"

    conflict = client.post(
        "/api/payments/requests",
        headers=user_headers,
        json={"desired_plan_tier": "ADVANCE", "evidence_reference": "receipts/b.png"},
    )
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "request_pending"

    history = client.get("/api/payments/requests", headers=user_headers)
    assert history.status_code == 200
    assert len(history.json()) == 1


@pytest.mark.parametrize("amount", [-1, MAX_AMOUNT_CENTS + 1])
def test_amount_must_be_in_range(seeded, now, amount):
    with pytest.raises(ValidationError):
        submit_payment_request("user-a", "ELITE", "r/1.png", amount, now=now)
    with pytest.raises(ValidationError):
        open_checkout("user-a", "ELITE", amount, now=now)


def test_oversized_amount_over_http_is_400(client, user_headers):
    resp = client.post(
        "/api/payments/requests",
        headers=user_headers,
        json={
            "desired_plan_tier": "ELITE",
            "evidence_reference": "receipts/a.png",
            "amount_cents": 2**63,
        },
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_checkout_is_a_pending_mercadopago_request(seeded, now):
    created = open_checkout("user-a", "advance", 4990, now=now)

    assert created.status is PaymentStatus.PENDING
    assert created.provider == MERCADOPAGO_PROVIDER
    assert created.desired_plan_tier is PlanTier.ADVANCE
    assert created.evidence_reference is None
    with pytest.raises(ValidationError):
        open_checkout("user-a", "FREE", now=now)
    with pytest.raises(NotFoundError):
        open_checkout("nobody", "ELITE", now=now)
