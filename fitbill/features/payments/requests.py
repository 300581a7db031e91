"""User-side manual payment requests (PIX transfer with uploaded proof)."""
import logging
from datetime import datetime
from typing import List, Optional

from fitbill.core.clock import normalize_now
from fitbill.core.errors import ConflictError, NotFoundError, ValidationError
from fitbill.features.payments.models import (
    MANUAL_PROVIDER,
    MAX_AMOUNT_CENTS,
    MERCADOPAGO_PROVIDER,
    PaymentRequest,
    PaymentStatus,
)
from fitbill.features.payments.store import open_store
from fitbill.features.plans.resolver import PlanTier

logger = logging.getLogger("fitbill.payments")


def _paid_tier(desired_plan_tier: str) -> PlanTier:
    tier = PlanTier.parse(desired_plan_tier)
    if not tier.is_paid:
        raise ValidationError("desired_plan_tier must be ADVANCE or ELITE", code="invalid_plan_tier")
    return tier


def _check_amount(amount_cents: Optional[int]) -> None:
    if amount_cents is not None and not 0 <= amount_cents <= MAX_AMOUNT_CENTS:
        raise ValidationError("amount_cents is out of range", code="invalid_amount")


def submit_payment_request(
    user_id: str,
    desired_plan_tier: str,
    evidence_reference: Optional[str],
    amount_cents: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> PaymentRequest:
    """
    Create a PENDING manual request for an admin to review.

    Raises:
        ValidationError: tier is not ADVANCE/ELITE, or evidence is missing
        NotFoundError: unknown user
        ConflictError: the user already has a pending request
    """
    tier = _paid_tier(desired_plan_tier)
    evidence_reference = (evidence_reference or "").strip()
    if not evidence_reference:
        raise ValidationError("evidence_reference is required", code="evidence_required")
    _check_amount(amount_cents)
    current = normalize_now(now)

    with open_store("payments.submit") as store:
        if not store.user_exists(user_id):
            raise NotFoundError(f"User not found: {user_id}", code="user_not_found")
        if store.has_pending_request(user_id, MANUAL_PROVIDER):
            raise ConflictError("A payment request is already awaiting review", code="request_pending")
        request_id = store.insert_payment_request(
            user_id=user_id,
            provider=MANUAL_PROVIDER,
            desired_plan_tier=tier,
            status=PaymentStatus.PENDING,
            requested_at=current,
            evidence_reference=evidence_reference,
            amount_cents=amount_cents,
        )
        created = store.get_payment_request(request_id)

    logger.info(
        "payment.submitted",
        extra={"user_id": user_id, "payment_request_id": request_id, "event_type": "payment.submitted"},
    )
    return created


def list_user_payment_requests(user_id: str, limit: int = 50) -> List[PaymentRequest]:
    with open_store("payments.history") as store:
        return store.list_payment_requests(user_id=user_id, limit=max(1, min(limit, 200)))


def open_checkout(
    user_id: str,
    desired_plan_tier: str,
    amount_cents: Optional[int] = None,
    *,
    provider: str = MERCADOPAGO_PROVIDER,
    now: Optional[datetime] = None,
) -> PaymentRequest:
    """
    Create the PENDING request a provider checkout settles.

    Its id is the external_reference handed to the provider; the provider's
    webhook later moves it to approved or rejected.
    """
    tier = _paid_tier(desired_plan_tier)
    _check_amount(amount_cents)
    current = normalize_now(now)

    with open_store("payments.checkout") as store:
        if not store.user_exists(user_id):
            raise NotFoundError(f"User not found: {user_id}", code="user_not_found")
        request_id = store.insert_payment_request(
            user_id=user_id,
            provider=provider,
            desired_plan_tier=tier,
            status=PaymentStatus.PENDING,
            requested_at=current,
            amount_cents=amount_cents,
        )
        created = store.get_payment_request(request_id)

    logger.info(
        "payment.checkout_opened",
        extra={"user_id": user_id, "payment_request_id": request_id, "provider": provider},
    )
    return created
