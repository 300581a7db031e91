"""
Manual review workflow for payment requests (admin side).

Handles:
- Listing requests by status, pending badge count
- approve / reject as conditional pending -> terminal transitions
- Attaching reviewed evidence to an already-decided request

Every state change and its audit entry share one transaction. When two
reviewers race, the conditional update lets exactly one win; the other gets
PaymentAlreadyProcessedError.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fitbill.core.clock import normalize_now
from fitbill.core.errors import NotFoundError, PaymentAlreadyProcessedError, ValidationError
from fitbill.core.metrics import payment_reviews_total, pending_payment_requests
from fitbill.features.audit.service import record_audit_entry
from fitbill.features.entitlements.service import renew_entitlement
from fitbill.features.payments.config_provider import ConfigProvider, SqlConfigProvider
from fitbill.features.payments.models import AuditAction, PaymentRequest, PaymentStatus
from fitbill.features.payments.store import PaymentStore, open_store
from fitbill.features.plans.resolver import ResolvedPlan, resolve_plan

logger = logging.getLogger("fitbill.payments")

MAX_LIST_LIMIT = 500


def _parse_status_filter(status: Optional[str]) -> Optional[PaymentStatus]:
    if status is None or status.strip().lower() in ("", "all"):
        return None
    try:
        return PaymentStatus(status.strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown status filter: {status}", code="invalid_status")


def list_payment_requests(status: Optional[str] = "pending", limit: int = 200) -> List[PaymentRequest]:
    """Newest first; status is pending|approved|rejected|all."""
    status_filter = _parse_status_filter(status)
    limit = max(1, min(limit, MAX_LIST_LIMIT))
    with open_store("payments.list") as store:
        return store.list_payment_requests(status=status_filter, limit=limit)


def count_pending() -> int:
    with open_store("payments.count") as store:
        count = store.count_payment_requests(PaymentStatus.PENDING)
    pending_payment_requests.set(count)
    return count


def _load_pending(store: PaymentStore, request_id: str) -> PaymentRequest:
    request = store.get_payment_request(request_id)
    if request is None:
        raise NotFoundError(f"Payment request not found: {request_id}", code="payment_request_not_found")
    if request.status.is_terminal:
        raise PaymentAlreadyProcessedError(
            f"Payment request {request_id} is already {request.status.value}"
        )
    return request


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def resolve_request_plan(request: PaymentRequest, config: ConfigProvider) -> ResolvedPlan:
    """Tier and validity for a request's desired plan; shared by admin approval and checkouts."""
    label = request.desired_plan_tier.value
    entry = config.get_plan_catalog_entry(label)
    plan = resolve_plan(label, [entry] if entry else ())
    if not plan.tier.is_paid:
        raise ValidationError("Requested plan is not a paid tier", code="invalid_plan_tier")
    return plan


def approve_payment(
    request_id: str,
    actor_id: str,
    reviewed_evidence: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    config: Optional[ConfigProvider] = None,
) -> PaymentRequest:
    """
    Approve a pending request and renew the user's entitlement.

    Validity comes from the plan catalog entry for the desired tier, else
    the default validity period.

    Raises:
        NotFoundError: unknown request id
        PaymentAlreadyProcessedError: request is no longer pending
    """
    current = normalize_now(now)
    config = config or SqlConfigProvider()
    reviewed_evidence = _clean(reviewed_evidence)

    with open_store("payments.peek") as store:
        request = _load_pending(store, request_id)
    # Catalog is read outside the write transaction
    plan = resolve_request_plan(request, config)

    with open_store("payments.approve") as store:
        fields = {
            "status": PaymentStatus.APPROVED,
            "processed_at": current,
            "processed_by": actor_id,
        }
        if reviewed_evidence:
            fields["reviewed_evidence_reference"] = reviewed_evidence
        if not store.transition_payment_request(request_id, from_status=PaymentStatus.PENDING, fields=fields):
            raise PaymentAlreadyProcessedError(f"Payment request {request_id} was processed concurrently")

        expires_at = renew_entitlement(store, request.user_id, plan.tier, plan.validity_days, current)
        record_audit_entry(
            store,
            actor_id=actor_id,
            action=AuditAction.PAYMENT_APPROVED,
            entity_table="payment_requests",
            entity_id=request_id,
            target_user_id=request.user_id,
            details={
                "plan": plan.tier,
                "validity_days": plan.validity_days,
                "expires_at": expires_at,
                "evidence_reference": request.evidence_reference,
                "reviewed_evidence_reference": reviewed_evidence,
            },
            now=current,
        )
        updated = store.get_payment_request(request_id)

    payment_reviews_total.inc(labels={"decision": "approved"})
    logger.info(
        "payment.approved",
        extra={
            "payment_request_id": request_id,
            "actor_id": actor_id,
            "user_id": request.user_id,
            "event_type": "payment.approved",
        },
    )
    return updated


def reject_payment(
    request_id: str,
    actor_id: str,
    reason: Optional[str],
    reviewed_evidence: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> PaymentRequest:
    """Reject a pending request. The entitlement is never touched."""
    reason = _clean(reason)
    if not reason:
        raise ValidationError("A rejection reason is required", code="reason_required")
    current = normalize_now(now)
    reviewed_evidence = _clean(reviewed_evidence)

    with open_store("payments.reject") as store:
        request = _load_pending(store, request_id)
        fields = {
            "status": PaymentStatus.REJECTED,
            "processed_at": current,
            "processed_by": actor_id,
            "rejection_reason": reason,
        }
        if reviewed_evidence:
            fields["reviewed_evidence_reference"] = reviewed_evidence
        if not store.transition_payment_request(request_id, from_status=PaymentStatus.PENDING, fields=fields):
            raise PaymentAlreadyProcessedError(f"Payment request {request_id} was processed concurrently")

        record_audit_entry(
            store,
            actor_id=actor_id,
            action=AuditAction.PAYMENT_REJECTED,
            entity_table="payment_requests",
            entity_id=request_id,
            target_user_id=request.user_id,
            details={
                "plan": request.desired_plan_tier,
                "reason": reason,
                "evidence_reference": request.evidence_reference,
                "reviewed_evidence_reference": reviewed_evidence,
            },
            now=current,
        )
        updated = store.get_payment_request(request_id)

    payment_reviews_total.inc(labels={"decision": "rejected"})
    logger.info(
        "payment.rejected",
        extra={
            "payment_request_id": request_id,
            "actor_id": actor_id,
            "user_id": request.user_id,
            "event_type": "payment.rejected",
        },
    )
    return updated


def attach_reviewed_evidence(
    request_id: str,
    actor_id: str,
    reference: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> PaymentRequest:
    """Store the reviewer's evidence pointer on an approved/rejected request."""
    reference = _clean(reference)
    if not reference:
        raise ValidationError("An evidence reference is required", code="evidence_required")
    current = normalize_now(now)

    with open_store("payments.evidence") as store:
        request = store.get_payment_request(request_id)
        if request is None:
            raise NotFoundError(f"Payment request not found: {request_id}", code="payment_request_not_found")
        if not request.status.is_terminal:
            raise ValidationError(
                "Evidence is attached while approving or rejecting a pending request",
                code="request_pending",
            )
        store.update_payment_request(request_id, {"reviewed_evidence_reference": reference})
        record_audit_entry(
            store,
            actor_id=actor_id,
            action=AuditAction.EVIDENCE_ATTACHED,
            entity_table="payment_requests",
            entity_id=request_id,
            target_user_id=request.user_id,
            details={
                "previous_reference": request.reviewed_evidence_reference,
                "reviewed_evidence_reference": reference,
            },
            now=current,
        )
        return store.get_payment_request(request_id)
