"""
Admin-only payment review router.

Requires an admin (Bearer JWT with admin role, or legacy X-Admin-Key).
The authenticated actor id is what the audit log records.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from fitbill.api.payments import PaymentRequestOut
from fitbill.core.admin_auth import AdminActor, require_admin
from fitbill.core.errors import ValidationError
from fitbill.features.audit.service import MAX_AUDIT_LIMIT, list_audit_trail
from fitbill.features.entitlements.service import override_entitlement
from fitbill.features.payments.review import (
    approve_payment,
    attach_reviewed_evidence,
    count_pending,
    list_payment_requests,
    reject_payment,
)
from fitbill.features.plans.resolver import PlanTier

logger = logging.getLogger("fitbill.admin")

router = APIRouter(prefix="/v1/admin", tags=["admin"])


# ============================================================================
# Pydantic Models
# ============================================================================

class ApproveRequest(BaseModel):
    reviewed_evidence_reference: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = ""
    reviewed_evidence_reference: Optional[str] = None


class EvidenceRequest(BaseModel):
    reviewed_evidence_reference: str


class OverrideRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    plan_tier: str
    expires_at: Optional[datetime] = None
    reason: str = ""


class PendingCountResponse(BaseModel):
    pending: int


class AuditEntryOut(BaseModel):
    id: int
    actor_id: str
    actor_email: Optional[str] = None
    action: str
    entity_table: str
    entity_id: Optional[str] = None
    target_user_id: Optional[str] = None
    details: Dict[str, Any] = {}
    created_at: datetime


class EntitlementOut(BaseModel):
    user_id: str
    plan_tier: str
    plan_expires_at: Optional[datetime] = None


# ============================================================================
# Payment requests
# ============================================================================

@router.get("/payments", response_model=List[PaymentRequestOut])
def admin_list_payments(
    status: str = Query("pending", description="pending | approved | rejected | all"),
    limit: int = Query(200, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    return [PaymentRequestOut.from_record(r) for r in list_payment_requests(status, limit)]


@router.get("/payments/pending-count", response_model=PendingCountResponse)
def admin_pending_count(actor: AdminActor = Depends(require_admin)):
    return PendingCountResponse(pending=count_pending())


@router.post("/payments/{request_id}/approve", response_model=PaymentRequestOut)
def admin_approve_payment(
    request_id: str,
    body: Optional[ApproveRequest] = None,
    actor: AdminActor = Depends(require_admin),
):
    body = body or ApproveRequest()
    updated = approve_payment(request_id, actor.actor_id, body.reviewed_evidence_reference)
    return PaymentRequestOut.from_record(updated)


@router.post("/payments/{request_id}/reject", response_model=PaymentRequestOut)
def admin_reject_payment(
    request_id: str,
    body: RejectRequest,
    actor: AdminActor = Depends(require_admin),
):
    updated = reject_payment(request_id, actor.actor_id, body.reason, body.reviewed_evidence_reference)
    return PaymentRequestOut.from_record(updated)


@router.post("/payments/{request_id}/evidence", response_model=PaymentRequestOut)
def admin_attach_evidence(
    request_id: str,
    body: EvidenceRequest,
    actor: AdminActor = Depends(require_admin),
):
    updated = attach_reviewed_evidence(request_id, actor.actor_id, body.reviewed_evidence_reference)
    return PaymentRequestOut.from_record(updated)


# ============================================================================
# Audit trail and support overrides
# ============================================================================

@router.get("/audit", response_model=List[AuditEntryOut])
def admin_audit_trail(
    limit: int = Query(50, ge=1, le=MAX_AUDIT_LIMIT),
    actor: AdminActor = Depends(require_admin),
):
    return [
        AuditEntryOut(
            id=e.id,
            actor_id=e.actor_id,
            actor_email=e.actor_email,
            action=e.action,
            entity_table=e.entity_table,
            entity_id=e.entity_id,
            target_user_id=e.target_user_id,
            details=e.details,
            created_at=e.created_at,
        )
        for e in list_audit_trail(limit)
    ]


@router.post("/entitlements/override", response_model=EntitlementOut)
def admin_override_entitlement(body: OverrideRequest, actor: AdminActor = Depends(require_admin)):
    tier_label = body.plan_tier.strip().upper()
    if tier_label not in PlanTier.__members__:
        raise ValidationError(f"Unknown plan tier: {body.plan_tier}", code="invalid_plan_tier")
    updated = override_entitlement(
        body.user_id,
        PlanTier(tier_label),
        body.expires_at,
        actor_id=actor.actor_id,
        reason=body.reason,
    )
    logger.info(
        "entitlement.overridden",
        extra={"actor_id": actor.actor_id, "user_id": body.user_id, "event_type": "entitlement.overridden"},
    )
    return EntitlementOut(
        user_id=updated.user_id,
        plan_tier=updated.plan_tier.value,
        plan_expires_at=updated.plan_expires_at,
    )
