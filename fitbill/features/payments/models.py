"""Payment request, ledger and audit records plus webhook outcome types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from fitbill.features.plans.resolver import PlanTier

SYSTEM_ACTOR = "system"
MANUAL_PROVIDER = "pix_manual"
PERFECTPAY_PROVIDER = "perfectpay"
MERCADOPAGO_PROVIDER = "mercadopago"

# R$ 1 billion; anything above is a malformed amount, not a sale
MAX_AMOUNT_CENTS = 100_000_000_000


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class AuditAction(str, Enum):
    PAYMENT_APPROVED = "payment_approved"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_APPLIED = "payment_applied"
    ADS_ACTIVATED = "ads_activated"
    EVIDENCE_ATTACHED = "evidence_attached"
    ENTITLEMENT_OVERRIDDEN = "entitlement_overridden"
    PLAN_DOWNGRADED = "plan_downgraded"


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED_STATUS = "ignored_status"
    IGNORED_UNKNOWN_USER = "ignored_unknown_user"
    ADS_ACTIVATED = "ads_activated"
    DUPLICATE = "duplicate"
    UNMAPPED_PLAN = "unmapped_plan"
    PAYMENT_FAILED = "payment_failed"
    IGNORED_UNKNOWN_REFERENCE = "ignored_unknown_reference"


WEBHOOK_MESSAGES = {
    WebhookOutcome.APPLIED: "Payment applied; subscription updated",
    WebhookOutcome.IGNORED_STATUS: "Ignored: sale status is not approved",
    WebhookOutcome.IGNORED_UNKNOWN_USER: "Ignored: no account for customer email",
    WebhookOutcome.ADS_ACTIVATED: "Ads add-on activated",
    WebhookOutcome.DUPLICATE: "Already processed",
    WebhookOutcome.UNMAPPED_PLAN: "Payment recorded; product does not map to a paid plan",
    WebhookOutcome.PAYMENT_FAILED: "Payment failed; request closed",
    WebhookOutcome.IGNORED_UNKNOWN_REFERENCE: "Ignored: no pending checkout for this payment",
}


@dataclass(frozen=True)
class PaymentRequest:
    id: str
    user_id: str
    provider: str
    desired_plan_tier: PlanTier
    status: PaymentStatus
    requested_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    evidence_reference: Optional[str] = None
    reviewed_evidence_reference: Optional[str] = None
    rejection_reason: Optional[str] = None
    external_transaction_id: Optional[str] = None
    amount_cents: Optional[int] = None
    # Joined from app_users for admin listings
    user_name: Optional[str] = None
    user_email: Optional[str] = None


@dataclass(frozen=True)
class AuditEntry:
    id: int
    actor_id: str
    action: str
    entity_table: str
    entity_id: Optional[str]
    target_user_id: Optional[str]
    details: Dict[str, Any]
    created_at: datetime
    actor_email: Optional[str] = None


@dataclass
class WebhookResult:
    """What the reconciler did with one inbound event."""
    outcome: WebhookOutcome
    provider: str
    transaction_id: Optional[str] = None
    user_id: Optional[str] = None
    plan_tier: Optional[PlanTier] = None
    expires_at: Optional[datetime] = None
    payment_request_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return WEBHOOK_MESSAGES[self.outcome]
