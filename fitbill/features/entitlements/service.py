"""
fitbill/features/entitlements/service.py

Entitlement reads and writes.

Handles:
- Read-time derivation: a lapsed expiry means FREE, whatever plan_tier says
- Renewal with extend-only expiry (shared by webhook and manual review)
- Explicit admin override (replace, not renew)
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from fitbill.core.clock import normalize_now
from fitbill.core.config import settings
from fitbill.core.errors import NotFoundError, ValidationError
from fitbill.features.audit.service import record_audit_entry
from fitbill.features.entitlements.models import Entitlement, EntitlementStatus
from fitbill.features.payments.models import AuditAction
from fitbill.features.payments.store import PaymentStore, open_store
from fitbill.features.plans.resolver import PlanTier


logger = logging.getLogger("fitbill.entitlements")


def is_plan_active(entitlement: Entitlement, now: Optional[datetime] = None) -> bool:
    if not entitlement.plan_tier.is_paid:
        return False
    expires_at = entitlement.plan_expires_at
    return expires_at is not None and expires_at > normalize_now(now)


def effective_tier(entitlement: Entitlement, now: Optional[datetime] = None) -> PlanTier:
    """The tier every gating check must use."""
    return entitlement.plan_tier if is_plan_active(entitlement, now) else PlanTier.FREE


def ads_active(entitlement: Entitlement, now: Optional[datetime] = None) -> bool:
    expires_at = entitlement.ads_expires_at
    return bool(entitlement.ads_active) and expires_at is not None and expires_at > normalize_now(now)


def renewed_expiry(entitlement: Entitlement, validity_days: int, now: Optional[datetime] = None) -> datetime:
    """Extend-only: remaining time on an active plan is never lost."""
    current = normalize_now(now)
    base = current
    if is_plan_active(entitlement, current) and entitlement.plan_expires_at > current:
        base = entitlement.plan_expires_at
    return base + timedelta(days=validity_days)


def renew_entitlement(
    store: PaymentStore,
    user_id: str,
    tier: PlanTier,
    validity_days: int,
    now: datetime,
) -> datetime:
    """
    Grant `tier` for `validity_days` on top of any time still remaining.

    Runs inside the caller's transaction; the caller writes the audit entry.
    Returns the new expiry.
    """
    if not tier.is_paid:
        raise ValidationError("Only paid tiers can be renewed", code="invalid_plan_tier")
    if validity_days <= 0:
        raise ValidationError("validity_days must be positive", code="invalid_validity")

    current = store.get_entitlement(user_id)
    expires_at = renewed_expiry(current, validity_days, now)
    store.upsert_entitlement(user_id, tier, expires_at, now=now)
    logger.info(
        "entitlement.renewed",
        extra={
            "user_id": user_id,
            "event_type": "entitlement.renewed",
            "outcome": f"{current.plan_tier.value}->{tier.value}",
        },
    )
    return expires_at


def _days_left(expires_at: Optional[datetime], now: datetime) -> Optional[int]:
    if expires_at is None or expires_at <= now:
        return None
    return math.ceil((expires_at - now).total_seconds() / 86400)


def build_status(entitlement: Entitlement, now: Optional[datetime] = None) -> EntitlementStatus:
    current = normalize_now(now)
    active = is_plan_active(entitlement, current)
    days_left = _days_left(entitlement.plan_expires_at, current) if active else None
    return EntitlementStatus(
        user_id=entitlement.user_id,
        stored_tier=entitlement.plan_tier,
        effective_tier=effective_tier(entitlement, current),
        is_active=active,
        plan_expires_at=entitlement.plan_expires_at,
        days_left=days_left,
        expiring_soon=days_left is not None and days_left <= settings.EXPIRING_SOON_DAYS,
        ads_active=ads_active(entitlement, current),
        ads_expires_at=entitlement.ads_expires_at,
    )


def get_entitlement_status(user_id: str, now: Optional[datetime] = None) -> EntitlementStatus:
    with open_store("entitlements.read") as store:
        entitlement = store.get_entitlement(user_id)
    return build_status(entitlement, now)


def has_tier(user_id: str, minimum_tier: PlanTier, now: Optional[datetime] = None) -> bool:
    """Feature gate: nutrition, telemedicine, coupons, etc. all go through here."""
    status = get_entitlement_status(user_id, now)
    return status.effective_tier.rank >= PlanTier.parse(minimum_tier).rank


def override_entitlement(
    user_id: str,
    tier: PlanTier,
    expires_at: Optional[datetime],
    *,
    actor_id: str,
    reason: str,
    now: Optional[datetime] = None,
) -> Entitlement:
    """
    Replace a user's entitlement outright (support escape hatch).

    Unlike renewal this may shorten or remove access. Audited as
    entitlement_overridden in the same transaction.
    """
    current_time = normalize_now(now)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to override an entitlement", code="reason_required")
    if tier.is_paid:
        if expires_at is None:
            raise ValidationError("Paid tiers need an expiry", code="expiry_required")
        expires_at = normalize_now(expires_at)
        if expires_at <= current_time:
            raise ValidationError("Expiry must be in the future", code="expiry_in_past")
    else:
        expires_at = None

    with open_store("entitlements.override") as store:
        if not store.user_exists(user_id):
            raise NotFoundError(f"User not found: {user_id}", code="user_not_found")
        previous = store.get_entitlement(user_id)
        store.upsert_entitlement(user_id, tier, expires_at, now=current_time)
        record_audit_entry(
            store,
            actor_id=actor_id,
            action=AuditAction.ENTITLEMENT_OVERRIDDEN,
            entity_table="entitlements",
            entity_id=user_id,
            target_user_id=user_id,
            details={
                "previous_plan": previous.plan_tier,
                "previous_expires_at": previous.plan_expires_at,
                "plan": tier,
                "expires_at": expires_at,
                "reason": reason,
            },
            now=current_time,
        )
        updated = store.get_entitlement(user_id)
    return updated
