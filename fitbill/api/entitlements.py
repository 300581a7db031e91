"""Entitlement status for the calling user (plan banner, feature gates)."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from fitbill.core.identity_auth import require_user
from fitbill.features.entitlements.service import get_entitlement_status

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


class EntitlementStatusOut(BaseModel):
    user_id: str
    plan_tier: str
    stored_plan_tier: str
    is_active: bool
    plan_expires_at: Optional[datetime] = None
    days_left: Optional[int] = None
    expiring_soon: bool = False
    ads_active: bool = False
    ads_expires_at: Optional[datetime] = None


@router.get("/me", response_model=EntitlementStatusOut)
def my_entitlement(user_id: str = Depends(require_user)):
    status = get_entitlement_status(user_id)
    return EntitlementStatusOut(
        user_id=status.user_id,
        plan_tier=status.effective_tier.value,
        stored_plan_tier=status.stored_tier.value,
        is_active=status.is_active,
        plan_expires_at=status.plan_expires_at,
        days_left=status.days_left,
        expiring_soon=status.expiring_soon,
        ads_active=status.ads_active,
        ads_expires_at=status.ads_expires_at,
    )
