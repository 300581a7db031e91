"""Entitlement state and its read-time view."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fitbill.features.plans.resolver import PlanTier


@dataclass(frozen=True)
class Entitlement:
    """Stored entitlement row. plan_tier is NOT the effective tier; see effective_tier()."""
    user_id: str
    plan_tier: PlanTier = PlanTier.FREE
    plan_expires_at: Optional[datetime] = None
    ads_active: bool = False
    ads_expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class EntitlementStatus:
    user_id: str
    stored_tier: PlanTier
    effective_tier: PlanTier
    is_active: bool
    plan_expires_at: Optional[datetime]
    days_left: Optional[int]
    expiring_soon: bool
    ads_active: bool
    ads_expires_at: Optional[datetime]
