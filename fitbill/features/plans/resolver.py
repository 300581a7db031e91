"""
Plan resolver.

Maps free-form provider product labels ("Elite Black", "Plano Advance Mensal")
onto the closed set of internal tiers, plus the validity period to grant.

Pure and total: nothing here touches the database or raises. Catalog entries
are passed in by the caller.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from fitbill.core.config import settings


class PlanTier(str, Enum):
    """Subscription tiers, totally ordered FREE < ADVANCE < ELITE."""
    FREE = "FREE"
    ADVANCE = "ADVANCE"
    ELITE = "ELITE"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @property
    def is_paid(self) -> bool:
        return self is not PlanTier.FREE

    @classmethod
    def parse(cls, value: object) -> "PlanTier":
        """Parse a stored/requested tier; unknown values degrade to FREE."""
        if isinstance(value, PlanTier):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.FREE


_TIER_RANK = {PlanTier.FREE: 0, PlanTier.ADVANCE: 1, PlanTier.ELITE: 2}

# Checked highest tier first so ambiguous labels resolve upward
_TIER_KEYWORDS = (
    (PlanTier.ELITE, "elite"),
    (PlanTier.ADVANCE, "advance"),
)


@dataclass(frozen=True)
class PlanCatalogEntry:
    """Admin-configured plan label with its validity period."""
    name: str
    tier: PlanTier
    validity_days: int
    price_cents: Optional[int] = None


@dataclass(frozen=True)
class ResolvedPlan:
    tier: PlanTier
    validity_days: int
    catalog_entry: Optional[PlanCatalogEntry] = None


def default_validity_days() -> int:
    days = settings.DEFAULT_PLAN_VALIDITY_DAYS
    return days if isinstance(days, int) and days > 0 else 30


def tier_from_label(raw_label: object) -> PlanTier:
    """Case-insensitive substring match; ELITE wins when both keywords appear."""
    if not isinstance(raw_label, str):
        return PlanTier.FREE
    label = raw_label.casefold()
    for tier, keyword in _TIER_KEYWORDS:
        if keyword in label:
            return tier
    return PlanTier.FREE


def match_catalog_entry(
    raw_label: object, catalog: Iterable[PlanCatalogEntry]
) -> Optional[PlanCatalogEntry]:
    """Find the catalog entry for a label: exact name first, then a catalog name inside the label."""
    if not isinstance(raw_label, str) or not raw_label.strip():
        return None
    label = raw_label.strip().casefold()
    entries = [e for e in catalog if e is not None and e.name and e.name.strip()]

    for entry in entries:
        if entry.name.strip().casefold() == label:
            return entry

    # Longest name first so "Elite Black" beats "Elite"
    for entry in sorted(entries, key=lambda e: len(e.name), reverse=True):
        name = entry.name.strip().casefold()
        if name in label:
            return entry
    return None


def resolve_plan(
    raw_label: object, catalog: Iterable[PlanCatalogEntry] = ()
) -> ResolvedPlan:
    """
    Resolve a provider product label to (tier, validity_days).

    The tier always comes from the label itself; a matching catalog entry only
    overrides the validity period. Never raises.
    """
    tier = tier_from_label(raw_label)
    try:
        entry = match_catalog_entry(raw_label, catalog or ())
    except (TypeError, AttributeError):
        entry = None

    validity = default_validity_days()
    if entry is not None and isinstance(entry.validity_days, int) and entry.validity_days > 0:
        validity = entry.validity_days
    else:
        entry = None

    return ResolvedPlan(tier=tier, validity_days=validity, catalog_entry=entry)
