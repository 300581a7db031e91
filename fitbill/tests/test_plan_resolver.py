"""Plan resolver: label -> (tier, validity)."""
import pytest

from fitbill.features.plans.resolver import (
    PlanCatalogEntry,
    PlanTier,
    match_catalog_entry,
    resolve_plan,
    tier_from_label,
)

CATALOG = [
    PlanCatalogEntry("Advance", PlanTier.ADVANCE, 30),
    PlanCatalogEntry("Advance Trimestral", PlanTier.ADVANCE, 90),
    PlanCatalogEntry("Elite Black", PlanTier.ELITE, 45),
]


@pytest.mark.parametrize(
    "label,expected",
    [
        ("Elite Black", PlanTier.ELITE),
        ("PLANO ELITE", PlanTier.ELITE),
        ("Plano Advance Mensal", PlanTier.ADVANCE),
        ("advance + elite bundle", PlanTier.ELITE),
        ("Ebook de receitas", PlanTier.FREE),
        ("", PlanTier.FREE),
        (None, PlanTier.FREE),
        (42, PlanTier.FREE),
    ],
)
def test_tier_from_label(label, expected):
    assert tier_from_label(label) is expected


def test_resolve_without_catalog_uses_default_validity():
    plan = resolve_plan("Elite Black")
    assert plan.tier is PlanTier.ELITE
    assert plan.validity_days == 30
    assert plan.catalog_entry is None


def test_catalog_overrides_validity_only():
    plan = resolve_plan("Elite Black", [PlanCatalogEntry("Elite Black", PlanTier.ADVANCE, 45)])
    assert plan.tier is PlanTier.ELITE
    assert plan.validity_days == 45


def test_non_positive_catalog_validity_is_ignored():
    plan = resolve_plan("Elite Black", [PlanCatalogEntry("Elite Black", PlanTier.ELITE, 0)])
    assert plan.validity_days == 30
    assert plan.catalog_entry is None


def test_resolver_is_total_for_odd_catalogs():
    plan = resolve_plan({"name": "elite"}, [None])
    assert plan.tier is PlanTier.FREE
    assert plan.validity_days > 0


def test_match_prefers_exact_then_longest_contained_name():
    assert match_catalog_entry("advance", CATALOG).validity_days == 30
    assert match_catalog_entry("Advance Trimestral Promo", CATALOG).validity_days == 90
    assert match_catalog_entry("Plano Elite Black Mensal", CATALOG).name == "Elite Black"
    assert match_catalog_entry("ELITE", CATALOG) is None


def test_plan_tier_parse_and_order():
    assert PlanTier.parse("elite") is PlanTier.ELITE
    assert PlanTier.parse(" advance ") is PlanTier.ADVANCE
    assert PlanTier.parse("gold") is PlanTier.FREE
    assert PlanTier.FREE.rank < PlanTier.ADVANCE.rank < PlanTier.ELITE.rank
    assert not PlanTier.FREE.is_paid
