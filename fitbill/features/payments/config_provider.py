"""
Configuration provider for the payment core.

Secrets and the plan catalog are admin-editable and read per request, so they
are injected into the reconciler instead of being read from module globals.
"""
from typing import Dict, Iterable, List, Optional, Protocol

from sqlalchemy import select

from fitbill.core.config import settings
from fitbill.core.database import get_db_session, integration_configs, plan_catalog, store_call
from fitbill.features.plans.resolver import PlanCatalogEntry, PlanTier, match_catalog_entry


class ConfigProvider(Protocol):
    def get_configured_secret(self, key: str) -> Optional[str]:
        ...

    def get_plan_catalog_entry(self, label: str) -> Optional[PlanCatalogEntry]:
        ...


class SqlConfigProvider:
    """Reads integration_configs and plan_catalog on every call."""

    def __init__(self, env_fallbacks: Optional[Dict[str, Optional[str]]] = None):
        if env_fallbacks is None:
            env_fallbacks = {
                settings.WEBHOOK_SECRET_CONFIG_KEY: settings.PERFECTPAY_WEBHOOK_TOKEN,
                settings.MERCADOPAGO_TOKEN_CONFIG_KEY: settings.MERCADOPAGO_ACCESS_TOKEN,
            }
        self.env_fallbacks = env_fallbacks

    def get_configured_secret(self, key: str) -> Optional[str]:
        with store_call("config.secret"):
            with get_db_session() as session:
                row = session.execute(
                    select(integration_configs.c.value).where(integration_configs.c.key == key)
                ).fetchone()
        value = row[0] if row else None
        if value and value.strip():
            return value.strip()
        fallback = self.env_fallbacks.get(key)
        return fallback.strip() if fallback and fallback.strip() else None

    def list_plan_catalog(self) -> List[PlanCatalogEntry]:
        with store_call("config.catalog"):
            with get_db_session() as session:
                rows = session.execute(
                    select(plan_catalog).where(plan_catalog.c.is_active.is_(True))
                ).fetchall()
        return [
            PlanCatalogEntry(
                name=row.name,
                tier=PlanTier.parse(row.plan_tier),
                validity_days=row.validity_days,
                price_cents=row.price_cents,
            )
            for row in rows
        ]

    def get_plan_catalog_entry(self, label: str) -> Optional[PlanCatalogEntry]:
        return match_catalog_entry(label, self.list_plan_catalog())


class StaticConfigProvider:
    """In-memory provider (local tooling and tests)."""

    def __init__(
        self,
        secrets: Optional[Dict[str, str]] = None,
        catalog: Iterable[PlanCatalogEntry] = (),
    ):
        self.secrets = dict(secrets or {})
        self.catalog = list(catalog)

    def get_configured_secret(self, key: str) -> Optional[str]:
        return self.secrets.get(key) or None

    def get_plan_catalog_entry(self, label: str) -> Optional[PlanCatalogEntry]:
        return match_catalog_entry(label, self.catalog)
