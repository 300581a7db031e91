"""
Webhook reconcilers.

ReconcilerBase holds what every provider shares; WebhookReconciler handles
PerfectPay, MercadoPagoReconciler (mercadopago.py) handles Mercado Pago.

Turns one inbound provider notification into at most one entitlement change.

PerfectPay gates, in order:
1. Authenticate the shared token against the configured secret
2. Parse the body into PerfectPayPayload
3. Classify: only approved sale statuses go further
4. Resolve the account: checkout user id, else the customer email
5. Idempotency guard on the provider transaction id
6. Ads add-on branch
7. Plan resolution, renewal, payment request, ledger entry, audit entry

Everything from step 5 onwards runs in a single store transaction. A
concurrent duplicate that slips past the guard hits the partial unique
indexes; the IntegrityError is turned back into a DUPLICATE outcome.
"""
import hmac
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Mapping, Optional

from sqlalchemy.exc import IntegrityError

from fitbill.core.clock import normalize_now
from fitbill.core.config import settings, split_csv
from fitbill.core.errors import ConfigurationError, WebhookAuthError
from fitbill.core.metrics import webhook_outcomes_total, webhook_rejections_total
from fitbill.features.audit.service import record_audit_entry
from fitbill.features.entitlements.service import renew_entitlement
from fitbill.features.payments.config_provider import ConfigProvider
from fitbill.features.payments.idempotency import already_applied, idempotency_key
from fitbill.features.payments.models import (
    PERFECTPAY_PROVIDER,
    SYSTEM_ACTOR,
    AuditAction,
    PaymentStatus,
    WebhookOutcome,
    WebhookResult,
)
from fitbill.features.payments.payload import PerfectPayPayload, extract_token, parse_payload
from fitbill.features.payments.store import PaymentStore, open_store
from fitbill.features.plans.resolver import PlanCatalogEntry, PlanTier, resolve_plan

logger = logging.getLogger("fitbill.webhooks")

StoreFactory = Callable[[str], ContextManager[PaymentStore]]

_WARN_OUTCOMES = {WebhookOutcome.IGNORED_UNKNOWN_USER, WebhookOutcome.IGNORED_UNKNOWN_REFERENCE}


def is_ads_product(product_name: Optional[str]) -> bool:
    if not product_name:
        return False
    label = product_name.casefold()
    return any(keyword in label for keyword in split_csv(settings.ADS_PRODUCT_KEYWORDS))


class ReconcilerBase:
    """Outcome bookkeeping and duplicate-race handling shared by providers."""

    provider = PERFECTPAY_PROVIDER

    def __init__(
        self,
        config: ConfigProvider,
        store_factory: StoreFactory = open_store,
        provider: Optional[str] = None,
    ):
        self.config = config
        self.store_factory = store_factory
        if provider:
            self.provider = provider

    def _finish(self, result: WebhookResult) -> WebhookResult:
        webhook_outcomes_total.inc(labels={"provider": result.provider, "outcome": result.outcome.value})
        level = logging.WARNING if result.outcome in _WARN_OUTCOMES else logging.INFO
        logger.log(
            level,
            f"webhook.{result.outcome.value}",
            extra={
                "provider": result.provider,
                "outcome": result.outcome.value,
                "transaction_id": result.transaction_id,
                "user_id": result.user_id,
                "payment_request_id": result.payment_request_id,
                "event_type": f"webhook.{result.outcome.value}",
            },
        )
        return result

    def _reject(self, reason: str) -> None:
        webhook_rejections_total.inc(labels={"provider": self.provider, "reason": reason})

    def _run_guarded(self, reconcile: Callable[[], WebhookResult], tx_id: str) -> WebhookResult:
        """Run one reconciliation; a unique-index race against a concurrent delivery is a DUPLICATE."""
        try:
            return reconcile()
        except IntegrityError:
            with self.store_factory("webhook.recheck") as store:
                if not already_applied(store, self.provider, tx_id):
                    raise
            return WebhookResult(
                outcome=WebhookOutcome.DUPLICATE,
                provider=self.provider,
                transaction_id=tx_id,
            )


class WebhookReconciler(ReconcilerBase):
    """PerfectPay: the notification body carries the whole sale."""

    # -- gates --------------------------------------------------------------

    def authenticate(self, raw_body: bytes, headers: Mapping[str, Any]) -> None:
        secret = self.config.get_configured_secret(settings.WEBHOOK_SECRET_CONFIG_KEY)
        if not secret:
            self._reject("missing_secret")
            logger.error(
                "webhook.secret_missing",
                extra={"provider": self.provider, "error_code": "configuration_error"},
            )
            raise ConfigurationError("Webhook secret is not configured")

        token = extract_token(raw_body, headers)
        if not token or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
            self._reject("bad_token")
            logger.warning(
                "webhook.unauthorized",
                extra={"provider": self.provider, "error_code": "unauthorized"},
            )
            raise WebhookAuthError("Invalid webhook token")

    # -- entry point --------------------------------------------------------

    def handle(
        self,
        raw_body: bytes,
        headers: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> WebhookResult:
        """
        Reconcile one webhook delivery.

        Raises:
            ConfigurationError: no webhook secret configured (400)
            WebhookAuthError: token missing or wrong (401)
            ValidationError: body is not a JSON object (400)
            StoreUnavailableError: store call failed or timed out (503)
        """
        current = normalize_now(now)
        self.authenticate(raw_body, headers or {})
        payload = parse_payload(raw_body)
        tx_id = idempotency_key(payload.transaction_code, raw_body)

        if not payload.is_approved(split_csv(settings.WEBHOOK_APPROVED_STATUSES)):
            return self._finish(WebhookResult(
                outcome=WebhookOutcome.IGNORED_STATUS,
                provider=self.provider,
                transaction_id=tx_id,
                details={"status": payload.status_label},
            ))

        # Catalog lookup happens before the store transaction opens
        entry = None
        if payload.product_name and not is_ads_product(payload.product_name):
            entry = self.config.get_plan_catalog_entry(payload.product_name)

        return self._finish(self._run_guarded(lambda: self._reconcile(payload, tx_id, entry, current), tx_id))

    def _reconcile(
        self, payload: PerfectPayPayload, tx_id: str, entry: Optional[PlanCatalogEntry], now: datetime
    ) -> WebhookResult:
        with self.store_factory("webhook.reconcile") as store:
            user_id = self._resolve_user(store, payload)
            if not user_id:
                return WebhookResult(
                    outcome=WebhookOutcome.IGNORED_UNKNOWN_USER,
                    provider=self.provider,
                    transaction_id=tx_id,
                    # Domain only; the full address stays out of logs
                    details={"email_domain": (payload.customer_email or "").partition("@")[2] or None},
                )

            if already_applied(store, self.provider, tx_id):
                return WebhookResult(
                    outcome=WebhookOutcome.DUPLICATE,
                    provider=self.provider,
                    transaction_id=tx_id,
                    user_id=user_id,
                )

            if is_ads_product(payload.product_name):
                return self._activate_ads(store, payload, user_id, tx_id, now)
            return self._apply_plan(store, payload, user_id, tx_id, entry, now)

    def _resolve_user(self, store: PaymentStore, payload: PerfectPayPayload) -> Optional[str]:
        """Checkout user id when it names a real account, else the customer email."""
        if payload.user_id and store.user_exists(payload.user_id):
            return payload.user_id
        if payload.customer_email:
            return store.find_user_by_email(payload.customer_email)
        return None

    def _amount_cents(self, payload: PerfectPayPayload, catalog_price: Optional[int]) -> int:
        if payload.amount_cents:
            return payload.amount_cents
        if catalog_price:
            return catalog_price
        return settings.WEBHOOK_FALLBACK_AMOUNT_CENTS

    def _record_income(
        self, store: PaymentStore, payload: PerfectPayPayload, tx_id: str, amount_cents: int, now: datetime
    ) -> None:
        store.insert_ledger_entry(
            entry_type="income",
            amount_cents=amount_cents,
            description=f"PerfectPay: {payload.product_name or 'produto'} ({payload.customer_email})",
            category=self.provider,
            reference_id=tx_id,
            entry_date=now.date(),
        )

    def _activate_ads(
        self, store: PaymentStore, payload: PerfectPayPayload, user_id: str, tx_id: str, now: datetime
    ) -> WebhookResult:
        entitlement = store.get_entitlement(user_id)
        base = now
        if entitlement.ads_expires_at and entitlement.ads_expires_at > now:
            base = entitlement.ads_expires_at
        expires_at = base + timedelta(days=settings.ADS_ACTIVATION_DAYS)
        store.set_ads_expiry(user_id, expires_at, now=now)

        amount_cents = self._amount_cents(payload, None)
        self._record_income(store, payload, tx_id, amount_cents, now)
        record_audit_entry(
            store,
            actor_id=SYSTEM_ACTOR,
            action=AuditAction.ADS_ACTIVATED,
            entity_table="entitlements",
            entity_id=user_id,
            target_user_id=user_id,
            details={
                "provider": self.provider,
                "transaction_id": tx_id,
                "product": payload.product_name,
                "ads_expires_at": expires_at,
            },
            now=now,
        )
        return WebhookResult(
            outcome=WebhookOutcome.ADS_ACTIVATED,
            provider=self.provider,
            transaction_id=tx_id,
            user_id=user_id,
            expires_at=expires_at,
        )

    def _apply_plan(
        self,
        store: PaymentStore,
        payload: PerfectPayPayload,
        user_id: str,
        tx_id: str,
        entry: Optional[PlanCatalogEntry],
        now: datetime,
    ) -> WebhookResult:
        plan = resolve_plan(payload.product_name, [entry] if entry else ())
        amount_cents = self._amount_cents(payload, entry.price_cents if entry else None)

        expires_at = None
        if plan.tier.is_paid:
            expires_at = renew_entitlement(store, user_id, plan.tier, plan.validity_days, now)

        request_id = store.insert_payment_request(
            user_id=user_id,
            provider=self.provider,
            desired_plan_tier=plan.tier,
            status=PaymentStatus.APPROVED,
            requested_at=now,
            processed_at=now,
            processed_by=SYSTEM_ACTOR,
            external_transaction_id=tx_id,
            amount_cents=amount_cents,
        )
        self._record_income(store, payload, tx_id, amount_cents, now)

        if plan.tier is PlanTier.FREE:
            # Money is recorded; the entitlement is left for an admin to sort out
            outcome = WebhookOutcome.UNMAPPED_PLAN
        else:
            outcome = WebhookOutcome.APPLIED
            record_audit_entry(
                store,
                actor_id=SYSTEM_ACTOR,
                action=AuditAction.PAYMENT_APPLIED,
                entity_table="payment_requests",
                entity_id=request_id,
                target_user_id=user_id,
                details={
                    "provider": self.provider,
                    "transaction_id": tx_id,
                    "product": payload.product_name,
                    "plan": plan.tier,
                    "validity_days": plan.validity_days,
                    "expires_at": expires_at,
                    "amount_cents": amount_cents,
                },
                now=now,
            )

        return WebhookResult(
            outcome=outcome,
            provider=self.provider,
            transaction_id=tx_id,
            user_id=user_id,
            plan_tier=plan.tier,
            expires_at=expires_at,
            payment_request_id=request_id,
            details={"product": payload.product_name, "amount_cents": amount_cents},
        )
