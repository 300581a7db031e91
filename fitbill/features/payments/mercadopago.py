"""
Mercado Pago webhook reconciler.

The notification only names a payment id. The payment is fetched from
Mercado Pago with our access token, and its external_reference points at
the PENDING payment request opened at checkout. That request is settled
with a conditional pending -> approved/rejected transition, so a replayed
or concurrent notification finds nothing left to move.
"""
import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from fitbill.core.clock import normalize_now
from fitbill.core.config import settings
from fitbill.core.errors import ConfigurationError
from fitbill.features.audit.service import record_audit_entry
from fitbill.features.entitlements.service import renew_entitlement
from fitbill.features.payments.config_provider import ConfigProvider
from fitbill.features.payments.idempotency import already_applied
from fitbill.features.payments.mercadopago_provider import MercadoPagoGateway, parse_notification
from fitbill.features.payments.models import (
    MERCADOPAGO_PROVIDER,
    SYSTEM_ACTOR,
    AuditAction,
    PaymentRequest,
    PaymentStatus,
    WebhookOutcome,
    WebhookResult,
)
from fitbill.features.payments.provider import PaymentGateway, ProviderPayment
from fitbill.features.payments.reconciler import ReconcilerBase, StoreFactory
from fitbill.features.payments.review import resolve_request_plan
from fitbill.features.payments.store import open_store
from fitbill.features.plans.resolver import ResolvedPlan

logger = logging.getLogger("fitbill.webhooks")

APPROVED_STATUSES = {"approved"}
FAILED_STATUSES = {"rejected", "cancelled", "refunded", "charged_back"}


class MercadoPagoReconciler(ReconcilerBase):
    provider = MERCADOPAGO_PROVIDER

    def __init__(
        self,
        config: ConfigProvider,
        gateway: Optional[PaymentGateway] = None,
        store_factory: StoreFactory = open_store,
    ):
        super().__init__(config, store_factory)
        self.gateway = gateway or MercadoPagoGateway()

    def _access_token(self) -> str:
        token = self.config.get_configured_secret(settings.MERCADOPAGO_TOKEN_CONFIG_KEY)
        if not token:
            self._reject("missing_secret")
            logger.error(
                "webhook.secret_missing",
                extra={"provider": self.provider, "error_code": "configuration_error"},
            )
            raise ConfigurationError("Mercado Pago access token is not configured")
        return token

    def _result(self, outcome: WebhookOutcome, payment: ProviderPayment, **kwargs: Any) -> WebhookResult:
        return WebhookResult(
            outcome=outcome,
            provider=self.provider,
            transaction_id=payment.external_reference or payment.payment_id,
            **kwargs,
        )

    def handle(
        self,
        query: Mapping[str, Any],
        raw_body: bytes = b"",
        now: Optional[datetime] = None,
    ) -> WebhookResult:
        """
        Reconcile one Mercado Pago notification.

        Raises:
            ConfigurationError: no access token configured (400)
            ValidationError: malformed payment id (400)
            PaymentProviderError: the payment could not be fetched (502)
            StoreUnavailableError: store call failed or timed out (503)
        """
        current = normalize_now(now)
        topic, payment_id = parse_notification(query, raw_body)
        if topic != "payment" or not payment_id:
            return self._finish(WebhookResult(
                outcome=WebhookOutcome.IGNORED_STATUS,
                provider=self.provider,
                transaction_id=payment_id,
                details={"topic": topic},
            ))

        payment = self.gateway.fetch_payment(payment_id, self._access_token())
        reference = payment.external_reference
        if payment.status not in APPROVED_STATUSES | FAILED_STATUSES:
            return self._finish(self._result(
                WebhookOutcome.IGNORED_STATUS, payment, details={"status": payment.status}
            ))

        request = None
        if reference:
            with self.store_factory("webhook.peek") as store:
                request = store.get_payment_request(reference)
        if request is None or request.provider != self.provider:
            return self._finish(self._result(
                WebhookOutcome.IGNORED_UNKNOWN_REFERENCE,
                payment,
                details={"payment_id": payment.payment_id},
            ))

        if payment.status in FAILED_STATUSES:
            return self._finish(self._run_guarded(lambda: self._fail(request, payment, current), reference))

        # Catalog is read outside the write transaction
        plan = resolve_request_plan(request, self.config)
        return self._finish(self._run_guarded(lambda: self._approve(request, payment, plan, current), reference))

    def _duplicate(self, request: PaymentRequest, payment: ProviderPayment) -> WebhookResult:
        return self._result(
            WebhookOutcome.DUPLICATE,
            payment,
            user_id=request.user_id,
            payment_request_id=request.id,
            details={"status": request.status.value},
        )

    def _approve(
        self, request: PaymentRequest, payment: ProviderPayment, plan: ResolvedPlan, now: datetime
    ) -> WebhookResult:
        reference = request.id
        amount_cents = (
            payment.amount_cents
            or request.amount_cents
            or (plan.catalog_entry.price_cents if plan.catalog_entry else None)
            or settings.WEBHOOK_FALLBACK_AMOUNT_CENTS
        )

        with self.store_factory("webhook.reconcile") as store:
            if already_applied(store, self.provider, reference):
                return self._duplicate(request, payment)
            moved = store.transition_payment_request(
                reference,
                from_status=PaymentStatus.PENDING,
                fields={
                    "status": PaymentStatus.APPROVED,
                    "processed_at": now,
                    "processed_by": SYSTEM_ACTOR,
                    "external_transaction_id": payment.payment_id,
                    "amount_cents": amount_cents,
                },
            )
            if not moved:
                # Already settled, by an admin or an earlier delivery
                return self._duplicate(request, payment)

            expires_at = renew_entitlement(store, request.user_id, plan.tier, plan.validity_days, now)
            store.insert_ledger_entry(
                entry_type="income",
                amount_cents=amount_cents,
                description=f"Mercado Pago #{payment.payment_id}: {plan.tier.value}",
                category=self.provider,
                reference_id=reference,
                entry_date=now.date(),
            )
            record_audit_entry(
                store,
                actor_id=SYSTEM_ACTOR,
                action=AuditAction.PAYMENT_APPLIED,
                entity_table="payment_requests",
                entity_id=reference,
                target_user_id=request.user_id,
                details={
                    "provider": self.provider,
                    "transaction_id": payment.payment_id,
                    "plan": plan.tier,
                    "validity_days": plan.validity_days,
                    "expires_at": expires_at,
                    "amount_cents": amount_cents,
                },
                now=now,
            )

        return self._result(
            WebhookOutcome.APPLIED,
            payment,
            user_id=request.user_id,
            plan_tier=plan.tier,
            expires_at=expires_at,
            payment_request_id=reference,
            details={"payment_id": payment.payment_id, "amount_cents": amount_cents},
        )

    def _fail(self, request: PaymentRequest, payment: ProviderPayment, now: datetime) -> WebhookResult:
        reason = f"mercadopago:{payment.status}"
        with self.store_factory("webhook.reconcile") as store:
            moved = store.transition_payment_request(
                request.id,
                from_status=PaymentStatus.PENDING,
                fields={
                    "status": PaymentStatus.REJECTED,
                    "processed_at": now,
                    "processed_by": SYSTEM_ACTOR,
                    "rejection_reason": reason,
                    "external_transaction_id": payment.payment_id,
                },
            )
            if not moved:
                return self._duplicate(request, payment)
            record_audit_entry(
                store,
                actor_id=SYSTEM_ACTOR,
                action=AuditAction.PAYMENT_REJECTED,
                entity_table="payment_requests",
                entity_id=request.id,
                target_user_id=request.user_id,
                details={"provider": self.provider, "transaction_id": payment.payment_id, "reason": reason},
                now=now,
            )

        return self._result(
            WebhookOutcome.PAYMENT_FAILED,
            payment,
            user_id=request.user_id,
            payment_request_id=request.id,
            details={"status": payment.status},
        )