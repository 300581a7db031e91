"""
Payments API.

- POST /api/payments/webhooks/perfectpay: provider webhook (shared token)
- POST /api/payments/webhooks/mercadopago: provider notification (payment fetched back)
- POST /api/payments/checkouts: user opens a Mercado Pago checkout
- POST /api/payments/requests: user submits a manual PIX payment for review
- GET  /api/payments/requests: the user's own request history
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field, field_validator
from starlette.concurrency import run_in_threadpool

from fitbill.core.errors import AppError, WebhookProcessingError
from fitbill.core.identity_auth import require_user
from fitbill.features.payments.config_provider import SqlConfigProvider
from fitbill.features.payments.mercadopago import MercadoPagoReconciler
from fitbill.features.payments.models import MAX_AMOUNT_CENTS, PaymentRequest
from fitbill.features.payments.reconciler import WebhookReconciler
from fitbill.features.payments.requests import (
    list_user_payment_requests,
    open_checkout,
    submit_payment_request,
)

logger = logging.getLogger("fitbill.webhooks")

router = APIRouter(prefix="/api/payments", tags=["payments"])


class WebhookResponse(BaseModel):
    message: str
    outcome: str


class PaymentRequestOut(BaseModel):
    id: str
    user_id: str
    provider: str
    desired_plan_tier: str
    status: str
    requested_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    evidence_reference: Optional[str] = None
    reviewed_evidence_reference: Optional[str] = None
    rejection_reason: Optional[str] = None
    external_transaction_id: Optional[str] = None
    amount_cents: Optional[int] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None

    @classmethod
    def from_record(cls, record: PaymentRequest) -> "PaymentRequestOut":
        return cls(
            id=record.id,
            user_id=record.user_id,
            provider=record.provider,
            desired_plan_tier=record.desired_plan_tier.value,
            status=record.status.value,
            requested_at=record.requested_at,
            processed_at=record.processed_at,
            processed_by=record.processed_by,
            evidence_reference=record.evidence_reference,
            reviewed_evidence_reference=record.reviewed_evidence_reference,
            rejection_reason=record.rejection_reason,
            external_transaction_id=record.external_transaction_id,
            amount_cents=record.amount_cents,
            user_name=record.user_name,
            user_email=record.user_email,
        )


class SubmitPaymentRequest(BaseModel):
    desired_plan_tier: str
    evidence_reference: str = Field(..., description="Storage path of the uploaded PIX receipt")
    amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_AMOUNT_CENTS)

    @field_validator("desired_plan_tier", "evidence_reference")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class OpenCheckoutRequest(BaseModel):
    desired_plan_tier: str
    amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_AMOUNT_CENTS)


def get_reconciler() -> WebhookReconciler:
    return WebhookReconciler(SqlConfigProvider())


@router.post("/webhooks/perfectpay", response_model=WebhookResponse)
async def perfectpay_webhook(request: Request, reconciler: WebhookReconciler = Depends(get_reconciler)):
    raw_body = await request.body()
    try:
        result = await run_in_threadpool(reconciler.handle, raw_body, request.headers)
    except AppError:
        raise
    except Exception as exc:
        logger.exception("webhook.failed", extra={"provider": reconciler.provider, "error_code": "webhook_failed"})
        raise WebhookProcessingError(f"Webhook processing failed: {type(exc).__name__}") from exc
    return WebhookResponse(message=result.message, outcome=result.outcome.value)


def get_mercadopago_reconciler() -> MercadoPagoReconciler:
    return MercadoPagoReconciler(SqlConfigProvider())


@router.post("/webhooks/mercadopago", response_model=WebhookResponse)
async def mercadopago_webhook(
    request: Request, reconciler: MercadoPagoReconciler = Depends(get_mercadopago_reconciler)
):
    raw_body = await request.body()
    query = dict(request.query_params)
    try:
        result = await run_in_threadpool(reconciler.handle, query, raw_body)
    except AppError:
        raise
    except Exception as exc:
        logger.exception("webhook.failed", extra={"provider": reconciler.provider, "error_code": "webhook_failed"})
        raise WebhookProcessingError(f"Webhook processing failed: {type(exc).__name__}") from exc
    return WebhookResponse(message=result.message, outcome=result.outcome.value)


@router.post("/requests", response_model=PaymentRequestOut, status_code=201)
def create_payment_request(body: SubmitPaymentRequest, user_id: str = Depends(require_user)):
    created = submit_payment_request(
        user_id,
        body.desired_plan_tier,
        body.evidence_reference,
        body.amount_cents,
    )
    return PaymentRequestOut.from_record(created)


@router.post("/checkouts", response_model=PaymentRequestOut, status_code=201)
def create_checkout(body: OpenCheckoutRequest, user_id: str = Depends(require_user)):
    created = open_checkout(user_id, body.desired_plan_tier, body.amount_cents)
    return PaymentRequestOut.from_record(created)


@router.get("/requests", response_model=List[PaymentRequestOut])
def my_payment_requests(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(require_user),
):
    return [PaymentRequestOut.from_record(r) for r in list_user_payment_requests(user_id, limit)]
