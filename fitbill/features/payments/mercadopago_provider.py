"""
Mercado Pago gateway.

Notifications arrive as `?topic=payment&id=123` (IPN) or as a JSON body
`{"type": "payment", "data": {"id": "123"}}`. Neither carries the payment
state, so the payment is fetched from /v1/payments/{id} with our access
token before anything is reconciled.
"""
import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from fitbill.core.config import settings
from fitbill.core.errors import PaymentProviderError, ValidationError
from fitbill.features.payments.models import MAX_AMOUNT_CENTS
from fitbill.features.payments.provider import ProviderPayment

logger = logging.getLogger("fitbill.webhooks")

_PAYMENT_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def parse_notification(query: Mapping[str, Any], raw_body: bytes) -> Tuple[Optional[str], Optional[str]]:
    """(topic, payment id) from the query string, else from the JSON body."""
    topic = _as_text(query.get("topic")) or _as_text(query.get("type"))
    payment_id = _as_text(query.get("id")) or _as_text(query.get("data.id"))

    if not topic or not payment_id:
        try:
            body = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, json.JSONDecodeError):
            body = None
        if isinstance(body, dict):
            topic = topic or _as_text(body.get("type")) or _as_text(body.get("topic"))
            data = body.get("data")
            if isinstance(data, dict):
                payment_id = payment_id or _as_text(data.get("id"))

    if payment_id and not _PAYMENT_ID.match(payment_id):
        raise ValidationError("Malformed payment id", code="invalid_payload")
    return (topic.lower() if topic else None), payment_id


class MercadoPagoPayment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str = "unknown"
    external_reference: Optional[str] = None
    transaction_amount: Optional[Decimal] = None

    @field_validator("id", "status", "external_reference", mode="before")
    @classmethod
    def _to_text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("transaction_amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Optional[Decimal]:
        if value is None or isinstance(value, bool):
            return None
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
        if not amount.is_finite() or amount <= 0 or amount * 100 > MAX_AMOUNT_CENTS:
            return None
        return amount

    def to_provider_payment(self) -> ProviderPayment:
        amount_cents = None
        if self.transaction_amount is not None:
            amount_cents = int((self.transaction_amount * 100).to_integral_value())
        return ProviderPayment(
            payment_id=self.id,
            status=(self.status or "unknown").lower(),
            external_reference=self.external_reference,
            amount_cents=amount_cents,
        )


class MercadoPagoGateway:
    """PaymentGateway over the Mercado Pago REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.MERCADOPAGO_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.MERCADOPAGO_TIMEOUT_SECONDS
        self.transport = transport

    def fetch_payment(self, payment_id: str, access_token: str) -> ProviderPayment:
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.get(
                    f"/v1/payments/{payment_id}",
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "mercadopago.fetch_failed",
                extra={"provider": "mercadopago", "error_code": f"http_{exc.response.status_code}"},
            )
            raise PaymentProviderError(
                f"Mercado Pago answered {exc.response.status_code} for payment {payment_id}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "mercadopago.fetch_failed",
                extra={"provider": "mercadopago", "error_code": type(exc).__name__},
            )
            raise PaymentProviderError(f"Mercado Pago unreachable: {type(exc).__name__}") from exc
        except ValueError as exc:
            raise PaymentProviderError("Mercado Pago returned an unreadable body") from exc

        try:
            return MercadoPagoPayment.model_validate(body).to_provider_payment()
        except PydanticValidationError as exc:
            raise PaymentProviderError("Mercado Pago returned an unexpected payment shape") from exc
