"""
PerfectPay webhook payload.

The provider posts loosely-typed JSON (numbers as strings, nested or flat
customer/product fields depending on the integration version). It is coerced
once into PerfectPayPayload; the reconciler only reads the typed fields.
"""
from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from fitbill.core.errors import ValidationError
from fitbill.features.payments.models import MAX_AMOUNT_CENTS


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


class PerfectPayCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> Optional[str]:
        text = _as_text(value)
        return text.lower() if text else None


class PerfectPayProduct(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _trim(cls, value: Any) -> Optional[str]:
        return _as_text(value)


class PerfectPayPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: Optional[str] = None
    user_id: Optional[str] = None
    sale_status_enum: Optional[str] = None
    sale_status: Optional[str] = None
    sale_status_name: Optional[str] = None
    sale_amount: Optional[Decimal] = None
    transaction_code: Optional[str] = None
    customer: PerfectPayCustomer = PerfectPayCustomer()
    product: PerfectPayProduct = PerfectPayProduct()

    @model_validator(mode="before")
    @classmethod
    def _fold_flat_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        # Older checkouts post email/product_name at the top level
        customer = data.get("customer")
        if not isinstance(customer, dict):
            data["customer"] = {"email": data.get("email") or data.get("customer_email")}
        product = data.get("product")
        if not isinstance(product, dict):
            data["product"] = {"name": data.get("product_name")}
        # Checkout links can carry our user id, top level or in metadata
        metadata = data.get("metadata")
        if not _as_text(data.get("user_id")) and isinstance(metadata, dict):
            data["user_id"] = metadata.get("user_id")
        if not _as_text(data.get("transaction_code")):
            for key in ("transaction", "code", "sale_code"):
                if _as_text(data.get(key)):
                    data["transaction_code"] = data[key]
                    break
        return data

    @field_validator("token", "user_id", "sale_status_enum", "sale_status", "sale_status_name", "transaction_code", mode="before")
    @classmethod
    def _to_text(cls, value: Any) -> Optional[str]:
        return _as_text(value)

    @field_validator("sale_amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Optional[Decimal]:
        if value is None or isinstance(value, bool):
            return None
        text = str(value).strip()
        if not text:
            return None
        if "," in text and "." not in text:
            text = text.replace(",", ".")
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return None
        if not amount.is_finite() or amount <= 0:
            return None
        if amount * 100 > MAX_AMOUNT_CENTS:
            raise ValueError("sale_amount is out of range")
        return amount

    @property
    def customer_email(self) -> Optional[str]:
        return self.customer.email

    @property
    def product_name(self) -> Optional[str]:
        return self.product.name

    @property
    def amount_cents(self) -> Optional[int]:
        if self.sale_amount is None:
            return None
        return int((self.sale_amount * 100).to_integral_value())

    def is_approved(self, approved_statuses: Iterable[str]) -> bool:
        allowed = {s.strip().lower() for s in approved_statuses if s and s.strip()}
        for value in (self.sale_status_enum, self.sale_status, self.sale_status_name):
            if value is not None and value.lower() in allowed:
                return True
        return False

    @property
    def status_label(self) -> str:
        return self.sale_status_name or self.sale_status or self.sale_status_enum or "unknown"


def parse_payload(raw_body: bytes) -> PerfectPayPayload:
    """Decode and coerce a webhook body; malformed input raises ValidationError."""
    try:
        data = json.loads(raw_body.decode("utf-8") if raw_body else "")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON", code="invalid_payload") from exc
    if not isinstance(data, dict):
        raise ValidationError("Webhook body must be a JSON object", code="invalid_payload")
    try:
        return PerfectPayPayload.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid webhook payload: {exc.error_count()} error(s)", code="invalid_payload") from exc


def extract_token(raw_body: bytes, headers: Any) -> Optional[str]:
    """Token from the JSON body field `token`, else the `token` header."""
    token = None
    try:
        data = json.loads(raw_body.decode("utf-8")) if raw_body else None
    except (UnicodeDecodeError, json.JSONDecodeError):
        data = None
    if isinstance(data, dict):
        token = _as_text(data.get("token"))
    if not token and headers is not None:
        token = _as_text(headers.get("token"))
    return token
