"""
Idempotency guard for inbound payment events.

A provider transaction is "already applied" once either an approved payment
request or an income ledger entry references it. The partial unique indexes
on both tables back this check against concurrent duplicates.
"""
import hashlib
from typing import Optional

from fitbill.features.payments.store import PaymentStore


def already_applied(store: PaymentStore, provider: str, external_transaction_id: str) -> bool:
    if not external_transaction_id:
        return False
    if store.find_approved_payment_request(provider, external_transaction_id):
        return True
    return store.find_income_ledger_entry(external_transaction_id, category=provider)


def idempotency_key(transaction_id: Optional[str], raw_body: bytes) -> str:
    """Provider transaction id, or a payload hash when the provider omitted it."""
    if transaction_id and transaction_id.strip():
        return transaction_id.strip()
    return "payload:" + hashlib.sha256(raw_body).hexdigest()
