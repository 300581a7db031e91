"""
Payment provider protocol.

Providers that only notify us with an id (Mercado Pago) are asked for the
payment itself through a PaymentGateway. The reconciler depends on the
protocol so tests and other providers can be swapped in.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


@dataclass(frozen=True)
class ProviderPayment:
    """A payment as reported by the provider's API."""
    payment_id: str
    status: str  # approved, pending, in_process, rejected, cancelled, ...
    external_reference: Optional[str] = None  # our payment request id
    amount_cents: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def fetch_payment(self, payment_id: str, access_token: str) -> ProviderPayment:
        """
        Look a payment up at the provider.

        Raises:
            PaymentProviderError: transport failure, non-2xx answer or an
                unreadable body
        """
        ...
