"""Payment gateway port (abstract interface).

Every provider adapter implements this contract; the checkout code never
depends on a provider's wire format beyond it. Adapters raise
`ExternalGatewayError` on network or timeout failures and return result
objects for everything the provider answered.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class GatewayOrder:
    """A provider-side order the client pays against."""

    id: str
    amount: float
    currency: str
    receipt: str | None = None
    extra: dict = field(default_factory=dict)  # provider fields the client needs (form params, keys)


@dataclass(frozen=True)
class PaymentVerification:
    valid: bool
    amount: float | None = None
    gateway_payment_id: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class WebhookVerification:
    valid: bool
    status: str | None = None  # success | failed | refunded
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    amount: float | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: str | None = None
    failure_reason: str | None = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    name: str = "gateway"

    @abstractmethod
    def create_order(
        self,
        amount: float,
        currency: str,
        receipt: str,
        notes: dict | None = None,
    ) -> GatewayOrder:
        """Create the provider order the customer will pay."""
        ...

    @abstractmethod
    def verify_payment(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        details: dict | None = None,
    ) -> PaymentVerification:
        """Check a client-reported payment against the provider."""
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes | str, signature: str | None) -> WebhookVerification:
        """Authenticate a webhook body and map it to success/failed/refunded."""
        ...

    @abstractmethod
    def create_refund(self, gateway_payment_id: str, amount: float, reason: str) -> RefundResult:
        """Refund (part of) a captured payment."""
        ...
