"""Configurable fake payment gateway for development and testing.

Simulates a provider without any external calls. Behaviour can be switched
at runtime (verification outcome, refund outcome, network failure) and
every call is recorded in `calls` so tests can assert on what was sent.

Signatures are valid when they equal `test-signature`.
"""

import json
from uuid import uuid4

from commerce.errors import ExternalGatewayError
from commerce.gateway.port import (
    GatewayOrder,
    PaymentGateway,
    PaymentVerification,
    RefundResult,
    WebhookVerification,
)

VALID_SIGNATURE = "test-signature"


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    name = "fake"

    def __init__(self, name: str = "fake") -> None:
        self.name = name
        self.should_succeed: bool = True
        self.refund_should_succeed: bool = True
        self.network_down: bool = False
        self.failure_reason: str = "Payment declined"
        self.captured_amount: float | None = None  # overrides the order amount on verify
        self.orders: dict[str, GatewayOrder] = {}
        self.calls: list[dict] = []

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Payment declined",
        refund_should_succeed: bool = True,
        network_down: bool = False,
    ) -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.refund_should_succeed = refund_should_succeed
        self.network_down = network_down

    def _check_network(self, method: str) -> None:
        if self.network_down:
            raise ExternalGatewayError(self.name, f"Gateway unreachable during {method}")

    def create_order(self, amount, currency, receipt, notes=None) -> GatewayOrder:
        self.calls.append(
            {"method": "create_order", "amount": amount, "currency": currency, "receipt": receipt, "notes": notes}
        )
        self._check_network("create_order")

        order = GatewayOrder(
            id=f"fake_order_{uuid4().hex[:12]}",
            amount=amount,
            currency=currency,
            receipt=receipt,
        )
        self.orders[order.id] = order
        return order

    def verify_payment(self, gateway_order_id, gateway_payment_id, signature, details=None) -> PaymentVerification:
        self.calls.append(
            {
                "method": "verify_payment",
                "gateway_order_id": gateway_order_id,
                "gateway_payment_id": gateway_payment_id,
                "signature": signature,
            }
        )
        self._check_network("verify_payment")

        if signature != VALID_SIGNATURE:
            return PaymentVerification(valid=False, failure_reason="Signature mismatch")
        if not self.should_succeed:
            return PaymentVerification(valid=False, failure_reason=self.failure_reason)

        order = self.orders.get(gateway_order_id)
        amount = self.captured_amount if self.captured_amount is not None else (order.amount if order else None)
        return PaymentVerification(valid=True, amount=amount, gateway_payment_id=gateway_payment_id)

    def verify_webhook(self, payload, signature) -> WebhookVerification:
        self.calls.append({"method": "verify_webhook", "signature": signature})
        if signature != VALID_SIGNATURE:
            return WebhookVerification(valid=False, failure_reason="Signature mismatch")

        body = json.loads(payload) if isinstance(payload, str | bytes) else payload
        return WebhookVerification(
            valid=True,
            status=body.get("status"),
            gateway_order_id=body.get("gateway_order_id"),
            gateway_payment_id=body.get("gateway_payment_id"),
            amount=body.get("amount"),
            failure_reason=body.get("reason"),
        )

    def create_refund(self, gateway_payment_id, amount, reason) -> RefundResult:
        self.calls.append(
            {"method": "create_refund", "gateway_payment_id": gateway_payment_id, "amount": amount, "reason": reason}
        )
        self._check_network("create_refund")

        if self.refund_should_succeed:
            return RefundResult(success=True, refund_id=f"fake_rfnd_{uuid4().hex[:12]}")
        return RefundResult(success=False, failure_reason=self.failure_reason)

    def calls_to(self, method: str) -> list[dict]:
        return [call for call in self.calls if call["method"] == method]
