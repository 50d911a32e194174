"""Razorpay gateway adapter (REST API over `requests`).

Amounts cross the wire in paise. Client payment signatures are
HMAC-SHA256 over `order_id|payment_id` with the key secret; webhook
signatures are HMAC-SHA256 over the raw body with the webhook secret.
"""

import hashlib
import hmac
import json

import requests
import structlog

from commerce.errors import ExternalGatewayError
from commerce.gateway.port import (
    GatewayOrder,
    PaymentGateway,
    PaymentVerification,
    RefundResult,
    WebhookVerification,
)

logger = structlog.get_logger(__name__)

API_BASE = "https://api.razorpay.com/v1"

_WEBHOOK_EVENTS = {
    "payment.captured": "success",
    "order.paid": "success",
    "payment.failed": "failed",
    "refund.processed": "refunded",
    "refund.created": "refunded",
}


def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(self, key_id: str, key_secret: str, webhook_secret: str = "", timeout: float = 10.0) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (key_id, key_secret)

    def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.session.request(method, f"{API_BASE}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("Razorpay request failed", path=path, error=str(exc))
            raise ExternalGatewayError(self.name, "Payment provider unreachable") from exc

        if response.status_code >= 500:
            raise ExternalGatewayError(self.name, f"Payment provider error ({response.status_code})")
        body = response.json()
        if response.status_code >= 400:
            description = body.get("error", {}).get("description", "Request rejected")
            raise ExternalGatewayError(self.name, description)
        return body

    def create_order(self, amount, currency, receipt, notes=None) -> GatewayOrder:
        body = self._call(
            "POST",
            "/orders",
            json={"amount": int(round(amount * 100)), "currency": currency, "receipt": receipt, "notes": notes or {}},
        )
        return GatewayOrder(
            id=body["id"],
            amount=body["amount"] / 100,
            currency=body.get("currency", currency),
            receipt=body.get("receipt"),
            extra={"key_id": self.key_id},
        )

    def verify_payment(self, gateway_order_id, gateway_payment_id, signature, details=None) -> PaymentVerification:
        expected = _hmac_sha256(self.key_secret, f"{gateway_order_id}|{gateway_payment_id}".encode())
        if not hmac.compare_digest(expected, signature or ""):
            return PaymentVerification(valid=False, failure_reason="Signature mismatch")

        payment = self._call("GET", f"/payments/{gateway_payment_id}")
        if payment.get("status") not in ("captured", "authorized"):
            return PaymentVerification(valid=False, failure_reason=f"Payment status {payment.get('status')}")
        return PaymentVerification(valid=True, amount=payment["amount"] / 100, gateway_payment_id=gateway_payment_id)

    def verify_webhook(self, payload, signature) -> WebhookVerification:
        raw = payload.encode() if isinstance(payload, str) else payload
        if not self.webhook_secret or not signature:
            return WebhookVerification(valid=False, failure_reason="Missing webhook signature")
        if not hmac.compare_digest(_hmac_sha256(self.webhook_secret, raw), signature):
            return WebhookVerification(valid=False, failure_reason="Signature mismatch")

        body = json.loads(raw)
        status = _WEBHOOK_EVENTS.get(body.get("event"))
        entity = body.get("payload", {}).get("payment", {}).get("entity", {})
        return WebhookVerification(
            valid=status is not None,
            status=status,
            gateway_order_id=entity.get("order_id"),
            gateway_payment_id=entity.get("id"),
            amount=entity["amount"] / 100 if "amount" in entity else None,
            failure_reason=entity.get("error_description") if status else "Unhandled event",
        )

    def create_refund(self, gateway_payment_id, amount, reason) -> RefundResult:
        try:
            body = self._call(
                "POST",
                f"/payments/{gateway_payment_id}/refund",
                json={"amount": int(round(amount * 100)), "notes": {"reason": reason}},
            )
        except ExternalGatewayError as exc:
            return RefundResult(success=False, failure_reason=exc.message)
        return RefundResult(success=True, refund_id=body.get("id"))
