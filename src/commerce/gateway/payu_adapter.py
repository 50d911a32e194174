"""PayU gateway adapter.

PayU checkout is a form post: `create_order` returns the signed form
fields for the client. Responses are authenticated with the SHA-512
reverse hash `salt|status|||||||||||email|firstname|productinfo|amount|txnid|key`.
"""

import hashlib
import hmac
import json
from urllib.parse import parse_qsl

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

_STATUS_MAP = {"success": "success", "failure": "failed", "failed": "failed", "refunded": "refunded"}


def _sha512(text: str) -> str:
    return hashlib.sha512(text.encode()).hexdigest()


class PayUGateway(PaymentGateway):
    name = "payu"

    def __init__(self, merchant_key: str, merchant_salt: str, test_mode: bool = True, timeout: float = 10.0) -> None:
        self.merchant_key = merchant_key
        self.merchant_salt = merchant_salt
        self.base_url = "https://test.payu.in" if test_mode else "https://secure.payu.in"
        self.info_url = "https://test.payu.in" if test_mode else "https://info.payu.in"
        self.timeout = timeout

    def _request_hash(self, txnid, amount, productinfo, firstname, email) -> str:
        return _sha512(
            f"{self.merchant_key}|{txnid}|{amount}|{productinfo}|{firstname}|{email}|||||||||||{self.merchant_salt}"
        )

    def _response_hash(self, fields: dict) -> str:
        return _sha512(
            f"{self.merchant_salt}|{fields.get('status', '')}|||||||||||{fields.get('email', '')}|"
            f"{fields.get('firstname', '')}|{fields.get('productinfo', '')}|{fields.get('amount', '')}|"
            f"{fields.get('txnid', '')}|{self.merchant_key}"
        )

    def create_order(self, amount, currency, receipt, notes=None) -> GatewayOrder:
        notes = notes or {}
        amount_text = f"{amount:.2f}"
        productinfo = notes.get("productinfo", "order")
        firstname = notes.get("firstname", "")
        email = notes.get("email", "")
        fields = {
            "key": self.merchant_key,
            "txnid": receipt,
            "amount": amount_text,
            "productinfo": productinfo,
            "firstname": firstname,
            "email": email,
            "hash": self._request_hash(receipt, amount_text, productinfo, firstname, email),
            "action": f"{self.base_url}/_payment",
        }
        return GatewayOrder(id=receipt, amount=amount, currency=currency, receipt=receipt, extra=fields)

    def verify_payment(self, gateway_order_id, gateway_payment_id, signature, details=None) -> PaymentVerification:
        fields = dict(details or {})
        fields.setdefault("txnid", gateway_order_id)
        if not hmac.compare_digest(self._response_hash(fields), signature or ""):
            return PaymentVerification(valid=False, failure_reason="Hash mismatch")
        if fields.get("status") != "success":
            return PaymentVerification(valid=False, failure_reason=fields.get("error_Message") or "Payment failed")
        return PaymentVerification(
            valid=True,
            amount=float(fields["amount"]) if fields.get("amount") else None,
            gateway_payment_id=gateway_payment_id or fields.get("mihpayid"),
        )

    def verify_webhook(self, payload, signature) -> WebhookVerification:
        raw = payload.decode() if isinstance(payload, bytes) else payload
        fields = json.loads(raw) if raw.lstrip().startswith("{") else dict(parse_qsl(raw))
        posted_hash = signature or fields.get("hash", "")
        if not hmac.compare_digest(self._response_hash(fields), posted_hash):
            return WebhookVerification(valid=False, failure_reason="Hash mismatch")

        status = _STATUS_MAP.get(str(fields.get("status", "")).lower())
        return WebhookVerification(
            valid=status is not None,
            status=status,
            gateway_order_id=fields.get("txnid"),
            gateway_payment_id=fields.get("mihpayid"),
            amount=float(fields["amount"]) if fields.get("amount") else None,
            failure_reason=fields.get("error_Message"),
        )

    def create_refund(self, gateway_payment_id, amount, reason) -> RefundResult:
        command = "cancel_refund_transaction"
        token = f"refund-{gateway_payment_id}"
        data = {
            "key": self.merchant_key,
            "command": command,
            "var1": gateway_payment_id,
            "var2": token,
            "var3": f"{amount:.2f}",
            "hash": _sha512(f"{self.merchant_key}|{command}|{gateway_payment_id}|{self.merchant_salt}"),
        }
        try:
            response = requests.post(
                f"{self.info_url}/merchant/postservice.php?form=2", data=data, timeout=self.timeout
            )
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("PayU refund request failed", gateway_payment_id=gateway_payment_id, error=str(exc))
            raise ExternalGatewayError(self.name, "Payment provider unreachable") from exc

        if int(body.get("status", 0)) != 1:
            return RefundResult(success=False, failure_reason=body.get("msg") or reason)
        return RefundResult(success=True, refund_id=str(body.get("request_id") or token))
