"""PaymentCoordinator — sequences checkout commands around gateway calls.

Command handlers own the Units of Work; network calls to the gateway happen
between them, never inside one. The per-order lock is held only while
InitiatePayment runs, so two concurrent "pay for order X" requests cannot
both pass the single-active-session check.

Failures converge on one path: verification failure, failure webhooks,
expiry and cancellation all end in `fail_checkout`. Captures that land after
the checkout was unwound are refunded through the gateway.
"""

import structlog
from protean.exceptions import ExpectedVersionError, ObjectNotFoundError, ValidationError
from protean.utils.globals import current_domain

from commerce.checkout.failure import FailPayment, GatewayRefund
from commerce.checkout.initiation import InitiatePayment, RecordGatewayOrder
from commerce.checkout.refunds import RecordGatewayRefund
from commerce.checkout.session import PaymentSession, SessionStatus, session_by_token, sessions_for_order
from commerce.checkout.settlement import SettlePayment
from commerce.config import get_settings
from commerce.errors import ConcurrencyConflict, ExternalGatewayError, PaymentVerificationFailed
from commerce.gateway import get_gateway, has_gateway
from commerce.gateway.port import PaymentGateway
from commerce.locking import hold, order_lock_key
from commerce.ordering.cancellation import CancelOrder
from commerce.ordering.payment import Payment, find_gateway_payment

logger = structlog.get_logger(__name__)


def dispatch(command):
    try:
        return current_domain.process(command, asynchronous=False)
    except ExpectedVersionError as exc:
        logger.info("Concurrent write lost on version", command=type(command).__name__)
        raise ConcurrencyConflict() from exc


class PaymentCoordinator:
    def __init__(self, gateway: PaymentGateway | None = None) -> None:
        self._gateway = gateway

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_gateway()

    def _gateway_named(self, name: str | None) -> PaymentGateway:
        active = self.gateway
        if not name or name == active.name:
            return active
        if not has_gateway(name):
            raise ValidationError({"gateway": [f"Unknown gateway: {name}"]})
        return get_gateway(name)

    # -------------------------------------------------------------------
    # Initiate
    # -------------------------------------------------------------------
    def initiate(self, order_id, user_id, method, use_wallet=False, session_id=None, idempotency_key=None) -> dict:
        with hold(order_lock_key(order_id)):
            result = dispatch(
                InitiatePayment(
                    order_id=order_id,
                    user_id=user_id,
                    method=method,
                    use_wallet=use_wallet,
                    session_id=session_id,
                    idempotency_key=idempotency_key,
                )
            )

        if not result.get("requires_gateway_order"):
            return result

        # Outside the Unit of Work: the session and Payment are committed, so a
        # failure here leaves recoverable state for the sweep to reclaim.
        gateway = self.gateway
        gateway_order = gateway.create_order(
            amount=result["gateway_amount"],
            currency=get_settings().currency,
            receipt=str(order_id),
            notes={"session_id": result["session_id"], "payment_id": result["payment_id"]},
        )
        recorded = dispatch(
            RecordGatewayOrder(session_id=result["session_id"], gateway=gateway.name, gateway_order_id=gateway_order.id)
        )
        if not recorded:
            raise ConcurrencyConflict("Payment session closed while contacting the gateway")

        logger.info("Gateway order created", order_id=str(order_id), gateway=gateway.name, gateway_order_id=gateway_order.id)
        result.update(
            requires_gateway_order=False,
            gateway=gateway.name,
            gateway_order_id=gateway_order.id,
            gateway_payload=gateway_order.extra,
        )
        return result

    # -------------------------------------------------------------------
    # Verify (client callback)
    # -------------------------------------------------------------------
    def verify(self, session_id, gateway_payment_id, gateway_order_id, signature, details=None) -> dict:
        session = session_by_token(session_id)
        if session is None:
            raise ObjectNotFoundError({"session_id": ["Payment session not found"]})
        if session.status == SessionStatus.COMPLETED.value:
            return {"status": "confirmed", "order_id": str(session.order_id), "replayed": True}
        if gateway_order_id and session.gateway_order_id and gateway_order_id != session.gateway_order_id:
            raise ValidationError({"gateway_order_id": ["Gateway order does not belong to this session"]})

        gateway = self._gateway_named(session.gateway)
        verification = gateway.verify_payment(
            gateway_order_id=session.gateway_order_id or gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            signature=signature,
            details=details,
        )

        reason = None
        if not verification.valid:
            reason = "verification_failed"
        elif verification.amount is not None and abs(verification.amount - session.gateway_amount) > 0.01:
            reason = "amount_mismatch"

        if reason is not None:
            logger.warning(
                "Payment verification failed",
                session_id=session_id,
                order_id=str(session.order_id),
                reason=reason,
                detail=verification.failure_reason,
            )
            dispatch(FailPayment(session_id=session_id, reason=reason, gateway_payment_id=gateway_payment_id))
            raise PaymentVerificationFailed(gateway.name, "Payment verification failed")

        return self._settle(session_id, gateway_payment_id, verification.amount)

    def _settle(self, session_id, gateway_payment_id, amount) -> dict:
        result = dispatch(
            SettlePayment(session_id=session_id, gateway_payment_id=gateway_payment_id, captured_amount=amount)
        )
        if result["status"] == "refund_required":
            self.refund(
                [
                    GatewayRefund(
                        payment_id=result["payment_id"],
                        gateway_payment_id=result["gateway_payment_id"],
                        amount=result["amount"],
                        reason=result["reason"],
                        gateway=result.get("gateway"),
                    )
                ]
            )
        return result

    # -------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------
    def handle_webhook(self, gateway_name, payload, signature) -> dict:
        gateway = self._gateway_named(gateway_name)
        verification = gateway.verify_webhook(payload, signature)
        if not verification.valid:
            raise ValidationError({"signature": [verification.failure_reason or "Invalid webhook"]})

        payment = find_gateway_payment(verification.gateway_order_id, verification.gateway_payment_id)
        if payment is None:
            raise ObjectNotFoundError({"payment": ["No payment matches this webhook"]})

        session = self._session_for_payment(payment)
        logger.info(
            "Gateway webhook received",
            gateway=gateway.name,
            status=verification.status,
            payment_id=str(payment.id),
        )

        if verification.status == "success":
            if session is None:
                raise ObjectNotFoundError({"session": ["No payment session for this payment"]})
            result = self._settle(session.session_id, verification.gateway_payment_id, verification.amount)
            return {"status": result["status"], "order_id": str(payment.order_id)}

        if verification.status == "failed":
            if session is None or not session.is_active:
                return {"status": "ignored", "order_id": str(payment.order_id)}
            result = dispatch(
                FailPayment(
                    session_id=session.session_id,
                    reason=verification.failure_reason or "gateway_failed",
                    gateway_payment_id=verification.gateway_payment_id,
                )
            )
            return {"status": result["status"], "order_id": str(payment.order_id)}

        if verification.status == "refunded":
            dispatch(
                RecordGatewayRefund(
                    payment_id=str(payment.id),
                    amount=verification.amount if verification.amount is not None else payment.amount,
                    reason="gateway_refund",
                )
            )
            return {"status": "refunded", "order_id": str(payment.order_id)}

        return {"status": "ignored", "order_id": str(payment.order_id)}

    @staticmethod
    def _session_for_payment(payment: Payment) -> PaymentSession | None:
        for session in sessions_for_order(payment.order_id):
            if session.payment_id and str(session.payment_id) == str(payment.id):
                return session
        return None

    # -------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------
    def cancel(self, order_id, user_id=None, reason="cancelled_by_user", cancelled_by="user") -> dict:
        result = dispatch(CancelOrder(order_id=order_id, user_id=user_id, reason=reason, cancelled_by=cancelled_by))
        result["refunds"] = self.refund([GatewayRefund(**refund) for refund in result["gateway_refunds"]])
        return result

    # -------------------------------------------------------------------
    # Refunds of captured gateway payments
    # -------------------------------------------------------------------
    def refund(self, refunds: list[GatewayRefund]) -> list[dict]:
        """Refund each capture through the gateway, falling back to the wallet."""
        outcomes = []
        for item in refunds:
            refund_id, to_wallet = None, False
            if item.gateway_payment_id:
                try:
                    gateway = self._gateway_named(item.gateway)
                    result = gateway.create_refund(item.gateway_payment_id, item.amount, item.reason)
                except ExternalGatewayError as exc:
                    logger.warning("Gateway refund unreachable", payment_id=item.payment_id, error=exc.message)
                    to_wallet = True
                else:
                    refund_id, to_wallet = result.refund_id, not result.success
            else:
                to_wallet = True

            dispatch(
                RecordGatewayRefund(
                    payment_id=item.payment_id,
                    amount=item.amount,
                    reason=item.reason,
                    refund_id=refund_id,
                    to_wallet=to_wallet,
                )
            )
            outcomes.append(
                {"payment_id": item.payment_id, "amount": item.amount, "refund_id": refund_id, "to_wallet": to_wallet}
            )
        return outcomes

