"""Payment settlement — the single success path for a checkout.

SettlePayment runs after the gateway has confirmed a capture (client
verification or success webhook). In one Unit of Work it debits the wallet
share, marks the gateway payment successful, consumes the stock
reservation, redeems the coupon marker, confirms the order, completes the
session and empties the cart.

If the session is no longer active (a failure path or the expiry sweep got
there first) or the wallet can no longer cover its share, the capture is
recorded against a failed payment and the result asks the coordinator to
refund it through the gateway.
"""

import structlog
from protean import handle
from protean.exceptions import ObjectNotFoundError
from protean.fields import Float, String
from protean.utils.globals import current_domain

from commerce.cache import invalidate_coupon, invalidate_order, invalidate_variants, invalidate_wallet
from commerce.checkout.failure import fail_checkout
from commerce.checkout.session import PaymentSession, SessionStatus, session_by_token
from commerce.coupons import service as coupon_service
from commerce.domain import commerce
from commerce.errors import InsufficientWalletBalance
from commerce.inventory import manager as reservations
from commerce.ordering.cart import clear_cart
from commerce.ordering.order import AnnotationKind, Order, OrderStatus
from commerce.ordering.payment import Payment, PaymentMethod, PaymentStatus
from commerce.wallet import ledger as wallet_ledger

logger = structlog.get_logger(__name__)


def finalize_checkout(order: Order, session: PaymentSession, method: str, payments, reservation=None, usage=None):
    """Make every provisional effect of the checkout permanent.

    `reservation` and `usage` are passed when they were created in the same
    Unit of Work; otherwise they are looked up by order.
    """
    consumed = reservations.consume(order.id, payment_id=session.payment_id, reservation=reservation)
    coupon_service.redeem(order.id, usage=usage)

    for payment in payments:
        order.record_payment(payment)
    order.confirm(method)
    session.complete()
    clear_cart(order.user_id)

    current_domain.repository_for(Order).add(order)
    current_domain.repository_for(PaymentSession).add(session)

    invalidate_order(order.id, order.user_id)
    invalidate_coupon(order.coupon_code)
    if consumed is not None:
        invalidate_variants(line.variant_id for line in consumed.lines)
    if session.wallet_amount:
        invalidate_wallet(order.user_id)

    logger.info(
        "Checkout settled",
        order_id=str(order.id),
        session_id=session.session_id,
        method=method,
        total=order.total,
    )


@commerce.command(part_of="PaymentSession")
class SettlePayment:
    session_id = String(required=True, max_length=64)
    gateway_payment_id = String(max_length=255)
    captured_amount = Float()


def _late_capture(payment: Payment, gateway_payment_id, reason: str) -> dict:
    """Record a capture that arrived after the checkout was unwound."""
    if payment.status in (PaymentStatus.CREATED.value, PaymentStatus.ATTEMPTED.value):
        payment.fail(reason, gateway_payment_id=gateway_payment_id)
    elif gateway_payment_id:
        payment.gateway_payment_id = gateway_payment_id
    current_domain.repository_for(Payment).add(payment)

    logger.warning(
        "Late gateway capture needs a refund",
        payment_id=str(payment.id),
        order_id=str(payment.order_id),
        reason=reason,
    )
    return {
        "status": "refund_required",
        "order_id": str(payment.order_id),
        "payment_id": str(payment.id),
        "gateway_payment_id": gateway_payment_id,
        "amount": payment.amount,
        "reason": reason,
        "gateway": payment.gateway,
    }


@commerce.command_handler(part_of=PaymentSession)
class SettlePaymentHandler:
    @handle(SettlePayment)
    def settle_payment(self, command):
        session = session_by_token(command.session_id)
        if session is None:
            raise ObjectNotFoundError({"session_id": ["Payment session not found"]})

        order_repo = current_domain.repository_for(Order)
        payment_repo = current_domain.repository_for(Payment)
        order = order_repo.get(session.order_id)
        payment = payment_repo.get(session.payment_id)

        if session.status == SessionStatus.COMPLETED.value:
            return {"status": "confirmed", "order_id": str(order.id), "replayed": True}

        if not session.is_active or order.current_status != OrderStatus.PENDING:
            if any(str(a.payment_id) == str(payment.id) for a in order.annotations_of(AnnotationKind.REFUND)):
                return {"status": "refunded", "order_id": str(order.id), "replayed": True}
            return _late_capture(payment, command.gateway_payment_id, f"session_{session.status}")

        wallet_payment = None
        if session.wallet_amount:
            try:
                transaction = wallet_ledger.debit(
                    order.user_id,
                    session.wallet_amount,
                    ref_id=str(order.id),
                    note="Wallet share of order payment",
                )
            except InsufficientWalletBalance:
                # Nothing was written by the failed debit; unwind and refund the capture
                result = _late_capture(payment, command.gateway_payment_id, "wallet_insufficient_at_settlement")
                fail_checkout(order, "wallet_insufficient_at_settlement", payments=[payment])
                return result

            wallet_payment = Payment.create(
                order_id=order.id,
                user_id=order.user_id,
                method=PaymentMethod.WALLET.value,
                amount=session.wallet_amount,
                status=PaymentStatus.SUCCESS.value,
                idempotency_key=session.idempotency_key,
                wallet_transaction_id=transaction.id,
            )
            payment_repo.add(wallet_payment)

        payment.succeed(gateway_payment_id=command.gateway_payment_id)
        payment_repo.add(payment)

        settled = [payment] + ([wallet_payment] if wallet_payment else [])
        finalize_checkout(order, session, session.payment_method, settled)
        return {"status": "confirmed", "order_id": str(order.id), "replayed": False}
