"""The single checkout failure path.

Verification failures, gateway failure webhooks, reservation expiry, stale
sessions and order cancellation all unwind through `fail_checkout`, inside
the caller's Unit of Work:

    1. release active stock reservations
    2. revert the order's coupon usage marker (exactly once)
    3. unwind payments: wallet debits are credited back, open gateway
       attempts fail, COD collections are cancelled
    4. close the active payment session
    5. move the order to FAILED or CANCELLED

Captured gateway payments cannot be reversed inside a transaction; they are
returned to the caller as `GatewayRefund`s to be refunded after commit.
"""

from dataclasses import dataclass

import structlog
from protean import handle
from protean.exceptions import ObjectNotFoundError
from protean.fields import String
from protean.utils.globals import current_domain

from commerce.cache import invalidate_order
from commerce.checkout.session import PaymentSession, SessionStatus, session_by_token, sessions_for_order
from commerce.coupons import service as coupon_service
from commerce.domain import commerce
from commerce.inventory import manager as reservations
from commerce.ordering.order import Order, OrderStatus
from commerce.ordering.payment import Payment, PaymentMethod, PaymentStatus, payments_for_order
from commerce.wallet import ledger as wallet_ledger
from commerce.wallet.wallet import TransactionSource

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GatewayRefund:
    payment_id: str
    gateway_payment_id: str | None
    amount: float
    reason: str
    gateway: str | None = None


def _unwind_payment(payment: Payment, reason: str, gateway_refunds: list) -> bool:
    status = PaymentStatus(payment.status)
    if status == PaymentStatus.SUCCESS and payment.method == PaymentMethod.WALLET.value:
        wallet_ledger.credit(
            payment.user_id,
            payment.amount,
            ref_id=str(payment.order_id),
            source=TransactionSource.REFUND.value,
            note=f"Refund of wallet payment ({reason})",
        )
        payment.refund()
    elif status == PaymentStatus.SUCCESS and payment.is_gateway:
        gateway_refunds.append(
            GatewayRefund(
                payment_id=str(payment.id),
                gateway_payment_id=payment.gateway_payment_id,
                amount=round(payment.amount - (payment.refunded_amount or 0.0), 2),
                reason=reason,
                gateway=payment.gateway,
            )
        )
        return False
    elif status == PaymentStatus.COD_PENDING:
        payment.cancel()
    elif status in (PaymentStatus.CREATED, PaymentStatus.ATTEMPTED):
        payment.fail(reason)
    else:
        return False

    current_domain.repository_for(Payment).add(payment)
    return True


def _close_sessions(order_id, reason: str, outcome: SessionStatus) -> None:
    repo = current_domain.repository_for(PaymentSession)
    for session in sessions_for_order(order_id, SessionStatus.ACTIVE):
        if outcome == SessionStatus.EXPIRED:
            session.expire(reason)
        else:
            session.fail(reason)
        repo.add(session)


def fail_checkout(
    order: Order,
    reason: str,
    target: OrderStatus = OrderStatus.FAILED,
    actor: str = "system",
    session_outcome: SessionStatus = SessionStatus.FAILED,
    payments=None,
    reservations_expired: bool = False,
) -> list[GatewayRefund]:
    """Unwind the checkout. `payments` overrides the lookup when the caller already holds them."""
    released = reservations.release(order.id, expired=reservations_expired)
    coupon_reverted = coupon_service.revert(order.id)

    gateway_refunds: list[GatewayRefund] = []
    if payments is None:
        payments = payments_for_order(order.id)
    for payment in payments:
        _unwind_payment(payment, reason, gateway_refunds)
        order.record_payment(payment)

    _close_sessions(order.id, reason, session_outcome)

    if target == OrderStatus.CANCELLED:
        order.cancel(reason, cancelled_by=actor)
    else:
        order.fail(reason)
    current_domain.repository_for(Order).add(order)
    invalidate_order(order.id, order.user_id)

    logger.info(
        "Checkout unwound",
        order_id=str(order.id),
        reason=reason,
        target=target.value,
        reservations_released=released,
        coupon_reverted=coupon_reverted,
        gateway_refunds=len(gateway_refunds),
    )
    return gateway_refunds


def abandon_attempt(order: Order, session: PaymentSession, reason: str = "session_stale") -> None:
    """Give back what a stale attempt held while leaving the order payable."""
    reservations.release(order.id)
    coupon_service.revert(order.id)

    for payment in payments_for_order(order.id):
        if payment.status in (PaymentStatus.CREATED.value, PaymentStatus.ATTEMPTED.value):
            payment.fail(reason)
            current_domain.repository_for(Payment).add(payment)
            order.record_payment(payment)

    session.expire(reason)
    current_domain.repository_for(PaymentSession).add(session)
    current_domain.repository_for(Order).add(order)
    logger.info("Stale payment attempt abandoned", order_id=str(order.id), session_id=session.session_id)


@commerce.command(part_of="PaymentSession")
class FailPayment:
    session_id = String(required=True, max_length=64)
    reason = String(required=True, max_length=255)
    gateway_payment_id = String(max_length=255)


@commerce.command_handler(part_of=PaymentSession)
class FailPaymentHandler:
    @handle(FailPayment)
    def fail_payment(self, command):
        session = session_by_token(command.session_id)
        if session is None:
            raise ObjectNotFoundError({"session_id": ["Payment session not found"]})

        if not session.is_active:
            # Replayed failure, or the payment already settled
            return {"status": session.status, "order_id": str(session.order_id), "replayed": True}

        order = current_domain.repository_for(Order).get(session.order_id)
        payments = payments_for_order(order.id)
        for payment in payments:
            if command.gateway_payment_id and str(payment.id) == str(session.payment_id):
                payment.gateway_payment_id = command.gateway_payment_id

        fail_checkout(order, command.reason, payments=payments)
        return {"status": SessionStatus.FAILED.value, "order_id": str(order.id), "replayed": False}
