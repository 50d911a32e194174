"""Payment initiation — opens or resumes the payment session for an order.

InitiatePayment runs under the per-order lock (taken by the coordinator)
and in one Unit of Work:

    1. ownership and idempotency checks; a settled order with a matching
       key returns its existing result
    2. single-active-session check: resume with the same session id,
       abandon a stale session, otherwise PaymentInProgress
    3. re-price every line from the catalog
    4. reserve stock, then the coupon; distribute the discount
    5. branch by method:
         wallet / fully wallet-covered  debit now, confirm the order
         cod                            debit the wallet share now, COD
                                        payment pending collection, confirm
         razorpay / payu                create the gateway Payment only;
                                        the wallet is untouched until the
                                        gateway confirms

The gateway order itself is created by the coordinator after this commits,
and stored with RecordGatewayOrder.
"""

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Boolean, Identifier, String
from protean.utils.globals import current_domain

from commerce.catalog.pricing import revalidate_items
from commerce.checkout.failure import abandon_attempt
from commerce.checkout.session import (
    PaymentSession,
    SessionStatus,
    active_session_for,
    session_by_token,
    sessions_for_order,
)
from commerce.checkout.settlement import finalize_checkout
from commerce.config import get_settings
from commerce.coupons import service as coupon_service
from commerce.domain import commerce
from commerce.errors import InsufficientWalletBalance, PaymentInProgress
from commerce.inventory import manager as reservations
from commerce.inventory.reservation import StockReservation
from commerce.ordering.order import Order, OrderStatus
from commerce.ordering.payment import GATEWAY_METHODS, Payment, PaymentMethod, PaymentStatus, payments_for_order
from commerce.wallet import ledger as wallet_ledger

logger = structlog.get_logger(__name__)

PAYMENT_METHODS = {method.value for method in PaymentMethod}


@commerce.command(part_of="PaymentSession")
class InitiatePayment:
    order_id = Identifier(required=True)
    user_id = Identifier(required=True)
    method = String(required=True, max_length=20)
    use_wallet = Boolean(default=False)
    session_id = String(max_length=64)  # resume token from a previous attempt
    idempotency_key = String(max_length=255)


@commerce.command(part_of="PaymentSession")
class RecordGatewayOrder:
    session_id = String(required=True, max_length=64)
    gateway = String(required=True, max_length=20)
    gateway_order_id = String(required=True, max_length=255)


def _result(order: Order, session: PaymentSession | None, status: str, **extra) -> dict:
    result = {
        "status": status,
        "order_id": str(order.id),
        "order_status": order.status,
        "total": order.total,
        "session_id": session.session_id if session else None,
        "wallet_amount": session.wallet_amount if session else 0.0,
        "gateway_amount": session.gateway_amount if session else 0.0,
        "gateway_order_id": session.gateway_order_id if session else None,
        "payment_id": str(session.payment_id) if session and session.payment_id else None,
        "requires_gateway_order": False,
    }
    result.update(extra)
    return result


def _settled_result(order: Order, idempotency_key) -> dict | None:
    """The existing result for a replayed request against a settled order."""
    if order.current_status != OrderStatus.CONFIRMED or not idempotency_key:
        return None
    keys = {order.idempotency_key} | {p.idempotency_key for p in payments_for_order(order.id)}
    if idempotency_key not in keys:
        return None
    completed = sessions_for_order(order.id, SessionStatus.COMPLETED)
    return _result(order, completed[0] if completed else None, "confirmed", replayed=True)


@commerce.command_handler(part_of=PaymentSession)
class InitiatePaymentHandler:
    @handle(InitiatePayment)
    def initiate_payment(self, command):
        if command.method not in PAYMENT_METHODS:
            raise ValidationError({"method": [f"Unsupported payment method: {command.method}"]})

        order_repo = current_domain.repository_for(Order)
        session_repo = current_domain.repository_for(PaymentSession)
        order = order_repo.get(command.order_id)
        order.assert_owned_by(command.user_id)

        replay = _settled_result(order, command.idempotency_key)
        if replay is not None:
            return replay
        if order.current_status != OrderStatus.PENDING:
            raise ValidationError({"order": [f"Order is not payable in status {order.status}"]})

        settings = get_settings()
        active = active_session_for(order.id)
        if active is not None:
            if command.session_id and command.session_id == active.session_id:
                if active.payment_method != command.method:
                    raise ValidationError({"session_id": ["Session was opened for a different payment method"]})
                active.record_retry()
                session_repo.add(active)
                logger.info("Payment session resumed", order_id=str(order.id), retry_count=active.retry_count)
                return _result(
                    order,
                    active,
                    "awaiting_payment",
                    requires_gateway_order=not active.gateway_order_id,
                    resumed=True,
                )
            if not active.is_stale():
                raise PaymentInProgress(order.id)
            abandon_attempt(order, active)

        return self._open_session(order, command, settings)

    def _open_session(self, order: Order, command, settings) -> dict:
        lines, subtotal = revalidate_items(
            [{"variant_id": item.variant_id, "quantity": item.quantity, "item_id": str(item.id)} for item in order.items]
        )

        reservation = reservations.reserve(
            [(line.variant_id, line.quantity, line.unit_price) for line in lines],
            order_id=order.id,
            ttl_minutes=settings.reservation_ttl_minutes,
        )

        usage = None
        shares = [0.0] * len(lines)
        if order.coupon_code:
            reserved = coupon_service.reserve(order.coupon_code, order.user_id, order.id, subtotal, lines)
            usage = reserved.usage
            shares = coupon_service.distribute_discount(reserved.coupon, lines, reserved.discount)
        order.reprice(lines, shares)

        total = order.total
        method = command.method
        balance = wallet_ledger.balance_of(order.user_id)
        wallet_amount = 0.0
        if method == PaymentMethod.WALLET.value:
            if balance + 0.005 < total:
                raise InsufficientWalletBalance(order.user_id, available=balance, required=total)
            wallet_amount = total
        elif command.use_wallet:
            wallet_amount = round(min(balance, total), 2)
        remainder = round(total - wallet_amount, 2)

        if remainder <= 0:
            method = PaymentMethod.WALLET.value

        session = PaymentSession.open(
            order_id=order.id,
            user_id=order.user_id,
            payment_method=method,
            ttl_minutes=settings.payment_session_ttl_minutes,
            wallet_amount=wallet_amount,
            gateway_amount=remainder if method in GATEWAY_METHODS else 0.0,
            idempotency_key=command.idempotency_key,
            coupon_usage_id=usage.id if usage else None,
        )

        payment_repo = current_domain.repository_for(Payment)
        if method in GATEWAY_METHODS:
            payment = Payment.create(
                order_id=order.id,
                user_id=order.user_id,
                method=method,
                amount=remainder,
                currency=settings.currency,
                idempotency_key=command.idempotency_key,
            )
            payment_repo.add(payment)
            reservation.link_payment(payment.id)
            current_domain.repository_for(StockReservation).add(reservation)
            session.payment_id = payment.id
            order.record_payment(payment)

            current_domain.repository_for(PaymentSession).add(session)
            current_domain.repository_for(Order).add(order)
            logger.info(
                "Gateway payment opened",
                order_id=str(order.id),
                method=method,
                amount=remainder,
                wallet_amount=wallet_amount,
            )
            return _result(order, session, "awaiting_payment", requires_gateway_order=True)

        # Wallet-only and COD settle inside this Unit of Work
        settled = []
        if wallet_amount > 0:
            transaction = wallet_ledger.debit(
                order.user_id, wallet_amount, ref_id=str(order.id), note="Wallet payment for order"
            )
            wallet_payment = Payment.create(
                order_id=order.id,
                user_id=order.user_id,
                method=PaymentMethod.WALLET.value,
                amount=wallet_amount,
                currency=settings.currency,
                status=PaymentStatus.SUCCESS.value,
                idempotency_key=command.idempotency_key,
                wallet_transaction_id=transaction.id,
            )
            payment_repo.add(wallet_payment)
            settled.append(wallet_payment)

        if method == PaymentMethod.COD.value and remainder > 0:
            cod_payment = Payment.create(
                order_id=order.id,
                user_id=order.user_id,
                method=PaymentMethod.COD.value,
                amount=remainder,
                currency=settings.currency,
                status=PaymentStatus.COD_PENDING.value,
                idempotency_key=command.idempotency_key,
            )
            payment_repo.add(cod_payment)
            settled.append(cod_payment)

        if settled:
            session.payment_id = settled[-1].id
        finalize_checkout(order, session, method, settled, reservation=reservation, usage=usage)
        return _result(order, session, "confirmed")


@commerce.command_handler(part_of=PaymentSession)
class RecordGatewayOrderHandler:
    @handle(RecordGatewayOrder)
    def record_gateway_order(self, command):
        session = session_by_token(command.session_id)
        if session is None or not session.is_active:
            # The sweep or a failure path closed the session while the gateway call was in flight
            logger.warning("Gateway order arrived for a closed session", session_id=command.session_id)
            return False

        payment_repo = current_domain.repository_for(Payment)
        payment = payment_repo.get(session.payment_id)
        if payment.status == PaymentStatus.CREATED.value:
            payment.mark_attempted(command.gateway_order_id, gateway=command.gateway)
        else:
            payment.gateway_order_id = command.gateway_order_id
            payment.gateway = command.gateway
        payment_repo.add(payment)

        session.attach_gateway_order(command.gateway, command.gateway_order_id)
        current_domain.repository_for(PaymentSession).add(session)
        return True
