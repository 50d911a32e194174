"""Gateway refund bookkeeping.

RecordGatewayRefund books a refund the gateway has processed (or one that
fell back to the wallet) against the Payment record and the order's
annotations. Replays of the same refund are no-ops.
"""

import structlog
from protean import handle
from protean.fields import Boolean, Float, Identifier, String
from protean.utils.globals import current_domain

from commerce.cache import invalidate_order, invalidate_wallet
from commerce.domain import commerce
from commerce.ordering.order import AnnotationKind, Order, OrderStatus
from commerce.ordering.payment import Payment, PaymentStatus
from commerce.wallet import ledger as wallet_ledger
from commerce.wallet.wallet import TransactionSource

logger = structlog.get_logger(__name__)

REFUNDABLE_STATUSES = {PaymentStatus.SUCCESS.value, PaymentStatus.PARTIALLY_REFUNDED.value}


@commerce.command(part_of="Payment")
class RecordGatewayRefund:
    payment_id = Identifier(required=True)
    amount = Float(required=True)
    reason = String(max_length=255)
    refund_id = String(max_length=255)
    to_wallet = Boolean(default=False)  # the gateway refund failed; credit the wallet instead


@commerce.command_handler(part_of=Payment)
class RecordGatewayRefundHandler:
    @handle(RecordGatewayRefund)
    def record_gateway_refund(self, command):
        payment_repo = current_domain.repository_for(Payment)
        order_repo = current_domain.repository_for(Order)
        payment = payment_repo.get(command.payment_id)
        order = order_repo.get(payment.order_id)

        late_capture_refunded = payment.status == PaymentStatus.FAILED.value and any(
            str(annotation.payment_id) == str(payment.id) for annotation in order.annotations_of(AnnotationKind.REFUND)
        )
        if payment.status == PaymentStatus.REFUNDED.value or late_capture_refunded:
            logger.info("Refund already recorded", payment_id=str(payment.id))
            return False

        amount = round(command.amount, 2)
        if command.to_wallet:
            wallet_ledger.credit(
                payment.user_id,
                amount,
                ref_id=str(payment.order_id),
                source=TransactionSource.REFUND.value,
                note=f"Refund of {payment.method} payment to wallet",
            )
            invalidate_wallet(payment.user_id)

        if payment.status in REFUNDABLE_STATUSES:
            payment.refund(min(amount, payment.amount - (payment.refunded_amount or 0.0)))
            payment_repo.add(payment)
            order.record_payment(payment)

        order.record_refund(amount, reason=command.reason or "gateway_refund", payment_id=str(payment.id))
        if payment.status == PaymentStatus.REFUNDED.value:
            order.advance_if_allowed(OrderStatus.REFUNDED, reason="payment_refunded", actor="gateway")
        order_repo.add(order)
        invalidate_order(order.id, order.user_id)

        logger.info(
            "Gateway refund recorded",
            payment_id=str(payment.id),
            amount=amount,
            refund_id=command.refund_id,
            to_wallet=command.to_wallet,
        )
        return True
