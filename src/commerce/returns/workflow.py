"""Return workflow — commands and handlers.

Every handler is its own Unit of Work. Receiving a return decides the refund
(amount and planned routing) and books the returned units; the gateway
refund itself happens outside, in ReturnService, and CompleteReturnRefund
then records what actually happened.
"""

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Float, Identifier, Integer, String, Text
from protean.utils.globals import current_domain

from commerce.cache import invalidate_order, invalidate_variants, invalidate_wallet
from commerce.config import get_settings
from commerce.courier.port import PickupResult
from commerce.domain import commerce
from commerce.ledger.primitives import return_stock
from commerce.ordering.order import Order, OrderItem, OrderStatus
from commerce.ordering.payment import Payment, PaymentStatus, payments_for_order
from commerce.returns.eligibility import check_post_sale_request
from commerce.returns.return_request import (
    RefundRouting,
    ReturnCondition,
    ReturnRequest,
    ReturnStatus,
)
from commerce.wallet import ledger as wallet_ledger
from commerce.wallet.wallet import TransactionSource

logger = structlog.get_logger(__name__)

RECEIVABLE_STATUSES = {
    ReturnStatus.REQUESTED,
    ReturnStatus.APPROVED,
    ReturnStatus.PICKUP_SCHEDULED,
    ReturnStatus.PICKED_UP,
}
_REFUNDABLE_PAYMENT_STATUSES = {PaymentStatus.SUCCESS.value, PaymentStatus.PARTIALLY_REFUNDED.value}


def compute_refund(order: Order, item: OrderItem, quantity: int, restocking_fee: float = 0.0) -> float:
    """Refund for `quantity` units of `item`, from the discount-adjusted unit price.

    Any part of the order discount that was not distributed onto lines is
    prorated by line share and returned quantity and deducted as well.
    """
    gross = item.unit_price_after_discount * quantity

    coupon_share = 0.0
    undistributed = (order.discount_amount or 0.0) - sum(i.item_discount or 0.0 for i in order.items)
    if undistributed > 0.005 and order.subtotal:
        coupon_share = undistributed * (item.line_total / order.subtotal) * (quantity / item.quantity)

    return round(max(0.0, gross - coupon_share - (restocking_fee or 0.0)), 2)


def refundable_gateway_payment(order_id) -> Payment | None:
    """The captured gateway payment with the most left to refund."""
    candidates = [
        p
        for p in payments_for_order(order_id)
        if p.is_gateway and p.status in _REFUNDABLE_PAYMENT_STATUSES and p.gateway_payment_id
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.amount - (p.refunded_amount or 0.0))


def plan_refund(order_id, amount: float) -> dict:
    """Route to the original gateway up to what it still holds; the rest goes to the wallet."""
    payment = refundable_gateway_payment(order_id)
    gateway_amount = 0.0
    if payment is not None:
        gateway_amount = round(min(amount, payment.amount - (payment.refunded_amount or 0.0)), 2)

    if gateway_amount <= 0:
        routing = RefundRouting.WALLET
    elif gateway_amount < amount:
        routing = RefundRouting.GATEWAY_AND_WALLET
    else:
        routing = RefundRouting.GATEWAY

    return {
        "planned": routing.value,
        "gateway_amount": max(gateway_amount, 0.0),
        "payment_id": str(payment.id) if payment is not None and gateway_amount > 0 else None,
        "gateway_payment_id": payment.gateway_payment_id if payment is not None and gateway_amount > 0 else None,
        "gateway": payment.gateway if payment is not None and gateway_amount > 0 else None,
    }


@commerce.command(part_of="ReturnRequest")
class RequestReturn:
    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    user_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    reason = String(max_length=500)
    notes = Text()


@commerce.command(part_of="ReturnRequest")
class CancelReturn:
    return_id = Identifier(required=True)
    user_id = Identifier(required=True)


@commerce.command(part_of="ReturnRequest")
class ApproveReturn:
    return_id = Identifier(required=True)
    admin_id = String(max_length=100, default="admin")


@commerce.command(part_of="ReturnRequest")
class RejectReturn:
    return_id = Identifier(required=True)
    reason = String(max_length=500)
    admin_id = String(max_length=100, default="admin")


@commerce.command(part_of="ReturnRequest")
class RecordReturnPickup:
    return_id = Identifier(required=True)
    pickup_id = String(required=True, max_length=255)
    carrier = String(max_length=100)
    tracking_id = String(max_length=255)
    scheduled_at = DateTime()


@commerce.command(part_of="ReturnRequest")
class MarkReturnPickedUp:
    return_id = Identifier(required=True)
    actor = String(max_length=100, default="courier")


@commerce.command(part_of="ReturnRequest")
class ReceiveReturn:
    return_id = Identifier(required=True)
    condition = String(max_length=30, default=ReturnCondition.NEW.value)
    restocking_fee = Float(default=0.0)
    refund_override = Float()
    restock = Boolean()  # defaults to AUTO_RESTOCK_ON_APPROVAL
    admin_id = String(max_length=100, default="admin")


@commerce.command(part_of="ReturnRequest")
class CompleteReturnRefund:
    return_id = Identifier(required=True)
    gateway_amount = Float(default=0.0)  # what the gateway actually refunded
    gateway_refund_id = String(max_length=255)
    payment_id = Identifier()
    fallback_to_wallet = Boolean(default=False)


@commerce.command(part_of="ReturnRequest")
class CloseReturn:
    return_id = Identifier(required=True)
    admin_id = String(max_length=100, default="admin")


@commerce.command_handler(part_of=ReturnRequest)
class ReturnWorkflowHandler:
    @handle(RequestReturn)
    def request_return(self, command):
        order_repo = current_domain.repository_for(Order)
        order = order_repo.get(command.order_id)
        order.assert_owned_by(command.user_id)

        quantity = int(command.quantity)
        item = check_post_sale_request(
            order, command.item_id, quantity, get_settings().return_window_days, "return"
        )

        request = ReturnRequest.create(
            order_id=order.id,
            item_id=item.id,
            variant_id=item.variant_id,
            user_id=command.user_id,
            quantity=quantity,
            reason=command.reason,
            notes=command.notes,
        )
        current_domain.repository_for(ReturnRequest).add(request)

        if order.advance_if_allowed(OrderStatus.RETURN_REQUESTED, reason=command.reason, actor=str(command.user_id)):
            order_repo.add(order)
        invalidate_order(order.id, order.user_id)

        logger.info(
            "Return requested",
            return_id=str(request.id),
            order_id=str(order.id),
            item_id=str(item.id),
            quantity=quantity,
        )
        return str(request.id)

    @handle(CancelReturn)
    def cancel_return(self, command):
        repo = current_domain.repository_for(ReturnRequest)
        request = repo.get(command.return_id)
        if str(request.user_id) != str(command.user_id):
            raise ValidationError({"return": ["Unauthorized access to return"]})
        if request.current_status != ReturnStatus.REQUESTED:
            raise ValidationError({"status": ["Only requested returns can be cancelled"]})
        request.transition(ReturnStatus.CANCELLED, actor=command.user_id)
        repo.add(request)

    @handle(ApproveReturn)
    def approve_return(self, command):
        repo = current_domain.repository_for(ReturnRequest)
        request = repo.get(command.return_id)
        request.transition(ReturnStatus.APPROVED, actor=command.admin_id)
        repo.add(request)
        return {"return_id": str(request.id), "order_id": str(request.order_id), "user_id": str(request.user_id)}

    @handle(RejectReturn)
    def reject_return(self, command):
        repo = current_domain.repository_for(ReturnRequest)
        request = repo.get(command.return_id)
        request.transition(ReturnStatus.REJECTED, actor=command.admin_id, note=command.reason)
        repo.add(request)

    @handle(RecordReturnPickup)
    def record_return_pickup(self, command):
        repo = current_domain.repository_for(ReturnRequest)
        request = repo.get(command.return_id)
        request.schedule_pickup(
            PickupResult(
                pickup_id=command.pickup_id,
                scheduled_at=command.scheduled_at,
                carrier=command.carrier or "",
                tracking_id=command.tracking_id,
            )
        )
        repo.add(request)

    @handle(MarkReturnPickedUp)
    def mark_return_picked_up(self, command):
        repo = current_domain.repository_for(ReturnRequest)
        request = repo.get(command.return_id)
        request.mark_picked_up(actor=command.actor)
        repo.add(request)

    @handle(ReceiveReturn)
    def receive_return(self, command):
        repo = current_domain.repository_for(ReturnRequest)
        order_repo = current_domain.repository_for(Order)
        request = repo.get(command.return_id)

        if request.current_status in (ReturnStatus.REFUNDED, ReturnStatus.CLOSED):
            return {"return_id": str(request.id), "amount": request.refund_amount, "replayed": True}
        if request.current_status == ReturnStatus.RECEIVED:
            # Received earlier but the refund never completed: hand the plan back
            plan = plan_refund(request.order_id, request.refund_amount or 0.0)
            return {"return_id": str(request.id), "amount": request.refund_amount, "replayed": False, **plan}
        if request.current_status not in RECEIVABLE_STATUSES:
            raise ValidationError({"status": [f"Return cannot be received in status {request.status}"]})

        order = order_repo.get(request.order_id)
        item = order.item(request.item_id)

        amount = compute_refund(order, item, request.quantity, command.restocking_fee or 0.0)
        if command.refund_override is not None:
            amount = round(max(0.0, command.refund_override), 2)
        plan = plan_refund(order.id, amount)

        order.record_return(item.id, request.quantity)
        if order.fully_returned:
            order.advance_if_allowed(OrderStatus.RETURNED, reason="all_items_returned", actor=command.admin_id)
        order_repo.add(order)

        restock = command.restock if command.restock is not None else get_settings().auto_restock_on_approval
        if restock:
            return_stock(item.variant_id, request.quantity)
            invalidate_variants([item.variant_id])

        request.receive(
            command.condition,
            restocking_fee=command.restocking_fee or 0.0,
            amount=amount,
            planned=RefundRouting(plan["planned"]),
            actor=command.admin_id,
        )
        repo.add(request)
        invalidate_order(order.id, order.user_id)

        logger.info(
            "Return received",
            return_id=str(request.id),
            order_id=str(order.id),
            amount=amount,
            planned=plan["planned"],
            restocked=restock,
        )
        return {"return_id": str(request.id), "amount": amount, "replayed": False, **plan}

    @handle(CompleteReturnRefund)
    def complete_return_refund(self, command):
        repo = current_domain.repository_for(ReturnRequest)
        order_repo = current_domain.repository_for(Order)
        request = repo.get(command.return_id)
        if request.current_status == ReturnStatus.REFUNDED:
            return request.results

        order = order_repo.get(request.order_id)
        amount = request.refund_amount or 0.0

        gateway_amount = 0.0
        if command.payment_id and not command.fallback_to_wallet:
            payment_repo = current_domain.repository_for(Payment)
            payment = payment_repo.get(command.payment_id)
            gateway_amount = round(min(command.gateway_amount or 0.0, payment.amount - (payment.refunded_amount or 0.0)), 2)
            if gateway_amount > 0:
                payment.refund(gateway_amount)
                payment_repo.add(payment)
                order.record_payment(payment)
                order.record_refund(gateway_amount, reason="return_refund", payment_id=str(payment.id))

        wallet_amount = round(amount - gateway_amount, 2)
        wallet_transaction = None
        if wallet_amount > 0:
            wallet_transaction = wallet_ledger.credit(
                request.user_id,
                wallet_amount,
                ref_id=str(request.id),
                source=TransactionSource.RETURN_REFUND.value,
                note=f"Refund for return {request.id}",
            )
            order.record_refund(wallet_amount, reason="return_refund_wallet")
            invalidate_wallet(request.user_id)

        if gateway_amount > 0 and wallet_amount > 0:
            actual = RefundRouting.GATEWAY_AND_WALLET
        elif gateway_amount > 0:
            actual = RefundRouting.GATEWAY
        else:
            actual = RefundRouting.WALLET

        results = {
            "wallet_credit": wallet_amount if wallet_amount > 0 else 0.0,
            "gateway_refund": (
                {"refund_id": command.gateway_refund_id, "amount": gateway_amount} if gateway_amount > 0 else None
            ),
            "fallback_to_wallet": bool(command.fallback_to_wallet),
        }
        request.complete_refund(
            actual,
            results,
            gateway_refund_id=command.gateway_refund_id if gateway_amount > 0 else None,
            wallet_transaction_id=wallet_transaction.id if wallet_transaction else None,
        )
        repo.add(request)

        if order.fully_returned:
            order.advance_if_allowed(OrderStatus.REFUNDED, reason="return_refunded", actor="system")
        order_repo.add(order)
        invalidate_order(order.id, order.user_id)

        logger.info(
            "Return refunded",
            return_id=str(request.id),
            planned=request.planned_routing,
            actual=actual.value,
            wallet_credit=results["wallet_credit"],
            gateway_amount=gateway_amount,
        )
        return results

    @handle(CloseReturn)
    def close_return(self, command):
        repo = current_domain.repository_for(ReturnRequest)
        request = repo.get(command.return_id)
        request.transition(ReturnStatus.CLOSED, actor=command.admin_id)
        repo.add(request)
