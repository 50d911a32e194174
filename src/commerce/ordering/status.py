"""Administrative order status updates along the transition table."""

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Identifier, String
from protean.utils.globals import current_domain

from commerce.cache import invalidate_order
from commerce.domain import commerce
from commerce.ordering.order import Order, OrderStatus
from commerce.ordering.payment import Payment, PaymentStatus, payments_for_order

logger = structlog.get_logger(__name__)

_ADMIN_TARGETS = {
    OrderStatus.PROCESSING,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
    OrderStatus.RETURN_REQUESTED,
    OrderStatus.RETURNED,
    OrderStatus.REFUNDED,
    OrderStatus.EXCHANGE_REQUESTED,
    OrderStatus.EXCHANGE_APPROVED,
    OrderStatus.EXCHANGE_REJECTED,
    OrderStatus.PICKUP_SCHEDULED,
    OrderStatus.PICKED_UP,
    OrderStatus.EXCHANGED,
}


@commerce.command(part_of="Order")
class UpdateOrderStatus:
    order_id = Identifier(required=True)
    status = String(required=True, max_length=30)
    reason = String(max_length=500)
    actor = String(max_length=100, default="admin")


@commerce.command_handler(part_of=Order)
class UpdateOrderStatusHandler:
    @handle(UpdateOrderStatus)
    def update_order_status(self, command):
        try:
            target = OrderStatus(command.status)
        except ValueError as exc:
            raise ValidationError({"status": [f"Unknown order status: {command.status}"]}) from exc
        if target not in _ADMIN_TARGETS:
            raise ValidationError({"status": [f"Status {target.value} is set by checkout, not by hand"]})

        repo = current_domain.repository_for(Order)
        order = repo.get(command.order_id)

        if target == OrderStatus.DELIVERED:
            order.mark_delivered(actor=command.actor)
            self._collect_cod(order)
        else:
            order.transition(target, reason=command.reason, actor=command.actor)

        repo.add(order)
        invalidate_order(order.id, order.user_id)
        logger.info("Order status updated", order_id=str(order.id), status=order.status, actor=command.actor)
        return order.status

    @staticmethod
    def _collect_cod(order: Order) -> None:
        """Cash is collected at the door: pending COD payments succeed on delivery."""
        payment_repo = current_domain.repository_for(Payment)
        for payment in payments_for_order(order.id):
            if payment.status == PaymentStatus.COD_PENDING.value:
                payment.succeed()
                payment_repo.add(payment)
                order.record_payment(payment)
