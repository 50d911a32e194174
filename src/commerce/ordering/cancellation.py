"""Order cancellation — command and handler.

Pending, confirmed and processing orders can be cancelled. Everything the
order holds is given back through the checkout failure path; stock from a
settled order is put back on the shelf first. Captured gateway payments are
returned to the caller for refunding after commit.
"""

from dataclasses import asdict

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Identifier, String
from protean.utils.globals import current_domain

from commerce.checkout.failure import fail_checkout
from commerce.checkout.session import SessionStatus
from commerce.domain import commerce
from commerce.inventory import manager as reservations
from commerce.ordering.order import CANCELLABLE_STATES, Order, OrderStatus

logger = structlog.get_logger(__name__)


@commerce.command(part_of="Order")
class CancelOrder:
    order_id = Identifier(required=True)
    user_id = Identifier()  # required unless an admin cancels
    reason = String(max_length=500, default="cancelled_by_user")
    cancelled_by = String(max_length=100, default="user")


@commerce.command_handler(part_of=Order)
class CancelOrderHandler:
    @handle(CancelOrder)
    def cancel_order(self, command):
        order = current_domain.repository_for(Order).get(command.order_id)
        if command.cancelled_by != "admin":
            order.assert_owned_by(command.user_id)
        if order.current_status not in CANCELLABLE_STATES:
            raise ValidationError({"status": [f"Order cannot be cancelled in status {order.status}"]})

        restocked = 0
        if order.current_status != OrderStatus.PENDING:
            restocked = reservations.restock_consumed(order.id)

        refunds = fail_checkout(
            order,
            command.reason or "cancelled",
            target=OrderStatus.CANCELLED,
            actor=command.cancelled_by,
            session_outcome=SessionStatus.FAILED,
        )
        logger.info(
            "Order cancelled",
            order_id=str(order.id),
            cancelled_by=command.cancelled_by,
            restocked_reservations=restocked,
        )
        return {"order_id": str(order.id), "gateway_refunds": [asdict(refund) for refund in refunds]}
