"""Checkout — PlaceOrder command and handler.

Creates a pending order from the user's cart or from the submitted items.
Prices always come from the catalog. A coupon code is validated up front
but its usage is reserved only when payment starts. An idempotency key is
scoped to the user: replaying it returns the order created the first time.
Concurrent requests carrying the same key are serialized on a lock, so the
lookup and the insert cannot interleave.
"""

import json

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Boolean, Identifier, String, Text
from protean.utils.globals import current_domain

from commerce.cache import invalidate_order
from commerce.catalog.pricing import revalidate_items
from commerce.coupons import service as coupon_service
from commerce.domain import commerce
from commerce.locking import hold, idempotency_lock_key
from commerce.ordering.cart import cart_for
from commerce.ordering.order import Order, OrderSource

logger = structlog.get_logger(__name__)


@commerce.command(part_of="Order")
class PlaceOrder:
    user_id = Identifier(required=True)
    items = Text()  # JSON: [{"variant_id": ..., "quantity": ...}]; the cart is used when empty
    from_cart = Boolean(default=False)
    shipping_address = Text()  # JSON: address dict
    coupon_code = String(max_length=50)
    idempotency_key = String(max_length=255)


def order_for_key(user_id, idempotency_key) -> Order | None:
    if not idempotency_key:
        return None
    orders = (
        current_domain.repository_for(Order)
        ._dao.query.filter(user_id=str(user_id), idempotency_key=idempotency_key)
        .all()
        .items
    )
    return orders[0] if orders else None


def submit_order(command: PlaceOrder) -> str:
    """Process PlaceOrder. A keyed request holds the key until its order is committed."""
    if not command.idempotency_key:
        return current_domain.process(command, asynchronous=False)
    with hold(idempotency_lock_key(command.user_id, command.idempotency_key)):
        return current_domain.process(command, asynchronous=False)


@commerce.command_handler(part_of=Order)
class PlaceOrderHandler:
    @handle(PlaceOrder)
    def place_order(self, command):
        existing = order_for_key(command.user_id, command.idempotency_key)
        if existing is not None:
            logger.info("Idempotent checkout replay", order_id=str(existing.id), user_id=str(command.user_id))
            return str(existing.id)

        items = json.loads(command.items) if isinstance(command.items, str) else command.items
        source = OrderSource.DIRECT.value
        if command.from_cart or not items:
            cart = cart_for(command.user_id)
            if cart is None or not cart.items:
                raise ValidationError({"items": ["Cart is empty"]})
            items = cart.as_checkout_items()
            source = OrderSource.CART.value

        lines, subtotal = revalidate_items(items)

        coupon = None
        if command.coupon_code:
            coupon = coupon_service.find_by_code(command.coupon_code)
            applicable = coupon_service.applicable_subtotal(coupon, lines) if coupon else 0.0
            coupon_service.validate(coupon, command.user_id, subtotal, applicable)

        address = (
            json.loads(command.shipping_address)
            if isinstance(command.shipping_address, str)
            else command.shipping_address
        )
        order = Order.create(
            user_id=command.user_id,
            lines=lines,
            shipping_address=address,
            idempotency_key=command.idempotency_key,
            coupon_id=coupon.id if coupon else None,
            coupon_code=coupon.code if coupon else None,
            source=source,
        )
        current_domain.repository_for(Order).add(order)
        invalidate_order(order.id, order.user_id)

        logger.info(
            "Order placed",
            order_id=str(order.id),
            user_id=str(command.user_id),
            subtotal=subtotal,
            source=source,
            coupon=order.coupon_code,
        )
        return str(order.id)
