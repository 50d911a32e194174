"""Domain events for orders and payments.

Raised by the aggregates and written to the event store when the handler's
Unit of Work commits.
"""

from protean.fields import DateTime, Float, Identifier, Integer, String

from commerce.domain import commerce


@commerce.event(part_of="Order")
class OrderPlaced:
    __version__ = 1

    order_id = Identifier(required=True)
    user_id = Identifier(required=True)
    subtotal = Float(required=True)
    item_count = Integer(required=True)
    source = String()
    placed_at = DateTime(required=True)


@commerce.event(part_of="Order")
class OrderStatusChanged:
    __version__ = 1

    order_id = Identifier(required=True)
    user_id = Identifier(required=True)
    from_status = String(required=True)
    to_status = String(required=True)
    reason = String()
    changed_at = DateTime(required=True)


@commerce.event(part_of="Order")
class OrderConfirmed:
    __version__ = 1

    order_id = Identifier(required=True)
    user_id = Identifier(required=True)
    payment_method = String(required=True)
    total = Float(required=True)
    confirmed_at = DateTime(required=True)


@commerce.event(part_of="Order")
class OrderFailed:
    __version__ = 1

    order_id = Identifier(required=True)
    user_id = Identifier(required=True)
    reason = String(required=True)
    failed_at = DateTime(required=True)


@commerce.event(part_of="Order")
class OrderCancelled:
    __version__ = 1

    order_id = Identifier(required=True)
    user_id = Identifier(required=True)
    reason = String()
    cancelled_by = String()
    cancelled_at = DateTime(required=True)


@commerce.event(part_of="Payment")
class PaymentSucceeded:
    __version__ = 1

    payment_id = Identifier(required=True)
    order_id = Identifier(required=True)
    method = String(required=True)
    amount = Float(required=True)
    gateway_payment_id = String()
    succeeded_at = DateTime(required=True)


@commerce.event(part_of="Payment")
class PaymentFailed:
    __version__ = 1

    payment_id = Identifier(required=True)
    order_id = Identifier(required=True)
    reason = String(required=True)
    failed_at = DateTime(required=True)


@commerce.event(part_of="Payment")
class PaymentRefunded:
    __version__ = 1

    payment_id = Identifier(required=True)
    order_id = Identifier(required=True)
    amount = Float(required=True)
    refunded_at = DateTime(required=True)
