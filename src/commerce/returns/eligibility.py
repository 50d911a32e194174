"""Post-sale eligibility shared by returns and exchanges.

A line's units can be claimed once: returned units, units held by open
returns and units held by open exchanges together never exceed the
purchased quantity.
"""

from datetime import timedelta

from protean.exceptions import ValidationError

from commerce.exchanges.exchange_request import open_exchange_quantity
from commerce.ordering.order import POST_DELIVERY_STATES, Order, OrderItem
from commerce.returns.return_request import open_return_quantity
from commerce.utils.clock import as_utc, utcnow


def claimable_quantity(order: Order, item: OrderItem) -> int:
    claimed = open_return_quantity(order.id, item.id) + open_exchange_quantity(order.id, item.id)
    return max(0, item.returnable_quantity - claimed)


def check_post_sale_request(order: Order, item_id, quantity: int, window_days: int, kind: str) -> OrderItem:
    """Validate a return/exchange request against delivery, window and quantity."""
    if order.current_status not in POST_DELIVERY_STATES or order.delivered_at is None:
        raise ValidationError({"order": [f"Only delivered orders are eligible for {kind}"]})
    if as_utc(order.delivered_at) + timedelta(days=window_days) < utcnow():
        raise ValidationError({"order": [f"The {window_days}-day {kind} window has closed"]})

    if quantity is None or quantity < 1:
        raise ValidationError({"quantity": ["Quantity must be at least 1"]})

    item = order.item(item_id)
    available = claimable_quantity(order, item)
    if quantity > available:
        raise ValidationError({"quantity": [f"Only {available} unit(s) of this item are eligible for {kind}"]})
    return item
