"""Order aggregate (CQRS) — the order lifecycle state machine and line ledger.

Every status change goes through `transition`, which checks the explicit
transition table and appends a `status_change` annotation. Annotations are
typed rows (status changes, cancellations, payment failures, refunds, notes)
rather than a free-form metadata map.

Lifecycle:
    pending → confirmed | failed | cancelled
    confirmed → processing | cancelled | refunded
    processing → out-for-delivery | cancelled
    out-for-delivery → delivered | return-requested
    delivered → return-requested | exchange-requested | refunded
    return-requested → returned | picked-up | exchange-requested
    returned → refunded
    exchange-requested → exchange-approved | exchange-rejected
    exchange-approved → pickup-scheduled | picked-up | exchanged
    pickup-scheduled → picked-up
    picked-up → refunded | exchanged | exchange-rejected
    exchange-rejected → returned
    refunded, cancelled, failed, exchanged: terminal

Invariants: total = max(0, subtotal − discount_amount); the line totals add
up to the subtotal; returned_quantity never exceeds quantity on any line.
"""

import json
from enum import Enum

import structlog
from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import DateTime, Float, HasMany, Identifier, Integer, String, Text

from commerce.domain import commerce
from commerce.errors import InvalidStateTransition
from commerce.ordering.events import (
    OrderCancelled,
    OrderConfirmed,
    OrderFailed,
    OrderPlaced,
    OrderStatusChanged,
)
from commerce.utils.clock import utcnow

logger = structlog.get_logger(__name__)


class OrderStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    OUT_FOR_DELIVERY = "out-for-delivery"
    DELIVERED = "delivered"
    RETURN_REQUESTED = "return-requested"
    RETURNED = "returned"
    EXCHANGE_REQUESTED = "exchange-requested"
    EXCHANGE_APPROVED = "exchange-approved"
    PICKUP_SCHEDULED = "pickup-scheduled"
    PICKED_UP = "picked-up"
    EXCHANGED = "exchanged"
    EXCHANGE_REJECTED = "exchange-rejected"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentMethodChoice(Enum):
    NONE = "none"
    COD = "cod"
    WALLET = "wallet"
    RAZORPAY = "razorpay"
    PAYU = "payu"


class OrderSource(Enum):
    CART = "cart"
    DIRECT = "direct"
    EXCHANGE = "exchange"


class AnnotationKind(Enum):
    STATUS_CHANGE = "status_change"
    CANCELLATION = "cancellation"
    PAYMENT_FAILURE = "payment_failure"
    REFUND = "refund"
    NOTE = "note"


_VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED, OrderStatus.RETURN_REQUESTED},
    OrderStatus.DELIVERED: {
        OrderStatus.RETURN_REQUESTED,
        OrderStatus.EXCHANGE_REQUESTED,
        OrderStatus.REFUNDED,
    },
    OrderStatus.RETURN_REQUESTED: {
        OrderStatus.RETURNED,
        OrderStatus.PICKED_UP,
        OrderStatus.EXCHANGE_REQUESTED,
    },
    OrderStatus.RETURNED: {OrderStatus.REFUNDED},
    OrderStatus.EXCHANGE_REQUESTED: {OrderStatus.EXCHANGE_APPROVED, OrderStatus.EXCHANGE_REJECTED},
    OrderStatus.EXCHANGE_APPROVED: {
        OrderStatus.PICKUP_SCHEDULED,
        OrderStatus.PICKED_UP,
        OrderStatus.EXCHANGED,
    },
    OrderStatus.PICKUP_SCHEDULED: {OrderStatus.PICKED_UP},
    OrderStatus.PICKED_UP: {
        OrderStatus.REFUNDED,
        OrderStatus.EXCHANGED,
        OrderStatus.EXCHANGE_REJECTED,
    },
    OrderStatus.EXCHANGE_REJECTED: {OrderStatus.RETURNED},
    OrderStatus.REFUNDED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.FAILED: set(),
    OrderStatus.EXCHANGED: set(),
}

CANCELLABLE_STATES = {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}

# States an order can be in once goods have reached the customer
POST_DELIVERY_STATES = {
    OrderStatus.DELIVERED,
    OrderStatus.RETURN_REQUESTED,
    OrderStatus.RETURNED,
    OrderStatus.EXCHANGE_REQUESTED,
    OrderStatus.EXCHANGE_APPROVED,
    OrderStatus.PICKUP_SCHEDULED,
    OrderStatus.PICKED_UP,
    OrderStatus.EXCHANGE_REJECTED,
    OrderStatus.EXCHANGED,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in _VALID_TRANSITIONS.get(current, set())


@commerce.entity(part_of="Order")
class OrderItem:
    product_id = Identifier(required=True)
    variant_id = Identifier(required=True)
    sku = String(max_length=64)
    title = String(max_length=255)
    quantity = Integer(required=True, min_value=1)
    unit_price = Float(required=True, min_value=0.0)
    line_total = Float(required=True, min_value=0.0)
    item_discount = Float(default=0.0)
    price_after_discount = Float()  # line total after the distributed discount
    returned_quantity = Integer(default=0)

    @property
    def returnable_quantity(self) -> int:
        return self.quantity - (self.returned_quantity or 0)

    @property
    def unit_price_after_discount(self) -> float:
        effective = self.price_after_discount if self.price_after_discount is not None else self.line_total
        return effective / self.quantity


@commerce.entity(part_of="Order")
class OrderPaymentSnapshot:
    payment_id = Identifier(required=True)
    method = String(max_length=20, required=True)
    amount = Float(required=True)
    status = String(max_length=30, required=True)
    gateway_payment_id = String(max_length=255)


@commerce.entity(part_of="Order")
class OrderAnnotation:
    kind = String(choices=AnnotationKind, required=True)
    from_status = String(max_length=30)
    to_status = String(max_length=30)
    reason = String(max_length=500)
    actor = String(max_length=100)
    payment_id = Identifier()
    amount = Float()
    recorded_at = DateTime(required=True)


def assert_owner(owner_id, user_id) -> None:
    if str(owner_id) != str(user_id):
        raise ValidationError({"order": ["Unauthorized access to order"]})


@commerce.aggregate
class Order:
    user_id = Identifier(required=True)
    items = HasMany(OrderItem)
    payments = HasMany(OrderPaymentSnapshot)
    annotations = HasMany(OrderAnnotation)
    subtotal = Float(default=0.0)
    discount_amount = Float(default=0.0)
    total = Float(default=0.0)
    coupon_id = Identifier()
    coupon_code = String(max_length=50)
    status = String(choices=OrderStatus, default=OrderStatus.PENDING.value)
    payment_method = String(choices=PaymentMethodChoice, default=PaymentMethodChoice.NONE.value)
    shipping_address = Text()  # JSON address dict
    idempotency_key = String(max_length=255)
    source = String(choices=OrderSource, default=OrderSource.DIRECT.value)
    confirmed_at = DateTime()
    delivered_at = DateTime()
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def total_matches_subtotal_less_discount(self):
        expected = round(max(0.0, (self.subtotal or 0.0) - (self.discount_amount or 0.0)), 2)
        if abs((self.total or 0.0) - expected) > 0.005:
            raise ValidationError({"total": ["Order total must equal subtotal less discount"]})

    @invariant.post
    def line_totals_add_up_to_subtotal(self):
        if not self.items:
            return
        if abs(sum(item.line_total for item in self.items) - (self.subtotal or 0.0)) > 0.01:
            raise ValidationError({"subtotal": ["Line totals must add up to the subtotal"]})

    @invariant.post
    def returned_quantity_within_quantity(self):
        for item in self.items or []:
            if (item.returned_quantity or 0) > item.quantity:
                raise ValidationError({"items": ["Returned quantity cannot exceed purchased quantity"]})

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        user_id,
        lines,
        shipping_address=None,
        idempotency_key=None,
        coupon_id=None,
        coupon_code=None,
        source=OrderSource.DIRECT.value,
        discount_shares=None,
    ):
        """Create a pending order from priced lines.

        `discount_shares` (one per line) pre-applies a distributed discount;
        checkout orders get theirs when the coupon is reserved at payment time.
        """
        if not lines:
            raise ValidationError({"items": ["An order needs at least one item"]})

        now = utcnow()
        shares = discount_shares or [0.0] * len(lines)
        subtotal = round(sum(line.line_total for line in lines), 2)
        discount = round(sum(shares), 2)

        order = cls(
            user_id=user_id,
            subtotal=subtotal,
            discount_amount=discount,
            total=round(max(0.0, subtotal - discount), 2),
            coupon_id=coupon_id,
            coupon_code=coupon_code,
            status=OrderStatus.PENDING.value,
            payment_method=PaymentMethodChoice.NONE.value,
            shipping_address=json.dumps(shipping_address or {}),
            idempotency_key=idempotency_key,
            source=source,
            created_at=now,
            updated_at=now,
        )
        with atomic_change(order):
            for line, share in zip(lines, shares, strict=True):
                order.add_items(
                    OrderItem(
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        sku=line.sku,
                        title=line.title,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        line_total=line.line_total,
                        item_discount=share,
                        price_after_discount=round(line.line_total - share, 2),
                        returned_quantity=0,
                    )
                )

        order.raise_(
            OrderPlaced(
                order_id=str(order.id),
                user_id=str(user_id),
                subtotal=subtotal,
                item_count=sum(line.quantity for line in lines),
                source=source,
                placed_at=now,
            )
        )
        return order

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def current_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    def item(self, item_id) -> OrderItem:
        item = next((i for i in self.items if str(i.id) == str(item_id)), None)
        if item is None:
            raise ValidationError({"item_id": ["Order item not found"]})
        return item

    def assert_owned_by(self, user_id) -> None:
        assert_owner(self.user_id, user_id)

    def address(self) -> dict:
        return json.loads(self.shipping_address) if self.shipping_address else {}

    # -------------------------------------------------------------------
    # Annotations
    # -------------------------------------------------------------------
    def annotate(self, kind: AnnotationKind, **fields) -> None:
        self.add_annotations(OrderAnnotation(kind=kind.value, recorded_at=utcnow(), **fields))

    def annotations_of(self, kind: AnnotationKind) -> list:
        return [a for a in self.annotations if a.kind == kind.value]

    # -------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------
    def transition(self, target: OrderStatus, reason: str | None = None, actor: str | None = None) -> None:
        current = self.current_status
        if not can_transition(current, target):
            logger.error(
                "Rejected order transition",
                order_id=str(self.id),
                from_status=current.value,
                to_status=target.value,
            )
            raise InvalidStateTransition("order", current.value, target.value)

        now = utcnow()
        self.status = target.value
        self.updated_at = now
        self.annotate(
            AnnotationKind.STATUS_CHANGE,
            from_status=current.value,
            to_status=target.value,
            reason=reason,
            actor=actor,
        )
        self.raise_(
            OrderStatusChanged(
                order_id=str(self.id),
                user_id=str(self.user_id),
                from_status=current.value,
                to_status=target.value,
                reason=reason,
                changed_at=now,
            )
        )

    def advance_if_allowed(self, target: OrderStatus, reason: str | None = None, actor: str | None = None) -> bool:
        """Move the summary status along when the table allows it; post-sale flows use this."""
        if not can_transition(self.current_status, target):
            return False
        self.transition(target, reason=reason, actor=actor)
        return True

    # -------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------
    def reprice(self, lines, discount_shares) -> None:
        """Replace prices and discounts from a fresh catalog read. Pending orders only."""
        if self.current_status != OrderStatus.PENDING:
            raise ValidationError({"status": ["Only pending orders can be repriced"]})

        by_id = {str(item.id): item for item in self.items}
        with atomic_change(self):
            for line, share in zip(lines, discount_shares, strict=True):
                item = by_id[str(line.item_id)]
                item.unit_price = line.unit_price
                item.line_total = line.line_total
                item.item_discount = share
                item.price_after_discount = round(line.line_total - share, 2)
            self.subtotal = round(sum(line.line_total for line in lines), 2)
            self.discount_amount = round(sum(discount_shares), 2)
            self.total = round(max(0.0, self.subtotal - self.discount_amount), 2)
            self.updated_at = utcnow()

    def record_payment(self, payment) -> None:
        """Upsert the snapshot of a Payment record."""
        snapshot = next((p for p in self.payments if str(p.payment_id) == str(payment.id)), None)
        if snapshot is None:
            self.add_payments(
                OrderPaymentSnapshot(
                    payment_id=str(payment.id),
                    method=payment.method,
                    amount=payment.amount,
                    status=payment.status,
                    gateway_payment_id=payment.gateway_payment_id,
                )
            )
        else:
            snapshot.status = payment.status
            snapshot.gateway_payment_id = payment.gateway_payment_id

    def confirm(self, payment_method: str) -> None:
        """Settle the order. Reachable once: a second confirm fails the transition check."""
        self.transition(OrderStatus.CONFIRMED, reason="payment_settled")
        now = utcnow()
        self.payment_method = payment_method
        self.confirmed_at = now
        self.raise_(
            OrderConfirmed(
                order_id=str(self.id),
                user_id=str(self.user_id),
                payment_method=payment_method,
                total=self.total,
                confirmed_at=now,
            )
        )

    def fail(self, reason: str, payment_id=None) -> None:
        self.transition(OrderStatus.FAILED, reason=reason, actor="system")
        self.annotate(AnnotationKind.PAYMENT_FAILURE, reason=reason, payment_id=payment_id)
        self.raise_(
            OrderFailed(
                order_id=str(self.id),
                user_id=str(self.user_id),
                reason=reason,
                failed_at=utcnow(),
            )
        )

    def cancel(self, reason: str, cancelled_by: str) -> None:
        if self.current_status not in CANCELLABLE_STATES:
            raise ValidationError({"status": ["Order cannot be cancelled in its current state"]})
        self.transition(OrderStatus.CANCELLED, reason=reason, actor=cancelled_by)
        self.annotate(AnnotationKind.CANCELLATION, reason=reason, actor=cancelled_by)
        self.raise_(
            OrderCancelled(
                order_id=str(self.id),
                user_id=str(self.user_id),
                reason=reason,
                cancelled_by=cancelled_by,
                cancelled_at=utcnow(),
            )
        )

    # -------------------------------------------------------------------
    # Fulfilment and post-sale
    # -------------------------------------------------------------------
    def mark_delivered(self, actor: str | None = None) -> None:
        self.transition(OrderStatus.DELIVERED, actor=actor)
        self.delivered_at = utcnow()

    def record_return(self, item_id, quantity: int) -> None:
        item = self.item(item_id)
        if quantity > item.returnable_quantity:
            raise ValidationError({"quantity": ["Return would exceed purchased quantity"]})
        item.returned_quantity = (item.returned_quantity or 0) + quantity
        self.updated_at = utcnow()

    @property
    def fully_returned(self) -> bool:
        return all((item.returned_quantity or 0) >= item.quantity for item in self.items)

    def record_refund(self, amount: float, reason: str, payment_id=None) -> None:
        self.annotate(AnnotationKind.REFUND, amount=amount, reason=reason, payment_id=payment_id)
        self.updated_at = utcnow()
