"""ExchangeRequest aggregate (CQRS) — swap delivered units of a line for a replacement variant.

Lifecycle:
    REQUESTED → PICKUP_SCHEDULED | PICKED_UP | REJECTED | CANCELLED
    PICKUP_SCHEDULED → PICKED_UP | REJECTED
    PICKED_UP → QC_PENDING | REJECTED
    QC_PENDING → QC_PASSED | QC_FAILED
    QC_PASSED → CREDITED | WAITING_FOR_PAYMENT | NEW_ORDER_PLACED | EXCHANGE_COMPLETED
    CREDITED → NEW_ORDER_PLACED | EXCHANGE_COMPLETED
    WAITING_FOR_PAYMENT → NEW_ORDER_PLACED | REJECTED
    NEW_ORDER_PLACED → EXCHANGE_COMPLETED

The price comparison after QC uses x = original_price (discount-adjusted
unit price × quantity) and y = replacement price at selection × quantity.
"""

from enum import Enum

from protean.fields import Boolean, DateTime, Float, HasMany, Identifier, Integer, String, Text
from protean.utils.globals import current_domain

from commerce.domain import commerce
from commerce.errors import InvalidStateTransition
from commerce.utils.clock import utcnow


class ExchangeStatus(Enum):
    REQUESTED = "REQUESTED"
    PICKUP_SCHEDULED = "PICKUP_SCHEDULED"
    PICKED_UP = "PICKED_UP"
    QC_PENDING = "QC_PENDING"
    QC_PASSED = "QC_PASSED"
    QC_FAILED = "QC_FAILED"
    CREDITED = "CREDITED"
    WAITING_FOR_PAYMENT = "WAITING_FOR_PAYMENT"
    NEW_ORDER_PLACED = "NEW_ORDER_PLACED"
    EXCHANGE_COMPLETED = "EXCHANGE_COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class SelectionType(Enum):
    AUTO_PLACE = "auto_place"
    USER_PLACE = "user_place"


_VALID_TRANSITIONS = {
    ExchangeStatus.REQUESTED: {
        ExchangeStatus.PICKUP_SCHEDULED,
        ExchangeStatus.PICKED_UP,
        ExchangeStatus.REJECTED,
        ExchangeStatus.CANCELLED,
    },
    ExchangeStatus.PICKUP_SCHEDULED: {ExchangeStatus.PICKED_UP, ExchangeStatus.REJECTED},
    ExchangeStatus.PICKED_UP: {ExchangeStatus.QC_PENDING, ExchangeStatus.REJECTED},
    ExchangeStatus.QC_PENDING: {ExchangeStatus.QC_PASSED, ExchangeStatus.QC_FAILED},
    ExchangeStatus.QC_PASSED: {
        ExchangeStatus.CREDITED,
        ExchangeStatus.WAITING_FOR_PAYMENT,
        ExchangeStatus.NEW_ORDER_PLACED,
        ExchangeStatus.EXCHANGE_COMPLETED,
    },
    ExchangeStatus.CREDITED: {ExchangeStatus.NEW_ORDER_PLACED, ExchangeStatus.EXCHANGE_COMPLETED},
    ExchangeStatus.WAITING_FOR_PAYMENT: {ExchangeStatus.NEW_ORDER_PLACED, ExchangeStatus.REJECTED},
    ExchangeStatus.NEW_ORDER_PLACED: {ExchangeStatus.EXCHANGE_COMPLETED},
    ExchangeStatus.QC_FAILED: set(),
    ExchangeStatus.EXCHANGE_COMPLETED: set(),
    ExchangeStatus.REJECTED: set(),
    ExchangeStatus.CANCELLED: set(),
}

# Exchanges whose units have not yet come back through QC
OPEN_STATUSES = {
    ExchangeStatus.REQUESTED.value,
    ExchangeStatus.PICKUP_SCHEDULED.value,
    ExchangeStatus.PICKED_UP.value,
    ExchangeStatus.QC_PENDING.value,
}


@commerce.entity(part_of="ExchangeRequest")
class ExchangeHistoryEntry:
    from_status = String(max_length=30)
    to_status = String(max_length=30, required=True)
    actor = String(max_length=100)
    note = String(max_length=500)
    recorded_at = DateTime(required=True)


@commerce.aggregate
class ExchangeRequest:
    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    variant_id = Identifier(required=True)
    user_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    reason = String(max_length=500)
    status = String(choices=ExchangeStatus, default=ExchangeStatus.REQUESTED.value)

    original_price = Float(required=True, min_value=0.0)
    reverse_pickup_fee = Float(default=0.0)
    estimated_credit = Float(default=0.0)

    # Replacement selection
    replacement_variant_id = Identifier()
    replacement_product_id = Identifier()
    replacement_sku = String(max_length=64)
    replacement_price = Float()  # unit price at selection
    replacement_quantity = Integer()
    selection_type = String(choices=SelectionType, default=SelectionType.USER_PLACE.value)

    # Resource links
    reservation_id = Identifier()
    held_wallet_transaction_id = Identifier()
    held_amount = Float(default=0.0)
    credit_wallet_transaction_id = Identifier()
    credit_amount = Float(default=0.0)
    new_order_id = Identifier()

    # QC
    qc_passed = Boolean()
    qc_notes = Text()
    checked_by = String(max_length=100)

    # Reverse pickup
    pickup_id = String(max_length=255)
    pickup_carrier = String(max_length=100)
    pickup_tracking_id = String(max_length=255)
    pickup_scheduled_at = DateTime()
    picked_up_at = DateTime()

    history = HasMany(ExchangeHistoryEntry)
    created_at = DateTime()
    updated_at = DateTime()

    @classmethod
    def create(cls, order_id, item_id, variant_id, user_id, quantity, original_price, reverse_pickup_fee, reason=None):
        now = utcnow()
        original_price = round(original_price, 2)
        request = cls(
            order_id=order_id,
            item_id=item_id,
            variant_id=variant_id,
            user_id=user_id,
            quantity=quantity,
            reason=reason,
            status=ExchangeStatus.REQUESTED.value,
            original_price=original_price,
            reverse_pickup_fee=reverse_pickup_fee,
            estimated_credit=round(max(0.0, original_price - reverse_pickup_fee), 2),
            created_at=now,
            updated_at=now,
        )
        request.add_history(
            ExchangeHistoryEntry(to_status=ExchangeStatus.REQUESTED.value, actor=str(user_id), recorded_at=now)
        )
        return request

    @property
    def current_status(self) -> ExchangeStatus:
        return ExchangeStatus(self.status)

    @property
    def has_replacement(self) -> bool:
        return bool(self.replacement_variant_id)

    @property
    def replacement_total(self) -> float:
        """y: what the replacement costs at the price captured on selection."""
        if not self.has_replacement:
            return 0.0
        return round((self.replacement_price or 0.0) * (self.replacement_quantity or 1), 2)

    @property
    def differential(self) -> float:
        """y − x; positive when the customer owes money."""
        return round(self.replacement_total - self.original_price, 2)

    def transition(self, target: ExchangeStatus, actor=None, note=None) -> None:
        current = self.current_status
        if target not in _VALID_TRANSITIONS[current]:
            raise InvalidStateTransition("exchange", current.value, target.value)
        now = utcnow()
        self.status = target.value
        self.updated_at = now
        self.add_history(
            ExchangeHistoryEntry(
                from_status=current.value,
                to_status=target.value,
                actor=str(actor) if actor else None,
                note=note,
                recorded_at=now,
            )
        )

    def select_replacement(self, variant, quantity, selection_type, reservation_id) -> None:
        self.replacement_variant_id = variant.id
        self.replacement_product_id = variant.product_id
        self.replacement_sku = variant.sku
        self.replacement_price = variant.price
        self.replacement_quantity = quantity
        self.selection_type = selection_type
        self.reservation_id = reservation_id

    def record_hold(self, transaction) -> None:
        self.held_wallet_transaction_id = transaction.id
        self.held_amount = transaction.amount

    def schedule_pickup(self, pickup) -> None:
        self.transition(ExchangeStatus.PICKUP_SCHEDULED, actor="courier", note=pickup.pickup_id)
        self.pickup_id = pickup.pickup_id
        self.pickup_carrier = pickup.carrier
        self.pickup_tracking_id = pickup.tracking_id
        self.pickup_scheduled_at = pickup.scheduled_at

    def mark_picked_up(self, actor=None) -> None:
        self.transition(ExchangeStatus.PICKED_UP, actor=actor)
        self.picked_up_at = utcnow()

    def record_qc(self, passed: bool, notes=None, checked_by=None) -> None:
        target = ExchangeStatus.QC_PASSED if passed else ExchangeStatus.QC_FAILED
        self.transition(target, actor=checked_by, note=notes)
        self.qc_passed = passed
        self.qc_notes = notes
        self.checked_by = checked_by

    def mark_credited(self, transaction, actor=None) -> None:
        self.transition(ExchangeStatus.CREDITED, actor=actor, note=f"credit {transaction.amount}")
        self.credit_wallet_transaction_id = transaction.id
        self.credit_amount = transaction.amount

    def link_new_order(self, order_id, actor=None) -> None:
        self.transition(ExchangeStatus.NEW_ORDER_PLACED, actor=actor, note=str(order_id))
        self.new_order_id = order_id

    def complete(self, actor=None) -> None:
        self.transition(ExchangeStatus.EXCHANGE_COMPLETED, actor=actor)


def exchanges_for_line(order_id, item_id) -> list[ExchangeRequest]:
    return (
        current_domain.repository_for(ExchangeRequest)
        ._dao.query.filter(order_id=str(order_id), item_id=str(item_id))
        .all()
        .items
    )


def open_exchange_quantity(order_id, item_id) -> int:
    return sum(e.quantity for e in exchanges_for_line(order_id, item_id) if e.status in OPEN_STATUSES)
