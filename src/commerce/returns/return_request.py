"""ReturnRequest aggregate (CQRS) — a customer's request to send back units of one order line.

Lifecycle:
    requested → approved | rejected | cancelled | received
    approved → pickup_scheduled | picked_up | received
    pickup_scheduled → picked_up | received
    picked_up → received
    received → inspected | refunded
    inspected → refunded
    refunded → closed
    rejected → closed

The refund decision is taken on receipt: the amount, the planned routing
(original gateway instrument or wallet) and, once the money has moved, the
actual routing with per-channel results are kept on the request for audit.
"""

import json
from enum import Enum

from protean.fields import DateTime, Float, HasMany, Identifier, Integer, String, Text
from protean.utils.globals import current_domain

from commerce.domain import commerce
from commerce.errors import InvalidStateTransition
from commerce.utils.clock import utcnow


class ReturnStatus(Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    RECEIVED = "received"
    INSPECTED = "inspected"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class ReturnCondition(Enum):
    NEW = "new"
    OPENED = "opened"
    DAMAGED = "damaged"
    MISSING_PARTS = "missing_parts"
    OTHER = "other"


class RefundRouting(Enum):
    GATEWAY = "gateway"
    GATEWAY_AND_WALLET = "gateway+wallet"
    WALLET = "wallet"


_VALID_TRANSITIONS = {
    ReturnStatus.REQUESTED: {
        ReturnStatus.APPROVED,
        ReturnStatus.REJECTED,
        ReturnStatus.CANCELLED,
        ReturnStatus.RECEIVED,
    },
    ReturnStatus.APPROVED: {ReturnStatus.PICKUP_SCHEDULED, ReturnStatus.PICKED_UP, ReturnStatus.RECEIVED},
    ReturnStatus.PICKUP_SCHEDULED: {ReturnStatus.PICKED_UP, ReturnStatus.RECEIVED},
    ReturnStatus.PICKED_UP: {ReturnStatus.RECEIVED},
    ReturnStatus.RECEIVED: {ReturnStatus.INSPECTED, ReturnStatus.REFUNDED},
    ReturnStatus.INSPECTED: {ReturnStatus.REFUNDED},
    ReturnStatus.REFUNDED: {ReturnStatus.CLOSED},
    ReturnStatus.REJECTED: {ReturnStatus.CLOSED},
    ReturnStatus.CLOSED: set(),
    ReturnStatus.CANCELLED: set(),
}

# Returns still holding units of their line
OPEN_STATUSES = {
    ReturnStatus.REQUESTED.value,
    ReturnStatus.APPROVED.value,
    ReturnStatus.PICKUP_SCHEDULED.value,
    ReturnStatus.PICKED_UP.value,
}


@commerce.entity(part_of="ReturnRequest")
class ReturnHistoryEntry:
    from_status = String(max_length=30)
    to_status = String(max_length=30, required=True)
    actor = String(max_length=100)
    note = String(max_length=500)
    recorded_at = DateTime(required=True)


@commerce.aggregate
class ReturnRequest:
    order_id = Identifier(required=True)
    item_id = Identifier(required=True)
    variant_id = Identifier(required=True)
    user_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    reason = String(max_length=500)
    notes = Text()
    status = String(choices=ReturnStatus, default=ReturnStatus.REQUESTED.value)
    condition = String(choices=ReturnCondition)
    restocking_fee = Float(default=0.0)

    # Refund
    refund_amount = Float()
    gateway_refund_id = String(max_length=255)
    wallet_transaction_id = Identifier()
    refunded_at = DateTime()
    planned_routing = String(choices=RefundRouting)
    actual_routing = String(choices=RefundRouting)
    refund_results = Text()  # JSON: wallet_credit, gateway_refund, fallback_to_wallet

    # Reverse pickup
    pickup_id = String(max_length=255)
    pickup_carrier = String(max_length=100)
    pickup_tracking_id = String(max_length=255)
    pickup_scheduled_at = DateTime()
    picked_up_at = DateTime()

    history = HasMany(ReturnHistoryEntry)
    created_at = DateTime()
    updated_at = DateTime()

    @classmethod
    def create(cls, order_id, item_id, variant_id, user_id, quantity, reason=None, notes=None):
        now = utcnow()
        request = cls(
            order_id=order_id,
            item_id=item_id,
            variant_id=variant_id,
            user_id=user_id,
            quantity=quantity,
            reason=reason,
            notes=notes,
            status=ReturnStatus.REQUESTED.value,
            created_at=now,
            updated_at=now,
        )
        request.add_history(
            ReturnHistoryEntry(to_status=ReturnStatus.REQUESTED.value, actor=str(user_id), recorded_at=now)
        )
        return request

    @property
    def current_status(self) -> ReturnStatus:
        return ReturnStatus(self.status)

    @property
    def results(self) -> dict:
        return json.loads(self.refund_results) if self.refund_results else {}

    def transition(self, target: ReturnStatus, actor=None, note=None) -> None:
        current = self.current_status
        if target not in _VALID_TRANSITIONS[current]:
            raise InvalidStateTransition("return", current.value, target.value)
        now = utcnow()
        self.status = target.value
        self.updated_at = now
        self.add_history(
            ReturnHistoryEntry(
                from_status=current.value,
                to_status=target.value,
                actor=str(actor) if actor else None,
                note=note,
                recorded_at=now,
            )
        )

    def schedule_pickup(self, pickup) -> None:
        self.transition(ReturnStatus.PICKUP_SCHEDULED, actor="courier", note=pickup.pickup_id)
        self.pickup_id = pickup.pickup_id
        self.pickup_carrier = pickup.carrier
        self.pickup_tracking_id = pickup.tracking_id
        self.pickup_scheduled_at = pickup.scheduled_at

    def mark_picked_up(self, actor=None) -> None:
        self.transition(ReturnStatus.PICKED_UP, actor=actor)
        self.picked_up_at = utcnow()

    def receive(self, condition, restocking_fee: float, amount: float, planned: RefundRouting, actor=None) -> None:
        self.transition(ReturnStatus.RECEIVED, actor=actor, note=condition)
        self.condition = condition
        self.restocking_fee = restocking_fee
        self.refund_amount = amount
        self.planned_routing = planned.value

    def complete_refund(self, actual: RefundRouting, results: dict, gateway_refund_id=None, wallet_transaction_id=None):
        self.transition(ReturnStatus.REFUNDED, actor="system", note=actual.value)
        self.actual_routing = actual.value
        self.refund_results = json.dumps(results)
        self.gateway_refund_id = gateway_refund_id
        self.wallet_transaction_id = wallet_transaction_id
        self.refunded_at = utcnow()


def returns_for_line(order_id, item_id) -> list[ReturnRequest]:
    return (
        current_domain.repository_for(ReturnRequest)
        ._dao.query.filter(order_id=str(order_id), item_id=str(item_id))
        .all()
        .items
    )


def open_return_quantity(order_id, item_id) -> int:
    return sum(r.quantity for r in returns_for_line(order_id, item_id) if r.status in OPEN_STATUSES)
