"""StockReservation aggregate (CQRS) — a time-bounded hold on variant stock.

The quantities were debited from variant stock when the reservation was
created. Consuming makes that debit permanent; releasing or expiring credits
it back. Status only leaves ACTIVE once, which is what makes the credit-back
happen exactly once.

    ACTIVE → CONSUMED   (payment settled)
    ACTIVE → RELEASED   (failure, cancellation, QC failure)
    ACTIVE → EXPIRED    (TTL sweep)
"""

from datetime import datetime, timedelta
from enum import Enum

from protean.fields import DateTime, Float, HasMany, Identifier, Integer, String

from commerce.domain import commerce
from commerce.errors import InvalidStateTransition
from commerce.utils.clock import as_utc, utcnow


class ReservationStatus(Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    RELEASED = "released"
    EXPIRED = "expired"


class ReservationPurpose(Enum):
    ORDER = "order"
    EXCHANGE = "exchange"


@commerce.entity(part_of="StockReservation")
class ReservationLine:
    variant_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    price = Float(default=0.0)


@commerce.aggregate
class StockReservation:
    order_id = Identifier()
    exchange_id = Identifier()
    payment_id = Identifier()
    purpose = String(choices=ReservationPurpose, default=ReservationPurpose.ORDER.value)
    lines = HasMany(ReservationLine)
    status = String(choices=ReservationStatus, default=ReservationStatus.ACTIVE.value)
    reserved_until = DateTime(required=True)
    created_at = DateTime()
    closed_at = DateTime()

    @classmethod
    def create(cls, lines, ttl_minutes, order_id=None, exchange_id=None, purpose=ReservationPurpose.ORDER.value):
        now = utcnow()
        reservation = cls(
            order_id=order_id,
            exchange_id=exchange_id,
            purpose=purpose,
            status=ReservationStatus.ACTIVE.value,
            reserved_until=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )
        for variant_id, quantity, price in lines:
            reservation.add_lines(ReservationLine(variant_id=variant_id, quantity=quantity, price=price))
        return reservation

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.ACTIVE.value

    def is_expired(self, as_of: datetime | None = None) -> bool:
        return as_utc(self.reserved_until) < as_utc(as_of or utcnow())

    def link_payment(self, payment_id) -> None:
        self.payment_id = payment_id

    def _close(self, target: ReservationStatus) -> None:
        if not self.is_active:
            raise InvalidStateTransition("reservation", self.status, target.value)
        self.status = target.value
        self.closed_at = utcnow()

    def consume(self, payment_id=None) -> None:
        if payment_id is not None:
            self.payment_id = payment_id
        self._close(ReservationStatus.CONSUMED)

    def release(self) -> None:
        self._close(ReservationStatus.RELEASED)

    def expire(self) -> None:
        self._close(ReservationStatus.EXPIRED)
