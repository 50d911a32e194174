"""Reservation manager — reserve, consume and release stock holds.

All functions run inside the caller's Unit of Work. `reserve` debits stock
line by line through the ledger primitive; if any line cannot be covered it
credits back the lines already taken (in reverse order) before raising, so
the caller never sees a half-applied reservation even when it chooses to
swallow the error.
"""

import structlog
from protean.utils.globals import current_domain

from commerce.catalog.variant import Variant
from commerce.config import get_settings
from commerce.errors import InsufficientStock
from commerce.inventory.reservation import ReservationPurpose, ReservationStatus, StockReservation
from commerce.ledger.primitives import return_stock, take_stock

logger = structlog.get_logger(__name__)


def _variant_stock(variant_id):
    return current_domain.repository_for(Variant).get(variant_id).stock


def reserve(items, order_id=None, exchange_id=None, purpose=ReservationPurpose.ORDER.value, ttl_minutes=None):
    """Debit stock for every (variant_id, quantity, price) and persist an active hold."""
    settings = get_settings()
    if ttl_minutes is None:
        ttl_minutes = (
            settings.exchange_reservation_ttl_minutes
            if purpose == ReservationPurpose.EXCHANGE.value
            else settings.reservation_ttl_minutes
        )

    taken = []
    for variant_id, quantity, _price in items:
        if not take_stock(variant_id, quantity):
            available = _variant_stock(variant_id)
            for done_variant, done_quantity in reversed(taken):
                return_stock(done_variant, done_quantity)
            logger.info(
                "Stock reservation refused",
                order_id=str(order_id) if order_id else None,
                variant_id=str(variant_id),
                requested=quantity,
                available=available,
            )
            raise InsufficientStock(variant_id, available=available, requested=quantity)
        taken.append((variant_id, quantity))

    reservation = StockReservation.create(
        items, ttl_minutes=ttl_minutes, order_id=order_id, exchange_id=exchange_id, purpose=purpose
    )
    current_domain.repository_for(StockReservation).add(reservation)
    logger.info(
        "Stock reserved",
        reservation_id=str(reservation.id),
        order_id=str(order_id) if order_id else None,
        lines=len(items),
        reserved_until=reservation.reserved_until.isoformat(),
    )
    return reservation


def reservations_for_order(order_id, status: ReservationStatus | None = None):
    query = current_domain.repository_for(StockReservation)._dao.query.filter(order_id=str(order_id))
    if status is not None:
        query = query.filter(status=status.value)
    return query.all().items


def active_reservation(order_id) -> StockReservation | None:
    active = reservations_for_order(order_id, ReservationStatus.ACTIVE)
    return active[0] if active else None


def consume(order_id, payment_id=None, reservation: StockReservation | None = None) -> StockReservation | None:
    """Make the order's hold permanent. Consuming twice is a no-op.

    Pass `reservation` when it was created in the same Unit of Work.
    """
    repo = current_domain.repository_for(StockReservation)
    if reservation is None:
        reservation = active_reservation(order_id)
        if reservation is None:
            consumed = reservations_for_order(order_id, ReservationStatus.CONSUMED)
            return consumed[0] if consumed else None
    elif not reservation.is_active:
        return reservation

    reservation.consume(payment_id)
    repo.add(reservation)
    logger.info("Stock reservation consumed", reservation_id=str(reservation.id), order_id=str(order_id))
    return reservation


def _credit_back(reservation: StockReservation) -> None:
    for line in reservation.lines:
        return_stock(line.variant_id, line.quantity)


def release_reservation(reservation: StockReservation, expired: bool = False) -> bool:
    """Credit stock back for an active hold. False if it was already closed."""
    if not reservation.is_active:
        return False
    _credit_back(reservation)
    if expired:
        reservation.expire()
    else:
        reservation.release()
    current_domain.repository_for(StockReservation).add(reservation)
    logger.info(
        "Stock reservation released",
        reservation_id=str(reservation.id),
        order_id=str(reservation.order_id) if reservation.order_id else None,
        expired=expired,
    )
    return True


def release(order_id, payment_id=None, expired: bool = False) -> int:
    """Release every active hold for the order. Idempotent; returns how many were released."""
    released = 0
    for reservation in reservations_for_order(order_id, ReservationStatus.ACTIVE):
        if payment_id and reservation.payment_id and str(reservation.payment_id) != str(payment_id):
            continue
        if release_reservation(reservation, expired=expired):
            released += 1
    return released


def restock_consumed(order_id) -> int:
    """Put stock from a settled order back on the shelf (cancellation after confirmation)."""
    restocked = 0
    for reservation in reservations_for_order(order_id, ReservationStatus.CONSUMED):
        _credit_back(reservation)
        restocked += 1
    return restocked
