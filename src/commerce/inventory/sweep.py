"""Expiry sweep — reclaims everything held past its TTL.

Meant to be triggered periodically (cron, K8s CronJob, `manage.py sweep`
or the maintenance endpoint). The sweep only lists candidates; each one is
expired by its own command, so every reclaim is its own Unit of Work and an
interrupted sweep simply picks up the remainder on the next run.

Handlers re-check the candidate inside their Unit of Work (claim, then
act): a reservation that was consumed or released since it was listed, by
a late webhook or a concurrent sweeper, is left alone.

    ExpireReservation       checkout hold past reserved_until: the checkout
                            fails with reason `reservation_expired`;
                            exchange holds are released
    ExpirePaymentSession    active session past expires_at
    ExpirePendingOrder      order pending past PENDING_ORDER_TTL_HOURS with
                            nothing left to reclaim
"""

from datetime import datetime, timedelta

import structlog
from protean import handle
from protean.exceptions import ExpectedVersionError, InvalidOperationError, ObjectNotFoundError, ValidationError
from protean.fields import DateTime, Identifier, String
from protean.utils.globals import current_domain

from commerce.checkout.failure import fail_checkout
from commerce.checkout.session import PaymentSession, SessionStatus, session_by_token
from commerce.config import get_settings
from commerce.domain import commerce
from commerce.inventory import manager as reservations
from commerce.inventory.reservation import ReservationPurpose, ReservationStatus, StockReservation
from commerce.ordering.order import Order, OrderStatus
from commerce.utils.clock import as_utc, utcnow

logger = structlog.get_logger(__name__)

BATCH_SIZE = 500


@commerce.command(part_of="StockReservation")
class ExpireReservation:
    reservation_id = Identifier(required=True)
    as_of = DateTime()


@commerce.command(part_of="PaymentSession")
class ExpirePaymentSession:
    session_id = String(required=True, max_length=64)
    as_of = DateTime()


@commerce.command(part_of="Order")
class ExpirePendingOrder:
    order_id = Identifier(required=True)
    as_of = DateTime()


@commerce.command_handler(part_of=StockReservation)
class ExpireReservationHandler:
    @handle(ExpireReservation)
    def expire_reservation(self, command):
        as_of = command.as_of or utcnow()
        reservation = current_domain.repository_for(StockReservation).get(command.reservation_id)
        if not reservation.is_active or not reservation.is_expired(as_of):
            return False

        order = None
        if reservation.purpose == ReservationPurpose.ORDER.value and reservation.order_id:
            try:
                order = current_domain.repository_for(Order).get(reservation.order_id)
            except ObjectNotFoundError:
                # Orphaned hold; the stock still goes back
                order = None

        if order is not None and order.current_status == OrderStatus.PENDING:
            # Releases this reservation as part of unwinding the checkout
            fail_checkout(
                order, "reservation_expired", session_outcome=SessionStatus.EXPIRED, reservations_expired=True
            )
        else:
            reservations.release_reservation(reservation, expired=True)

        logger.info(
            "Expired reservation reclaimed",
            reservation_id=str(reservation.id),
            order_id=str(reservation.order_id) if reservation.order_id else None,
            purpose=reservation.purpose,
        )
        return True


@commerce.command_handler(part_of=PaymentSession)
class ExpirePaymentSessionHandler:
    @handle(ExpirePaymentSession)
    def expire_payment_session(self, command):
        as_of = command.as_of or utcnow()
        session = session_by_token(command.session_id)
        if session is None or not session.is_active or not session.is_stale(as_of):
            return False

        order = current_domain.repository_for(Order).get(session.order_id)
        if order.current_status == OrderStatus.PENDING:
            fail_checkout(order, "payment_session_expired", session_outcome=SessionStatus.EXPIRED)
        else:
            session.expire()
            current_domain.repository_for(PaymentSession).add(session)
        return True


@commerce.command_handler(part_of=Order)
class ExpirePendingOrderHandler:
    @handle(ExpirePendingOrder)
    def expire_pending_order(self, command):
        as_of = command.as_of or utcnow()
        order = current_domain.repository_for(Order).get(command.order_id)
        cutoff = as_utc(as_of) - timedelta(hours=get_settings().pending_order_ttl_hours)
        if order.current_status != OrderStatus.PENDING or as_utc(order.created_at) > cutoff:
            return False
        if reservations.active_reservation(order.id) is not None:
            # The reservation sweep owns orders that still hold stock
            return False

        fail_checkout(order, "pending_order_expired", session_outcome=SessionStatus.EXPIRED)
        return True


def _dispatch(command, kind: str, key: str) -> bool:
    try:
        return bool(current_domain.process(command, asynchronous=False))
    except ObjectNotFoundError:
        logger.info("Sweep item vanished", kind=kind, key=key)
        return False
    except (ValidationError, InvalidOperationError, ExpectedVersionError) as exc:
        logger.warning("Sweep item failed", kind=kind, key=key, error=str(exc))
        return False


def sweep_expired(as_of: datetime | None = None, batch_size: int = BATCH_SIZE) -> dict:
    """Reclaim expired reservations, stale sessions and abandoned pending orders."""
    as_of = as_utc(as_of or utcnow())
    counts = {"reservations": 0, "sessions": 0, "orders": 0}

    # Only lapsed rows count against the batch, oldest first
    candidates = (
        current_domain.repository_for(StockReservation)
        ._dao.query.filter(status=ReservationStatus.ACTIVE.value, reserved_until__lt=as_of)
        .order_by("reserved_until")
        .limit(batch_size)
        .all()
        .items
    )
    for reservation in candidates:
        if reservation.is_expired(as_of) and _dispatch(
            ExpireReservation(reservation_id=str(reservation.id), as_of=as_of), "reservation", str(reservation.id)
        ):
            counts["reservations"] += 1

    sessions = (
        current_domain.repository_for(PaymentSession)
        ._dao.query.filter(status=SessionStatus.ACTIVE.value, expires_at__lt=as_of)
        .order_by("expires_at")
        .limit(batch_size)
        .all()
        .items
    )
    for session in sessions:
        if session.is_stale(as_of) and _dispatch(
            ExpirePaymentSession(session_id=session.session_id, as_of=as_of), "session", session.session_id
        ):
            counts["sessions"] += 1

    cutoff = as_of - timedelta(hours=get_settings().pending_order_ttl_hours)
    pending = (
        current_domain.repository_for(Order)
        ._dao.query.filter(status=OrderStatus.PENDING.value, created_at__lte=cutoff)
        .order_by("created_at")
        .limit(batch_size)
        .all()
        .items
    )
    for order in pending:
        if as_utc(order.created_at) <= cutoff and _dispatch(
            ExpirePendingOrder(order_id=str(order.id), as_of=as_of), "order", str(order.id)
        ):
            counts["orders"] += 1

    logger.info("Expiry sweep complete", as_of=as_of.isoformat(), **counts)
    return counts
