"""Tests for the StockReservation aggregate."""

from datetime import timedelta

import pytest
from commerce.errors import InvalidStateTransition
from commerce.inventory.reservation import ReservationPurpose, ReservationStatus, StockReservation
from commerce.utils.clock import utcnow


def _reservation(ttl_minutes=10):
    return StockReservation.create([("var-1", 2, 100.0), ("var-2", 1, 50.0)], ttl_minutes=ttl_minutes, order_id="o-1")


class TestCreation:
    def test_create_is_active_with_lines(self):
        reservation = _reservation()
        assert reservation.status == ReservationStatus.ACTIVE.value
        assert reservation.purpose == ReservationPurpose.ORDER.value
        assert len(reservation.lines) == 2

    def test_reserved_until_follows_the_ttl(self):
        reservation = _reservation(ttl_minutes=10)
        assert reservation.is_expired() is False
        assert reservation.is_expired(utcnow() + timedelta(minutes=11)) is True


class TestClosing:
    def test_consume_records_the_payment(self):
        reservation = _reservation()
        reservation.consume(payment_id="pay-1")
        assert reservation.status == ReservationStatus.CONSUMED.value
        assert str(reservation.payment_id) == "pay-1"

    def test_release(self):
        reservation = _reservation()
        reservation.release()
        assert reservation.status == ReservationStatus.RELEASED.value
        assert reservation.closed_at is not None

    def test_expire(self):
        reservation = _reservation()
        reservation.expire()
        assert reservation.status == ReservationStatus.EXPIRED.value

    @pytest.mark.parametrize("close", ["consume", "release", "expire"])
    def test_closed_reservation_cannot_close_again(self, close):
        reservation = _reservation()
        reservation.release()
        with pytest.raises(InvalidStateTransition):
            getattr(reservation, close)()
