"""Tests for reserve / consume / release over real variant stock."""

import pytest
from commerce.catalog.variant import Variant
from commerce.errors import InsufficientStock
from commerce.inventory import manager
from commerce.inventory.reservation import ReservationPurpose, ReservationStatus, StockReservation
from protean import current_domain


def _stock(variant):
    return current_domain.repository_for(Variant).get(variant.id).stock


def _reservation(reservation_id):
    return current_domain.repository_for(StockReservation).get(reservation_id)


class TestReserve:
    def test_reserve_debits_every_line(self, make_variant):
        shirt = make_variant(stock=5, sku="SHIRT")
        socks = make_variant(stock=3, sku="SOCKS")

        reservation = manager.reserve([(shirt.id, 2, 100.0), (socks.id, 3, 20.0)], order_id="order-1")

        assert reservation.status == ReservationStatus.ACTIVE.value
        assert _stock(shirt) == 3
        assert _stock(socks) == 0

    def test_reserve_is_all_or_nothing(self, make_variant):
        shirt = make_variant(stock=5, sku="SHIRT")
        socks = make_variant(stock=1, sku="SOCKS")

        with pytest.raises(InsufficientStock) as exc:
            manager.reserve([(shirt.id, 2, 100.0), (socks.id, 3, 20.0)], order_id="order-1")

        assert exc.value.available == 1
        assert exc.value.requested == 3
        assert _stock(shirt) == 5
        assert _stock(socks) == 1
        assert manager.reservations_for_order("order-1") == []

    def test_exchange_holds_use_their_own_ttl(self, make_variant):
        variant = make_variant(stock=1)
        reservation = manager.reserve(
            [(variant.id, 1, 100.0)], exchange_id="exchange-1", purpose=ReservationPurpose.EXCHANGE.value
        )
        lifetime = reservation.reserved_until - reservation.created_at
        assert round(lifetime.total_seconds() / 60) == 30


class TestConsume:
    def test_consume_is_idempotent(self, make_variant):
        variant = make_variant(stock=2)
        reservation = manager.reserve([(variant.id, 1, 100.0)], order_id="order-1")

        manager.consume("order-1", payment_id="pay-1")
        again = manager.consume("order-1", payment_id="pay-1")

        assert str(again.id) == str(reservation.id)
        assert _reservation(reservation.id).status == ReservationStatus.CONSUMED.value
        assert _stock(variant) == 1


class TestRelease:
    def test_release_credits_stock_back_once(self, make_variant):
        variant = make_variant(stock=2)
        manager.reserve([(variant.id, 2, 100.0)], order_id="order-1")

        assert manager.release("order-1") == 1
        assert manager.release("order-1") == 0
        assert _stock(variant) == 2

    def test_release_after_consume_is_a_no_op(self, make_variant):
        variant = make_variant(stock=2)
        manager.reserve([(variant.id, 2, 100.0)], order_id="order-1")
        manager.consume("order-1")

        assert manager.release("order-1") == 0
        assert _stock(variant) == 0

    def test_expired_release_marks_expired(self, make_variant):
        variant = make_variant(stock=2)
        reservation = manager.reserve([(variant.id, 1, 100.0)], order_id="order-1")

        manager.release("order-1", expired=True)

        assert _reservation(reservation.id).status == ReservationStatus.EXPIRED.value

    def test_restock_consumed(self, make_variant):
        variant = make_variant(stock=2)
        manager.reserve([(variant.id, 2, 100.0)], order_id="order-1")
        manager.consume("order-1")

        assert manager.restock_consumed("order-1") == 1
        assert _stock(variant) == 2
