"""Application tests for PlaceOrder and AddToCart via domain.process()."""

import json

import pytest
from commerce.config import reset_settings
from commerce.errors import ConcurrencyConflict
from commerce.locking import get_lock, idempotency_lock_key
from commerce.ordering.cart import AddToCart, Cart, cart_for
from commerce.ordering.order import Order, OrderSource, OrderStatus
from commerce.ordering.placement import PlaceOrder
from protean import current_domain
from protean.exceptions import ValidationError


def _order(order_id):
    return current_domain.repository_for(Order).get(order_id)


class TestPlaceOrderFromItems:
    def test_place_order_creates_pending_order(self, make_variant, place_order):
        variant = make_variant(price=500.0)
        order_id = place_order("user-1", [(variant, 2)])

        order = _order(order_id)
        assert order.status == OrderStatus.PENDING.value
        assert order.total == 1000.0
        assert order.source == OrderSource.DIRECT.value
        assert order.items[0].quantity == 2

    def test_place_order_does_not_touch_stock(self, make_variant, place_order):
        from commerce.catalog.variant import Variant

        variant = make_variant(stock=1)
        place_order("user-1", [(variant, 1)])

        assert current_domain.repository_for(Variant).get(variant.id).stock == 1

    def test_coupon_is_validated_but_not_reserved(self, make_variant, make_coupon, place_order):
        from commerce.coupons.coupon import Coupon

        coupon = make_coupon(code="SAVE10", max_uses=1)
        variant = make_variant(price=500.0)
        order_id = place_order("user-1", [(variant, 2)], coupon_code="save10")

        order = _order(order_id)
        assert order.coupon_code == "SAVE10"
        assert order.discount_amount == 0.0
        assert current_domain.repository_for(Coupon).get(coupon.id).uses_count == 0

    def test_invalid_coupon_is_rejected(self, make_variant, place_order):
        variant = make_variant()
        with pytest.raises(ValidationError):
            place_order("user-1", [(variant, 1)], coupon_code="NOPE")

    def test_idempotency_key_replays_the_same_order(self, make_variant, place_order):
        variant = make_variant()
        first = place_order("user-1", [(variant, 1)], idempotency_key="checkout-1")
        second = place_order("user-1", [(variant, 1)], idempotency_key="checkout-1")

        assert first == second
        assert len(current_domain.repository_for(Order)._dao.query.all().items) == 1

    def test_idempotency_key_is_scoped_to_the_user(self, make_variant, place_order):
        variant = make_variant()
        first = place_order("user-1", [(variant, 1)], idempotency_key="checkout-1")
        second = place_order("user-2", [(variant, 1)], idempotency_key="checkout-1")

        assert first != second

    def test_request_racing_an_in_flight_key_is_turned_away(self, make_variant, place_order, monkeypatch):
        monkeypatch.setenv("LOCK_RETRIES", "1")
        reset_settings()
        variant = make_variant()
        key = idempotency_lock_key("user-1", "checkout-1")
        token = get_lock().acquire(key, 5000)

        with pytest.raises(ConcurrencyConflict):
            place_order("user-1", [(variant, 1)], idempotency_key="checkout-1")
        assert current_domain.repository_for(Order)._dao.query.all().items == []

        get_lock().release(key, token)
        first = place_order("user-1", [(variant, 1)], idempotency_key="checkout-1")
        assert place_order("user-1", [(variant, 1)], idempotency_key="checkout-1") == first


class TestPlaceOrderFromCart:
    def test_cart_items_become_the_order(self, make_variant):
        variant = make_variant(price=120.0)
        current_domain.process(AddToCart(user_id="user-1", variant_id=variant.id, quantity=1), asynchronous=False)
        current_domain.process(AddToCart(user_id="user-1", variant_id=variant.id, quantity=2), asynchronous=False)

        order_id = current_domain.process(PlaceOrder(user_id="user-1", from_cart=True), asynchronous=False)

        order = _order(order_id)
        assert order.source == OrderSource.CART.value
        assert order.items[0].quantity == 3
        assert order.total == 360.0

    def test_empty_cart_is_rejected(self):
        with pytest.raises(ValidationError):
            current_domain.process(PlaceOrder(user_id="user-1", from_cart=True), asynchronous=False)

    def test_cart_survives_until_payment_settles(self, make_variant):
        variant = make_variant()
        current_domain.process(AddToCart(user_id="user-1", variant_id=variant.id, quantity=1), asynchronous=False)
        current_domain.process(
            PlaceOrder(user_id="user-1", from_cart=True, shipping_address=json.dumps({"city": "Pune"})),
            asynchronous=False,
        )

        cart = cart_for("user-1")
        assert isinstance(cart, Cart)
        assert len(cart.items) == 1
