"""Checkout tests for payments that settle inside InitiatePayment: wallet and COD."""

import pytest
from commerce.catalog.variant import Variant
from commerce.checkout.coordinator import PaymentCoordinator
from commerce.checkout.session import SessionStatus, sessions_for_order
from commerce.coupons.coupon import Coupon, CouponUsageStatus
from commerce.coupons.service import usage_for_order
from commerce.errors import InsufficientStock, InsufficientWalletBalance
from commerce.inventory import manager
from commerce.inventory.reservation import ReservationStatus
from commerce.ordering.cart import AddToCart, cart_for
from commerce.ordering.order import Order, OrderStatus
from commerce.ordering.payment import PaymentMethod, PaymentStatus, payments_for_order
from commerce.ordering.placement import PlaceOrder
from commerce.wallet import ledger
from protean import current_domain
from protean.exceptions import ValidationError


def _order(order_id):
    return current_domain.repository_for(Order).get(order_id)


def _stock(variant):
    return current_domain.repository_for(Variant).get(variant.id).stock


class TestWalletCheckout:
    def test_wallet_pays_in_full_and_confirms(self, make_variant, place_order, fund_wallet):
        fund_wallet("user-1", 1000.0)
        variant = make_variant(price=400.0, stock=3)
        order_id = place_order("user-1", [(variant, 2)])

        result = PaymentCoordinator().initiate(order_id, "user-1", "wallet")

        assert result["status"] == "confirmed"
        assert result["wallet_amount"] == 800.0
        assert ledger.balance_of("user-1") == 200.0
        order = _order(order_id)
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.payment_method == "wallet"
        assert _stock(variant) == 1

        reservation = manager.reservations_for_order(order_id)[0]
        assert reservation.status == ReservationStatus.CONSUMED.value
        session = sessions_for_order(order_id)[0]
        assert session.status == SessionStatus.COMPLETED.value

    def test_insufficient_wallet_rolls_everything_back(self, make_variant, place_order, fund_wallet):
        fund_wallet("user-1", 100.0)
        variant = make_variant(price=400.0, stock=1)
        order_id = place_order("user-1", [(variant, 1)])

        with pytest.raises(InsufficientWalletBalance):
            PaymentCoordinator().initiate(order_id, "user-1", "wallet")

        assert _stock(variant) == 1
        assert ledger.balance_of("user-1") == 100.0
        assert _order(order_id).status == OrderStatus.PENDING.value
        assert manager.reservations_for_order(order_id) == []

    def test_use_wallet_that_covers_everything_settles_as_wallet(self, make_variant, place_order, fund_wallet):
        fund_wallet("user-1", 500.0)
        variant = make_variant(price=500.0)
        order_id = place_order("user-1", [(variant, 1)])

        result = PaymentCoordinator().initiate(order_id, "user-1", "cod", use_wallet=True)

        assert result["status"] == "confirmed"
        assert _order(order_id).payment_method == "wallet"
        assert ledger.balance_of("user-1") == 0.0

    def test_settlement_empties_the_cart(self, make_variant, fund_wallet):
        fund_wallet("user-1", 1000.0)
        variant = make_variant(price=100.0)
        current_domain.process(AddToCart(user_id="user-1", variant_id=variant.id, quantity=1), asynchronous=False)
        order_id = current_domain.process(PlaceOrder(user_id="user-1", from_cart=True), asynchronous=False)

        PaymentCoordinator().initiate(order_id, "user-1", "wallet")

        assert cart_for("user-1").items == []


class TestCodCheckout:
    def test_cod_confirms_with_pending_collection(self, make_variant, place_order):
        variant = make_variant(price=250.0)
        order_id = place_order("user-1", [(variant, 1)])

        result = PaymentCoordinator().initiate(order_id, "user-1", "cod")

        assert result["status"] == "confirmed"
        payments = payments_for_order(order_id)
        assert [p.status for p in payments] == [PaymentStatus.COD_PENDING.value]
        assert _order(order_id).payment_method == "cod"

    def test_cod_with_partial_wallet(self, make_variant, place_order, fund_wallet):
        fund_wallet("user-1", 100.0)
        variant = make_variant(price=250.0)
        order_id = place_order("user-1", [(variant, 1)])

        PaymentCoordinator().initiate(order_id, "user-1", "cod", use_wallet=True)

        payments = {p.method: p for p in payments_for_order(order_id)}
        assert payments[PaymentMethod.WALLET.value].amount == 100.0
        assert payments[PaymentMethod.WALLET.value].status == PaymentStatus.SUCCESS.value
        assert payments[PaymentMethod.COD.value].amount == 150.0
        assert ledger.balance_of("user-1") == 0.0


class TestCouponAtPayment:
    def test_coupon_discount_is_distributed_and_redeemed(self, make_variant, make_coupon, place_order):
        coupon = make_coupon(code="SAVE10", max_uses=10)
        variant = make_variant(price=500.0)
        order_id = place_order("user-1", [(variant, 2)], coupon_code="SAVE10")

        PaymentCoordinator().initiate(order_id, "user-1", "cod")

        order = _order(order_id)
        assert order.discount_amount == 100.0
        assert order.total == 900.0
        assert order.items[0].price_after_discount == 900.0
        assert current_domain.repository_for(Coupon).get(coupon.id).uses_count == 1
        assert usage_for_order(order_id).status == CouponUsageStatus.REDEEMED.value


class TestLastUnit:
    def test_only_one_checkout_gets_the_last_unit(self, make_variant, place_order):
        variant = make_variant(stock=1)
        first = place_order("user-1", [(variant, 1)])
        second = place_order("user-2", [(variant, 1)])

        PaymentCoordinator().initiate(first, "user-1", "cod")
        with pytest.raises(InsufficientStock):
            PaymentCoordinator().initiate(second, "user-2", "cod")

        assert _stock(variant) == 0
        assert _order(first).status == OrderStatus.CONFIRMED.value
        assert _order(second).status == OrderStatus.PENDING.value


class TestCouponLastUse:
    def test_only_one_order_gets_a_single_use_coupon(self, make_variant, make_coupon, place_order):
        from commerce.errors import CouponExhausted

        coupon = make_coupon(code="SAVE10", max_uses=1, max_uses_per_user=0)
        variant = make_variant(price=500.0, stock=5)
        first = place_order("user-1", [(variant, 1)], coupon_code="SAVE10")
        second = place_order("user-2", [(variant, 1)], coupon_code="SAVE10")

        PaymentCoordinator().initiate(first, "user-1", "cod")
        with pytest.raises(CouponExhausted):
            PaymentCoordinator().initiate(second, "user-2", "cod")

        assert _order(first).discount_amount == 50.0
        assert current_domain.repository_for(Coupon).get(coupon.id).uses_count == 1
        # The failed attempt rolled back its stock reservation too
        assert _stock(variant) == 4


class TestInitiateGuards:
    def test_unknown_method(self, make_variant, place_order):
        variant = make_variant()
        order_id = place_order("user-1", [(variant, 1)])
        with pytest.raises(ValidationError):
            PaymentCoordinator().initiate(order_id, "user-1", "barter")

    def test_only_the_owner_can_pay(self, make_variant, place_order):
        variant = make_variant()
        order_id = place_order("user-1", [(variant, 1)])
        with pytest.raises(ValidationError):
            PaymentCoordinator().initiate(order_id, "user-2", "cod")

    def test_settled_order_replays_with_the_same_key(self, make_variant, place_order):
        variant = make_variant()
        order_id = place_order("user-1", [(variant, 1)], idempotency_key="key-1")
        PaymentCoordinator().initiate(order_id, "user-1", "cod", idempotency_key="key-1")

        replay = PaymentCoordinator().initiate(order_id, "user-1", "cod", idempotency_key="key-1")

        assert replay["status"] == "confirmed"
        assert replay["replayed"] is True
        assert len(payments_for_order(order_id)) == 1

    def test_settled_order_without_key_is_not_payable(self, make_variant, place_order):
        variant = make_variant()
        order_id = place_order("user-1", [(variant, 1)])
        PaymentCoordinator().initiate(order_id, "user-1", "cod")

        with pytest.raises(ValidationError):
            PaymentCoordinator().initiate(order_id, "user-1", "cod")
