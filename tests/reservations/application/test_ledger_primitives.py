"""Tests for the conditional-update primitives over stock, coupon uses and wallet balance."""

from commerce.catalog.variant import Variant
from commerce.coupons.coupon import Coupon
from commerce.ledger.primitives import (
    claim_coupon_use,
    credit_balance,
    debit_balance,
    release_coupon_use,
    return_stock,
    take_stock,
    wallet_for,
)
from protean import current_domain


def _stock(variant):
    return current_domain.repository_for(Variant).get(variant.id).stock


class TestStock:
    def test_take_stock_when_available(self, make_variant):
        variant = make_variant(stock=2)
        assert take_stock(variant.id, 2) is True
        assert _stock(variant) == 0

    def test_take_stock_refuses_and_leaves_stock_untouched(self, make_variant):
        variant = make_variant(stock=1)
        assert take_stock(variant.id, 2) is False
        assert _stock(variant) == 1

    def test_last_unit_goes_to_exactly_one_taker(self, make_variant):
        variant = make_variant(stock=1)
        outcomes = [take_stock(variant.id, 1), take_stock(variant.id, 1)]
        assert outcomes == [True, False]
        assert _stock(variant) == 0

    def test_return_stock(self, make_variant):
        variant = make_variant(stock=0)
        assert return_stock(variant.id, 3) is True
        assert _stock(variant) == 3


class TestCouponCounter:
    def test_claim_respects_max_uses(self, make_coupon):
        coupon = make_coupon(code="ONCE", max_uses=1)
        assert claim_coupon_use(coupon.id) is True
        assert claim_coupon_use(coupon.id) is False
        assert current_domain.repository_for(Coupon).get(coupon.id).uses_count == 1

    def test_release_stops_at_zero(self, make_coupon):
        coupon = make_coupon(code="ONCE", max_uses=1)
        claim_coupon_use(coupon.id)
        assert release_coupon_use(coupon.id) is True
        assert release_coupon_use(coupon.id) is False
        assert current_domain.repository_for(Coupon).get(coupon.id).uses_count == 0


class TestWalletBalance:
    def test_wallet_is_opened_on_first_credit(self):
        assert wallet_for("user-1") is None
        wallet = credit_balance("user-1", 100.0)
        assert wallet.balance == 100.0
        assert wallet_for("user-1") is not None

    def test_debit_needs_a_covering_balance(self):
        credit_balance("user-1", 100.0)
        assert debit_balance("user-1", 150.0) is None
        assert debit_balance("user-1", 100.0).balance == 0.0

    def test_debit_without_a_wallet(self):
        assert debit_balance("user-1", 1.0) is None
