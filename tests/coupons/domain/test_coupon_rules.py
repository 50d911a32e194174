"""Tests for Coupon discounts, the usage counter and CouponUsage markers."""

from datetime import timedelta

import pytest
from commerce.coupons.coupon import Coupon, CouponUsage, CouponUsageStatus
from commerce.utils.clock import utcnow
from protean.exceptions import ValidationError


class TestCouponCreation:
    def test_code_is_normalized(self):
        coupon = Coupon.create(code="  save10 ", discount_type="percentage", value=10)
        assert coupon.code == "SAVE10"
        assert coupon.uses_count == 0

    def test_percentage_above_hundred_is_rejected(self):
        with pytest.raises(ValidationError):
            Coupon.create(code="BAD", discount_type="percentage", value=120)

    def test_expiry(self):
        coupon = Coupon.create(code="OLD", discount_type="fixed", value=50, expires_at=utcnow() - timedelta(days=1))
        assert coupon.is_expired() is True


class TestComputeDiscount:
    def test_percentage(self):
        coupon = Coupon.create(code="P10", discount_type="percentage", value=10)
        assert coupon.compute_discount(1000.0) == 100.0

    def test_percentage_is_capped(self):
        coupon = Coupon.create(code="P50", discount_type="percentage", value=50, max_discount_amount=200)
        assert coupon.compute_discount(1000.0) == 200.0

    def test_fixed_never_exceeds_subtotal(self):
        coupon = Coupon.create(code="F500", discount_type="fixed", value=500)
        assert coupon.compute_discount(300.0) == 300.0

    def test_nothing_applicable_means_no_discount(self):
        coupon = Coupon.create(code="F50", discount_type="fixed", value=50)
        assert coupon.compute_discount(0.0) == 0.0


class TestApplicability:
    def test_unrestricted_coupon_applies_everywhere(self):
        coupon = Coupon.create(code="ALL", discount_type="fixed", value=10)
        assert coupon.applies_to("any-product", []) is True

    def test_product_filter(self):
        coupon = Coupon.create(code="ONE", discount_type="fixed", value=10, applicable_product_ids=["prod-1"])
        assert coupon.applies_to("prod-1", []) is True
        assert coupon.applies_to("prod-2", []) is False

    def test_category_filter(self):
        coupon = Coupon.create(code="CAT", discount_type="fixed", value=10, applicable_category_ids=["shoes"])
        assert coupon.applies_to("prod-2", ["shoes", "sale"]) is True
        assert coupon.applies_to("prod-2", ["shirts"]) is False


class TestUsageCounter:
    def test_claim_up_to_max_uses(self):
        coupon = Coupon.create(code="ONCE", discount_type="fixed", value=10, max_uses=1)
        assert coupon.claim_use() is True
        assert coupon.claim_use() is False
        assert coupon.uses_count == 1

    def test_unlimited_when_max_uses_is_unset(self):
        coupon = Coupon.create(code="MANY", discount_type="fixed", value=10)
        for _ in range(5):
            assert coupon.claim_use() is True
        assert coupon.uses_count == 5

    def test_release_never_goes_below_zero(self):
        coupon = Coupon.create(code="ZERO", discount_type="fixed", value=10)
        assert coupon.release_use() is False
        assert coupon.uses_count == 0


class TestCouponUsage:
    def _usage(self):
        return CouponUsage.create(coupon_id="coupon-1", coupon_code="SAVE10", user_id="user-1", order_id="order-1")

    def test_new_usage_is_reserved_and_live(self):
        usage = self._usage()
        assert usage.status == CouponUsageStatus.RESERVED.value
        assert usage.is_live is True

    def test_revert_happens_once(self):
        usage = self._usage()
        assert usage.revert() is True
        assert usage.revert() is False
        assert usage.is_live is False

    def test_redeem_is_idempotent(self):
        usage = self._usage()
        usage.redeem()
        usage.redeem()
        assert usage.status == CouponUsageStatus.REDEEMED.value

    def test_reverted_usage_cannot_be_redeemed(self):
        usage = self._usage()
        usage.revert()
        with pytest.raises(ValidationError):
            usage.redeem()
