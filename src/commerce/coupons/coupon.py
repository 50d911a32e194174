"""Coupon and CouponUsage aggregates (CQRS).

`Coupon.uses_count` is a contended counter: it only moves through
`claim_use`/`release_use`, called by the ledger primitives. Each order that
reserves a coupon also gets a `CouponUsage` marker; reverts go through the
marker so a usage is given back at most once no matter which failure path
(verification failure, webhook, sweep, cancellation) runs first.
"""

import json
from datetime import datetime
from enum import Enum

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Float, Identifier, Integer, String, Text

from commerce.domain import commerce
from commerce.utils.clock import as_utc, utcnow


class DiscountType(Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class CouponUsageStatus(Enum):
    RESERVED = "reserved"
    REDEEMED = "redeemed"
    REVERTED = "reverted"


@commerce.aggregate
class Coupon:
    code = String(required=True, max_length=50)
    name = String(max_length=255)
    discount_type = String(choices=DiscountType, required=True)
    value = Float(required=True, min_value=0.0)
    max_discount_amount = Float()
    min_order_value = Float(default=0.0)
    max_uses = Integer()  # None or 0: unlimited
    max_uses_per_user = Integer(default=1)  # None or 0: unlimited
    target_user_id = Identifier()
    applicable_product_ids = Text()  # JSON array
    applicable_category_ids = Text()  # JSON array
    active = Boolean(default=True)
    expires_at = DateTime()
    uses_count = Integer(default=0)
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def uses_within_global_limit(self):
        if self.max_uses and (self.uses_count or 0) > self.max_uses:
            raise ValidationError({"uses_count": ["Coupon uses cannot exceed max_uses"]})

    @classmethod
    def create(
        cls,
        code,
        discount_type,
        value,
        name=None,
        max_discount_amount=None,
        min_order_value=0.0,
        max_uses=None,
        max_uses_per_user=1,
        target_user_id=None,
        applicable_product_ids=None,
        applicable_category_ids=None,
        expires_at=None,
    ):
        if discount_type == DiscountType.PERCENTAGE.value and value > 100:
            raise ValidationError({"value": ["Percentage discount cannot exceed 100"]})
        now = utcnow()
        return cls(
            code=code.strip().upper(),
            name=name or code.strip().upper(),
            discount_type=discount_type,
            value=value,
            max_discount_amount=max_discount_amount,
            min_order_value=min_order_value or 0.0,
            max_uses=max_uses,
            max_uses_per_user=max_uses_per_user,
            target_user_id=target_user_id,
            applicable_product_ids=json.dumps([str(p) for p in applicable_product_ids or []]),
            applicable_category_ids=json.dumps([str(c) for c in applicable_category_ids or []]),
            active=True,
            expires_at=expires_at,
            uses_count=0,
            created_at=now,
            updated_at=now,
        )

    @property
    def product_filter(self) -> set[str]:
        return set(json.loads(self.applicable_product_ids)) if self.applicable_product_ids else set()

    @property
    def category_filter(self) -> set[str]:
        return set(json.loads(self.applicable_category_ids)) if self.applicable_category_ids else set()

    def is_expired(self, as_of: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) < as_utc(as_of or utcnow())

    def applies_to(self, product_id, category_ids) -> bool:
        """Whether a line for `product_id` counts towards the applicable subtotal."""
        products, categories = self.product_filter, self.category_filter
        if not products and not categories:
            return True
        if str(product_id) in products:
            return True
        return any(str(c) in categories for c in category_ids or [])

    def compute_discount(self, applicable_subtotal: float) -> float:
        if applicable_subtotal <= 0:
            return 0.0
        if self.discount_type == DiscountType.FIXED.value:
            discount = min(self.value, applicable_subtotal)
        else:
            discount = applicable_subtotal * self.value / 100
            if self.max_discount_amount:
                discount = min(discount, self.max_discount_amount)
        return round(discount, 2)

    def claim_use(self) -> bool:
        """Increment the usage counter only while it is below `max_uses`."""
        if self.max_uses and self.uses_count >= self.max_uses:
            return False
        self.uses_count += 1
        self.updated_at = utcnow()
        return True

    def release_use(self) -> bool:
        """Decrement the usage counter only while it is above zero."""
        if (self.uses_count or 0) <= 0:
            return False
        self.uses_count -= 1
        self.updated_at = utcnow()
        return True

    def deactivate(self) -> None:
        self.active = False
        self.updated_at = utcnow()


@commerce.aggregate
class CouponUsage:
    """Durable per-order marker pairing one coupon increment with at most one revert."""

    coupon_id = Identifier(required=True)
    coupon_code = String(max_length=50)
    user_id = Identifier(required=True)
    order_id = Identifier(required=True)
    status = String(choices=CouponUsageStatus, default=CouponUsageStatus.RESERVED.value)
    reserved_at = DateTime()
    settled_at = DateTime()

    @classmethod
    def create(cls, coupon_id, coupon_code, user_id, order_id):
        return cls(
            coupon_id=coupon_id,
            coupon_code=coupon_code,
            user_id=user_id,
            order_id=order_id,
            status=CouponUsageStatus.RESERVED.value,
            reserved_at=utcnow(),
        )

    @property
    def is_live(self) -> bool:
        return self.status in (CouponUsageStatus.RESERVED.value, CouponUsageStatus.REDEEMED.value)

    def redeem(self) -> None:
        if self.status == CouponUsageStatus.REDEEMED.value:
            return
        if self.status != CouponUsageStatus.RESERVED.value:
            raise ValidationError({"status": [f"Cannot redeem a {self.status} coupon usage"]})
        self.status = CouponUsageStatus.REDEEMED.value
        self.settled_at = utcnow()

    def revert(self) -> bool:
        """Flip to reverted; False when the usage was already given back."""
        if self.status == CouponUsageStatus.REVERTED.value:
            return False
        self.status = CouponUsageStatus.REVERTED.value
        self.settled_at = utcnow()
        return True
