"""Coupon reservation service — applicability, discount, reserve and revert.

`reserve` and `revert` run inside the caller's Unit of Work. Reserving writes
the global counter increment and the order's CouponUsage marker together;
reverting goes through the marker, so it gives a usage back exactly once.
"""

from dataclasses import dataclass

import structlog
from protean.exceptions import ValidationError
from protean.utils.globals import current_domain

from commerce.coupons.coupon import Coupon, CouponUsage, CouponUsageStatus
from commerce.errors import CouponExhausted
from commerce.ledger.primitives import claim_coupon_use, release_coupon_use

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CouponReservation:
    coupon: Coupon
    usage: CouponUsage
    applicable_subtotal: float
    discount: float


def find_by_code(code) -> Coupon | None:
    normalized = str(code or "").strip().upper()
    if not normalized:
        return None
    coupons = current_domain.repository_for(Coupon)._dao.query.filter(code=normalized).all().items
    return coupons[0] if coupons else None


def applicable_subtotal(coupon: Coupon, lines) -> float:
    """Sum of line totals the coupon applies to (all lines when unrestricted)."""
    return round(
        sum(line.line_total for line in lines if coupon.applies_to(line.product_id, line.category_ids)),
        2,
    )


def usage_for_order(order_id) -> CouponUsage | None:
    """The order's live usage marker, or its latest reverted one."""
    usages = current_domain.repository_for(CouponUsage)._dao.query.filter(order_id=str(order_id)).all().items
    live = [usage for usage in usages if usage.is_live]
    if live:
        return live[0]
    return usages[0] if usages else None


def uses_by_user(coupon_id, user_id) -> int:
    usages = (
        current_domain.repository_for(CouponUsage)
        ._dao.query.filter(coupon_id=str(coupon_id), user_id=str(user_id))
        .all()
        .items
    )
    return sum(1 for usage in usages if usage.is_live)


def validate(coupon: Coupon | None, user_id, order_subtotal: float, applicable: float) -> Coupon:
    """Checks that need no counter: existence, activity, owner, expiry, minimums."""
    if coupon is None or not coupon.active:
        raise ValidationError({"coupon": ["Invalid or inactive coupon"]})
    if coupon.target_user_id and str(coupon.target_user_id) != str(user_id):
        raise ValidationError({"coupon": ["Coupon is valid for a specific user only"]})
    if coupon.is_expired():
        raise ValidationError({"coupon": ["Coupon has expired"]})
    if (coupon.min_order_value or 0) > 0 and order_subtotal < coupon.min_order_value:
        raise ValidationError({"coupon": [f"Minimum order value of {coupon.min_order_value} required"]})
    if applicable <= 0:
        raise ValidationError({"coupon": ["Coupon not applicable to order items"]})
    return coupon


def reserve(code, user_id, order_id, order_subtotal: float, lines) -> CouponReservation:
    """Validate, claim one global use and write the order's usage marker."""
    coupon = find_by_code(code)
    applicable = applicable_subtotal(coupon, lines) if coupon else 0.0
    validate(coupon, user_id, order_subtotal, applicable)

    existing = usage_for_order(order_id)
    if existing is not None and existing.is_live:
        # A resumed payment for the same order keeps its original reservation
        return CouponReservation(coupon, existing, applicable, coupon.compute_discount(applicable))

    if coupon.max_uses_per_user and uses_by_user(coupon.id, user_id) >= coupon.max_uses_per_user:
        raise CouponExhausted(coupon.code, "Coupon usage limit reached for user")

    if not claim_coupon_use(coupon.id):
        logger.info("Coupon exhausted", code=coupon.code, order_id=str(order_id))
        raise CouponExhausted(coupon.code)

    usage = CouponUsage.create(coupon_id=coupon.id, coupon_code=coupon.code, user_id=user_id, order_id=order_id)
    current_domain.repository_for(CouponUsage).add(usage)

    discount = coupon.compute_discount(applicable)
    logger.info("Coupon reserved", code=coupon.code, order_id=str(order_id), discount=discount)
    return CouponReservation(coupon, usage, applicable, discount)


def redeem(order_id, usage: CouponUsage | None = None) -> None:
    usage = usage or usage_for_order(order_id)
    if usage is None or usage.status != CouponUsageStatus.RESERVED.value:
        return
    usage.redeem()
    current_domain.repository_for(CouponUsage).add(usage)


def revert(order_id) -> bool:
    """Give the order's coupon use back. Safe to call from every failure path."""
    usage = usage_for_order(order_id)
    if usage is None or not usage.revert():
        return False

    current_domain.repository_for(CouponUsage).add(usage)
    if not release_coupon_use(usage.coupon_id):
        logger.warning("Coupon counter already at zero on revert", coupon_id=str(usage.coupon_id))
    logger.info("Coupon usage reverted", coupon_id=str(usage.coupon_id), order_id=str(order_id))
    return True


def distribute_discount(coupon: Coupon, lines, total_discount: float) -> list[float]:
    """Split `total_discount` across the lines the coupon applies to.

    Shares are proportional to line total and rounded to 2 decimals; the
    rounding residue goes to the last applicable line so the shares add up
    to the total exactly. Returns one share per line, 0.0 where the coupon
    does not apply.
    """
    shares = [0.0] * len(lines)
    applicable = [i for i, line in enumerate(lines) if coupon.applies_to(line.product_id, line.category_ids)]
    base = sum(lines[i].line_total for i in applicable)
    if total_discount <= 0 or base <= 0:
        return shares

    allocated = 0.0
    for position, index in enumerate(applicable):
        line = lines[index]
        if position == len(applicable) - 1:
            share = round(total_discount - allocated, 2)
        else:
            share = round(line.line_total / base * total_discount, 2)
        shares[index] = min(share, line.line_total)
        allocated = round(allocated + share, 2)
    return shares
