from commerce.cache import get_cache, invalidate_coupon, invalidate_order, invalidate_wallet, set_cache
from commerce.cache.memory_adapter import MemoryCache


def test_patterns_remove_matching_keys():
    cache = MemoryCache()
    cache.set("order:o-1", {"status": "pending"})
    cache.set("order:o-1:items", [])
    cache.set("order:o-2", {"status": "confirmed"})

    assert cache.invalidate("order:o-1*") == 2
    assert cache.get("order:o-1") is None
    assert cache.get("order:o-2") == {"status": "confirmed"}


def test_order_invalidation_covers_payments_and_user_listing():
    set_cache(MemoryCache())

    invalidate_order("o-1", "user-1")

    assert get_cache().invalidations == ["order:o-1*", "payments:o-1*", "orders:user-1:*"]


def test_empty_coupon_code_is_skipped():
    set_cache(MemoryCache())

    invalidate_coupon(None)
    invalidate_wallet("user-1")

    assert get_cache().invalidations == ["wallet:user-1*"]


def test_checkout_invalidates_what_it_touched(make_variant, place_order, fund_wallet):
    from commerce.checkout.coordinator import PaymentCoordinator

    cache = MemoryCache()
    set_cache(cache)
    fund_wallet("user-1", 500.0)
    variant = make_variant(price=100.0)
    order_id = place_order("user-1", [(variant, 1)])

    PaymentCoordinator().initiate(order_id, "user-1", "wallet")

    assert f"order:{order_id}*" in cache.invalidations
    assert f"variant:{variant.id}*" in cache.invalidations
    assert "wallet:user-1*" in cache.invalidations
