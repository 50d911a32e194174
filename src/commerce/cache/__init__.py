"""Cache factory plus the key patterns invalidated on each kind of write.

Redis errors during invalidation are logged, not raised: the cache only accelerates
reads, so a stale entry is preferable to failing a committed write.
"""

import redis
import structlog

from commerce.cache.port import Cache
from commerce.config import get_settings

logger = structlog.get_logger(__name__)

_current_cache: Cache | None = None


def get_cache() -> Cache:
    global _current_cache
    if _current_cache is None:
        settings = get_settings()
        if settings.cache_backend == "redis":
            from commerce.cache.redis_adapter import RedisCache

            _current_cache = RedisCache.from_url(settings.redis_url)
        else:
            from commerce.cache.memory_adapter import MemoryCache

            _current_cache = MemoryCache()
    return _current_cache


def set_cache(cache: Cache) -> None:
    global _current_cache
    _current_cache = cache


def reset_cache() -> None:
    global _current_cache
    _current_cache = None


def _invalidate(*patterns: str) -> None:
    cache = get_cache()
    for pattern in patterns:
        try:
            cache.invalidate(pattern)
        except redis.RedisError as exc:
            logger.warning("Cache invalidation failed", pattern=pattern, error=str(exc))


def invalidate_order(order_id, user_id=None) -> None:
    patterns = [f"order:{order_id}*", f"payments:{order_id}*"]
    if user_id:
        patterns.append(f"orders:{user_id}:*")
    _invalidate(*patterns)


def invalidate_variants(variant_ids) -> None:
    _invalidate(*(f"variant:{variant_id}*" for variant_id in variant_ids))


def invalidate_coupon(code) -> None:
    if code:
        _invalidate(f"coupon:{code}*")


def invalidate_wallet(user_id) -> None:
    _invalidate(f"wallet:{user_id}*")
