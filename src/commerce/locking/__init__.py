"""Distributed lock factory and the `hold` helper.

`hold(key)` acquires with bounded exponential backoff and always releases
on exit. A holder that crashes leaves the key to expire by TTL.
"""

import time
from contextlib import contextmanager

import structlog

from commerce.config import get_settings
from commerce.errors import LockBusy
from commerce.locking.memory_adapter import MemoryLock
from commerce.locking.port import DistributedLock

logger = structlog.get_logger(__name__)

_current_lock: DistributedLock | None = None


def get_lock() -> DistributedLock:
    """Return the active lock backend (`LOCK_BACKEND`, memory by default)."""
    global _current_lock
    if _current_lock is None:
        settings = get_settings()
        if settings.lock_backend == "redis":
            from commerce.locking.redis_adapter import RedisLock

            _current_lock = RedisLock.from_url(settings.redis_url)
        else:
            _current_lock = MemoryLock()
    return _current_lock


def set_lock(lock: DistributedLock) -> None:
    global _current_lock
    _current_lock = lock


def reset_lock() -> None:
    global _current_lock
    _current_lock = None


@contextmanager
def hold(key: str, ttl_ms: int | None = None, retries: int | None = None, retry_delay_ms: int | None = None):
    settings = get_settings()
    ttl_ms = ttl_ms or settings.lock_ttl_ms
    attempts = retries if retries is not None else settings.lock_retries
    delay_ms = retry_delay_ms if retry_delay_ms is not None else settings.lock_retry_delay_ms

    lock = get_lock()
    token = None
    for attempt in range(max(attempts, 1)):
        try:
            token = lock.acquire(key, ttl_ms)
            break
        except LockBusy:
            if attempt == max(attempts, 1) - 1:
                logger.info("Lock busy, giving up", key=key, attempts=attempt + 1)
                raise
            time.sleep(delay_ms * (2**attempt) / 1000)

    try:
        yield token
    finally:
        if not lock.release(key, token):
            logger.warning("Lock expired before release", key=key)


def order_lock_key(order_id) -> str:
    return f"lock:order:{order_id}"


def idempotency_lock_key(user_id, idempotency_key) -> str:
    return f"lock:idem:{user_id}:{idempotency_key}"


def wallet_lock_key(user_id) -> str:
    return f"lock:wallet:{user_id}"
