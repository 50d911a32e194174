import time

import pytest
from commerce.errors import ConcurrencyConflict, LockBusy
from commerce.locking import get_lock, hold, order_lock_key, set_lock
from commerce.locking.memory_adapter import MemoryLock


class TestMemoryLock:
    def test_acquire_and_release(self):
        lock = MemoryLock()
        token = lock.acquire("lock:a", 1000)

        assert lock.is_held("lock:a")
        assert lock.release("lock:a", token) is True
        assert not lock.is_held("lock:a")

    def test_second_acquire_is_refused(self):
        lock = MemoryLock()
        lock.acquire("lock:a", 1000)

        with pytest.raises(LockBusy):
            lock.acquire("lock:a", 1000)

    def test_only_the_owner_releases(self):
        lock = MemoryLock()
        lock.acquire("lock:a", 1000)

        assert lock.release("lock:a", "someone-else") is False
        assert lock.is_held("lock:a")

    def test_expired_lock_can_be_taken_over(self):
        lock = MemoryLock()
        stale = lock.acquire("lock:a", 1)
        time.sleep(0.01)
        fresh = lock.acquire("lock:a", 1000)

        assert fresh != stale
        assert lock.release("lock:a", stale) is False

    def test_expired_keys_are_dropped_on_the_next_acquire(self):
        lock = MemoryLock()
        lock.acquire("lock:order:1", 1)
        lock.acquire("lock:order:2", 1)
        time.sleep(0.01)
        lock.acquire("lock:order:3", 1000)

        assert set(lock._held) == {"lock:order:3"}


class TestHold:
    def test_hold_releases_on_exit(self):
        lock = MemoryLock()
        set_lock(lock)

        with hold("lock:b") as token:
            assert token
            assert lock.is_held("lock:b")

        assert not lock.is_held("lock:b")

    def test_hold_releases_when_the_body_raises(self):
        set_lock(MemoryLock())

        with pytest.raises(RuntimeError):
            with hold("lock:b"):
                raise RuntimeError("boom")

        assert not get_lock().is_held("lock:b")

    def test_busy_lock_gives_up_after_retries(self):
        lock = MemoryLock()
        set_lock(lock)
        lock.acquire("lock:c", 60_000)

        with pytest.raises(ConcurrencyConflict):
            with hold("lock:c", retries=2, retry_delay_ms=1):
                pass

    def test_order_lock_key(self):
        assert order_lock_key("o-1") == "lock:order:o-1"
