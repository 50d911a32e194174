"""In-process lock for single-node deployments and tests."""

import threading
import time
from uuid import uuid4

from commerce.errors import LockBusy
from commerce.locking.port import DistributedLock


class MemoryLock(DistributedLock):
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: dict[str, tuple[str, float]] = {}

    def acquire(self, key: str, ttl_ms: int) -> str:
        now = time.monotonic()
        with self._guard:
            self._purge(now)
            current = self._held.get(key)
            if current is not None and current[1] > now:
                raise LockBusy(key)
            token = uuid4().hex
            self._held[key] = (token, now + ttl_ms / 1000)
            return token

    def _purge(self, now: float) -> None:
        for key in [key for key, (_, expiry) in self._held.items() if expiry <= now]:
            del self._held[key]

    def release(self, key: str, token: str) -> bool:
        with self._guard:
            current = self._held.get(key)
            if current is None or current[0] != token:
                return False
            del self._held[key]
            return True

    def is_held(self, key: str) -> bool:
        with self._guard:
            current = self._held.get(key)
            return current is not None and current[1] > time.monotonic()
