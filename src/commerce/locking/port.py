"""Distributed lock port.

A lock is a short-lived claim on a key. `acquire` returns an opaque token
or raises `LockBusy`; `release` deletes the key only if the caller still
owns it, so a holder whose TTL lapsed cannot free someone else's lock.
"""

from abc import ABC, abstractmethod


class DistributedLock(ABC):
    @abstractmethod
    def acquire(self, key: str, ttl_ms: int) -> str:
        """Claim `key` for `ttl_ms` milliseconds. Raises LockBusy when held."""
        ...

    @abstractmethod
    def release(self, key: str, token: str) -> bool:
        """Release `key` if `token` still owns it."""
        ...
