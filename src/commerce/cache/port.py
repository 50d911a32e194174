"""Cache port — a read-through accelerator, never a source of truth.

Writers call `invalidate(pattern)` with a glob-style pattern after
mutating orders, payments, coupons, variant stock or wallets.
"""

from abc import ABC, abstractmethod


class Cache(ABC):
    @abstractmethod
    def get(self, key: str): ...

    @abstractmethod
    def set(self, key: str, value, ttl_seconds: int | None = None) -> None: ...

    @abstractmethod
    def invalidate(self, pattern: str) -> int:
        """Delete every key matching `pattern`; returns how many were removed."""
        ...
