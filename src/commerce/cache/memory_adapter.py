from fnmatch import fnmatchcase

from commerce.cache.port import Cache


class MemoryCache(Cache):
    """Dictionary-backed cache that also records every invalidation pattern."""

    def __init__(self) -> None:
        self.store: dict = {}
        self.invalidations: list[str] = []

    def get(self, key: str):
        return self.store.get(key)

    def set(self, key: str, value, ttl_seconds: int | None = None) -> None:  # noqa: ARG002
        self.store[key] = value

    def invalidate(self, pattern: str) -> int:
        self.invalidations.append(pattern)
        matched = [key for key in self.store if fnmatchcase(key, pattern)]
        for key in matched:
            del self.store[key]
        return len(matched)
