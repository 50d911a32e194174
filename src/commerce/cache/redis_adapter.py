import json

import redis

from commerce.cache.port import Cache


class RedisCache(Cache):
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.Redis.from_url(url))

    def get(self, key: str):
        raw = self.client.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value, ttl_seconds: int | None = None) -> None:
        self.client.set(key, json.dumps(value, default=str), ex=ttl_seconds)

    def invalidate(self, pattern: str) -> int:
        keys = list(self.client.scan_iter(match=pattern, count=500))
        if not keys:
            return 0
        return self.client.delete(*keys)
