"""Redis-backed lock: `SET key token NX PX ttl`, compare-and-delete release."""

from uuid import uuid4

import redis

from commerce.errors import LockBusy
from commerce.locking.port import DistributedLock

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisLock(DistributedLock):
    def __init__(self, client: redis.Redis) -> None:
        self.client = client
        self._release = client.register_script(_RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisLock":
        return cls(redis.Redis.from_url(url))

    def acquire(self, key: str, ttl_ms: int) -> str:
        token = uuid4().hex
        if not self.client.set(key, token, nx=True, px=ttl_ms):
            raise LockBusy(key)
        return token

    def release(self, key: str, token: str) -> bool:
        return bool(self._release(keys=[key], args=[token]))
