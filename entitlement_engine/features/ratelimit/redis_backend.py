"""Redis window counter for rate limiting across processes.

Keys look like ``ratelimit:{tenant}:{endpoint_class}:{window_start}`` and expire
on their own, so there is nothing to purge.
"""

import logging

from redis import Redis
from redis.exceptions import RedisError

from entitlement_engine.core.errors import StorageUnavailable

logger = logging.getLogger("entitlements.ratelimit")


class RedisWindowCounter:
    def __init__(self, client: Redis, prefix: str = "ratelimit"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisWindowCounter":
        return cls(Redis.from_url(redis_url))

    def _key(self, tenant_id: str, endpoint_class: str, window_start: int) -> str:
        return f"{self.prefix}:{tenant_id}:{endpoint_class}:{window_start}"

    def incr(self, tenant_id: str, endpoint_class: str, window_start: int, ttl_seconds: int) -> int:
        key = self._key(tenant_id, endpoint_class, window_start)
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            count, _ = pipe.execute()
        except RedisError as exc:
            raise StorageUnavailable("rate window counter unavailable") from exc
        return int(count)

    def purge(self, older_than: int) -> int:
        return 0
