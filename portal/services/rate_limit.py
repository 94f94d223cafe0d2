from __future__ import annotations

import time

from redis import Redis

from portal.config import settings


class RateLimiter:
    def __init__(self, redis_client: Redis, prefix: str = "portal") -> None:
        self.redis = redis_client
        self.prefix = prefix

    def _check_limit(self, key: str, limit: int) -> bool:
        now = time.time()
        window_start = now - settings.rate_limit_window_seconds
        pipeline = self.redis.pipeline()
        pipeline.zremrangebyscore(key, 0, window_start)
        pipeline.zadd(key, {str(now): now})
        pipeline.zcard(key)
        pipeline.expire(key, settings.rate_limit_ttl)
        _, _, count, _ = pipeline.execute()
        return count <= limit

    def check_ip(self, scope: str, ip: str) -> bool:
        key = f"{self.prefix}:rl:{scope}:{ip}"
        return self._check_limit(key, settings.checkout_rate_limit)


__all__ = ["RateLimiter"]
