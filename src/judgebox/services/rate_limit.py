from __future__ import annotations

from typing import Optional, Protocol

import redis
import structlog

from ..core.errors import RateLimitedError
from .queue import redis_guard

log = structlog.get_logger(__name__)


class ExpiringStore(Protocol):
    """Key/value có TTL, chia sẻ được giữa nhiều process (thay cho dict trong RAM)."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_s: int) -> None: ...

    def incr(self, key: str) -> int: ...

    def expire(self, key: str, ttl_s: int) -> None: ...


class RedisExpiringStore:
    def __init__(self, client: redis.Redis):
        self.client = client

    def get(self, key: str) -> Optional[str]:
        with redis_guard("get"):
            val = self.client.get(key)
        if isinstance(val, bytes):
            val = val.decode("utf-8")
        return val

    def set(self, key: str, value: str, ttl_s: int) -> None:
        with redis_guard("set"):
            self.client.set(key, value, ex=ttl_s)

    def incr(self, key: str) -> int:
        with redis_guard("incr"):
            return int(self.client.incr(key))

    def expire(self, key: str, ttl_s: int) -> None:
        with redis_guard("expire"):
            self.client.expire(key, ttl_s)


class RateLimiter:
    """Fixed window: tối đa max_hits request / window_s cho mỗi key (thường là IP client)."""

    def __init__(self, store: ExpiringStore, window_s: int = 900, max_hits: int = 100,
                 prefix: str = "ratelimit:"):
        self.store = store
        self.window_s = window_s
        self.max_hits = max_hits
        self.prefix = prefix

    def hit(self, key: str) -> bool:
        k = f"{self.prefix}{key}"
        count = self.store.incr(k)
        if count == 1:
            self.store.expire(k, self.window_s)
        return count <= self.max_hits

    def check(self, key: str) -> None:
        if not self.hit(key):
            log.warning("rate_limited", key=key, window_s=self.window_s, max_hits=self.max_hits)
            raise RateLimitedError(retry_after_s=self.window_s)
