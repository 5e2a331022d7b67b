"""Redis cache service: the shared cache port used by every component."""

import json
import logging
from typing import Optional, Any
import redis

from helpdesk_rbac.core.exceptions import CacheUnavailableError

logger = logging.getLogger(__name__)


class CacheService:
    """Redis-backed caching service.

    Plain reads and writes are lenient: a Redis failure degrades to a miss
    or a no-op. The atomic primitives (``add``, ``pop``, ``zrem``) raise
    ``CacheUnavailableError`` instead, because their callers rely on the
    answer for correctness.
    """

    def __init__(self, client: Optional[redis.Redis] = None, url: Optional[str] = None):
        self._client = client
        self._url = url

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                decode_responses=True,
                max_connections=100,
            )
        return self._client

    def get(self, key: str) -> Optional[str]:
        """Get a cached value by key."""
        try:
            return self.client.get(key)
        except redis.RedisError:
            logger.warning("Cache read failed for %s", key)
            return None

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = 600) -> None:
        """Set a cached value with TTL; None keeps it until overwritten."""
        try:
            if ttl_seconds is None:
                self.client.set(key, value)
            else:
                self.client.setex(key, max(int(ttl_seconds), 1), value)
        except redis.RedisError:
            logger.warning("Cache write failed for %s", key)

    def get_json(self, key: str) -> Optional[Any]:
        """Get and parse a JSON cached value."""
        raw = self.get(key)
        if raw:
            return json.loads(raw)
        return None

    def set_json(self, key: str, value: Any, ttl_seconds: int = 600) -> None:
        """Serialize and cache a JSON value."""
        self.set(key, json.dumps(value, default=str), ttl_seconds)

    def mget(self, keys: list[str]) -> list[Optional[str]]:
        """Fetch several keys at once; all None if the cache is down."""
        if not keys:
            return []
        try:
            return self.client.mget(keys)
        except redis.RedisError:
            logger.warning("Cache multi-read failed")
            return [None] * len(keys)

    def delete(self, *keys: str) -> None:
        """Delete cached keys."""
        if not keys:
            return
        try:
            self.client.delete(*keys)
        except redis.RedisError:
            logger.warning("Cache delete failed for %s", keys)

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except redis.RedisError:
            logger.warning("Cache exists check failed for %s", key)
            return False

    def ttl(self, key: str) -> Optional[int]:
        """Remaining TTL in seconds, None if missing or persistent."""
        try:
            remaining = self.client.ttl(key)
        except redis.RedisError:
            return None
        return remaining if remaining is not None and remaining >= 0 else None

    # Atomic primitives

    def add(self, key: str, value: str, ttl_seconds: Optional[int]) -> bool:
        """Set ``key`` only if absent (SET NX EX). True if this call created it."""
        ex = max(int(ttl_seconds), 1) if ttl_seconds is not None else None
        try:
            return bool(self.client.set(key, value, nx=True, ex=ex))
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Cache unavailable: {e}") from e

    def add_json(self, key: str, value: Any, ttl_seconds: int) -> bool:
        return self.add(key, json.dumps(value, default=str), ttl_seconds)

    def pop(self, key: str) -> Optional[str]:
        """Get and delete ``key`` in one step (GETDEL). Only one caller wins."""
        try:
            return self.client.getdel(key)
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Cache unavailable: {e}") from e

    def pop_json(self, key: str) -> Optional[Any]:
        raw = self.pop(key)
        return json.loads(raw) if raw else None

    # Sorted-set index helpers

    def zadd(self, key: str, member: str, score: float) -> None:
        try:
            self.client.zadd(key, {member: score})
        except redis.RedisError:
            logger.warning("Cache index write failed for %s", key)

    def zrem(self, key: str, member: str) -> bool:
        """Remove ``member``; True only for the caller that actually removed it."""
        try:
            return bool(self.client.zrem(key, member))
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Cache unavailable: {e}") from e

    def zrange_by_score(self, key: str, max_score: float) -> list[str]:
        try:
            return list(self.client.zrangebyscore(key, "-inf", max_score))
        except redis.RedisError:
            logger.warning("Cache index read failed for %s", key)
            return []

    def zmembers(self, key: str) -> list[str]:
        try:
            return list(self.client.zrange(key, 0, -1))
        except redis.RedisError:
            logger.warning("Cache index read failed for %s", key)
            return []

    def publish(self, channel: str, message: str) -> None:
        """Publish a message to a Redis channel (for notification fanout)."""
        try:
            self.client.publish(channel, message)
        except redis.RedisError:
            logger.warning("Cache publish failed for %s", channel)

    def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False
