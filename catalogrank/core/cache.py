"""Invalidation of cached ranking listings in Redis.

The site caches ranking pages under ``rankings:<entity class>:...``; once a
run has rewritten ranks those entries are stale.
"""

from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from catalogrank.core.logging import get_logger
from catalogrank.core.settings import get_settings

logger = get_logger(__name__)

KEY_PREFIX = "rankings"


class RankingsCache:
    """Thin wrapper over the Redis client used for ranking listings."""

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url or get_settings().redis_url
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def _pattern(self, entity_class: str) -> str:
        return f"{KEY_PREFIX}:{entity_class}:*"

    async def invalidate(self, entity_class: str) -> int:
        """
        Delete cached listings for an entity class.

        Cache trouble never fails a ranking run: errors are logged and 0 is returned.
        """
        deleted = 0
        try:
            async for key in self.client.scan_iter(match=self._pattern(entity_class), count=500):
                deleted += await self.client.delete(key)
        except RedisError as e:
            logger.warning(f"Could not invalidate {entity_class} rankings cache: {e}")
            return 0

        logger.info(f"Invalidated {deleted} cached {entity_class} ranking entries")
        return deleted

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
