"""
Redis Event Bus
asyncio Redis pool used to fan job events out to other API processes.
"""

import logging
from typing import Any, Dict, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError, TimeoutError

logger = logging.getLogger(__name__)


def mask_url(url: str) -> str:
    """Hide credentials in a Redis URL before it is logged."""
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.rsplit('@', 1)[-1]}"


class RedisManager:
    """
    Lazily created pool plus a shared client.

    Nothing connects until the first publish or health check, so a process
    with Redis events disabled never opens a socket.
    """

    def __init__(self, url: str, max_connections: int = 10):
        self.url = url
        self.max_connections = max_connections
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    def get_connection(self) -> Redis:
        if self._client is None:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                socket_connect_timeout=5,
                socket_timeout=5,
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)
            logger.info(f"[Redis] Pool ready for {mask_url(self.url)}")
        return self._client

    async def publish(self, channel: str, message: str) -> int:
        """Publish one message; returns the number of subscribers that got it."""
        return await self.get_connection().publish(channel, message)

    async def health_check(self) -> Dict[str, Any]:
        try:
            client = self.get_connection()
            await client.ping()
            info = await client.info("server")
        except (ConnectionError, TimeoutError, OSError) as e:
            logger.error(f"[Redis] Health check failed: {e}")
            return {"connected": False, "error": str(e), "url": mask_url(self.url)}
        return {
            "connected": True,
            "redis_version": info.get("redis_version", "unknown"),
            "url": mask_url(self.url),
        }

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
            logger.info("[Redis] Pool closed")
