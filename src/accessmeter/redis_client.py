"""
Shared Redis connection for the Redis usage counter store.

The pool is created lazily from ``settings.redis`` the first time the
Redis backend is built and reused by every later build in the process.
"""

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from accessmeter.logging import get_logger
from accessmeter.settings import Settings, get_settings

logger = get_logger(__name__)


class RedisClientManager:
    """Owns one pooled ``Redis`` client per process."""

    def __init__(self) -> None:
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

    @property
    def initialized(self) -> bool:
        return self._client is not None

    async def initialize(self, settings: Settings | None = None) -> Redis:
        """Connect (once) and return the shared client.

        Raises:
            RedisError: If the server cannot be reached; nothing is cached.
        """
        if self._client is not None:
            return self._client

        config = (settings or get_settings()).redis
        pool = ConnectionPool.from_url(
            config.redis_url,
            decode_responses=True,
            max_connections=config.max_connections,
            socket_timeout=config.socket_timeout,
            socket_connect_timeout=config.socket_timeout,
        )
        client = Redis(connection_pool=pool)
        try:
            await client.ping()
        except RedisError as e:
            logger.error("redis.connect_failed", host=config.host, port=config.port, error=str(e))
            await pool.disconnect()
            raise

        self._pool, self._client = pool, client
        logger.info("redis.connected", host=config.host, port=config.port, db=config.db)
        return client

    def attach(self, client: Redis) -> None:
        """Use an already connected client (tests, embedding applications)."""
        self._client = client

    async def is_healthy(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning("redis.health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        if self._pool is not None:
            await self._pool.disconnect()
        self._client = None
        self._pool = None


redis_manager = RedisClientManager()


__all__ = ["RedisClientManager", "redis_manager"]
