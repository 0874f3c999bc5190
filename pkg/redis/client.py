from typing import Optional, Any, List, Dict, Tuple, Union
from redis.exceptions import RedisError
import json
import logging
from datetime import timedelta
import redis.asyncio as aioredis

# One entry of a Redis stream: (entry id, field mapping)
StreamEntry = Tuple[str, Dict[str, str]]


class RedisClient:
    """
    Async Redis client with connection pooling.

    Used for key/value state and for Redis Streams (append-only event buffers).
    """

    def __init__(
        self,
        logger: logging.Logger,
        host: str = "localhost",
        port: int = 6379,
        password: Optional[str] = None,
        url: Optional[str] = None,
    ):
        self.logger = logger
        self.host = host
        self.port = port
        self.password = password
        self.url = url

        self._async_redis: Optional[aioredis.Redis] = None
        self._async_pool: Optional[aioredis.ConnectionPool] = None

    @classmethod
    def from_url(cls, logger: logging.Logger, url: str) -> "RedisClient":
        return cls(logger, url=url)

    async def _get_async_redis(self) -> aioredis.Redis:
        """Get or create async Redis client"""
        if self._async_redis is None:
            if self.url:
                self._async_pool = aioredis.ConnectionPool.from_url(
                    self.url, decode_responses=True, max_connections=20
                )
            else:
                self._async_pool = aioredis.ConnectionPool(
                    host=self.host,
                    port=self.port,
                    password=self.password,
                    decode_responses=True,
                    max_connections=20,
                )
            self._async_redis = aioredis.Redis(connection_pool=self._async_pool)
        return self._async_redis

    async def ping(self) -> bool:
        try:
            redis = await self._get_async_redis()
            return await redis.ping()
        except RedisError as e:
            self.logger.error(f"Redis ping failed: {str(e)}")
            raise

    async def async_close(self) -> None:
        """Close async Redis connection pool"""
        if self._async_redis is not None:
            await self._async_redis.close()
            self._async_redis = None
        if self._async_pool is not None:
            await self._async_pool.disconnect()
            self._async_pool = None
            self.logger.info("Async Redis connection pool closed")

    # Key/value operations
    async def async_get_value(self, key: str, default: Any = None) -> Any:
        """
        Async get value for a key from Redis.

        Args:
            key: Key to retrieve
            default: Default value if key doesn't exist

        Returns:
            The value if found, deserialized from JSON if possible,
            otherwise the default value
        """
        try:
            redis = await self._get_async_redis()
            value: Optional[str] = await redis.get(key)
            if value is None:
                return default

            try:
                if isinstance(value, str) and (value.startswith('{') or value.startswith('[')):
                    return json.loads(value)
                return value
            except (TypeError, json.JSONDecodeError):
                return value
        except RedisError as e:
            self.logger.error(f"Error async getting key {key}: {str(e)}")
            raise

    async def async_set_value(self, key: str, value: Any, expiry: Optional[Union[int, timedelta]] = None) -> bool:
        """
        Async set a key-value pair, optionally with expiry.

        Args:
            key: Key to set
            value: Value to set (will be JSON serialized if not string)
            expiry: Expiry time in seconds or timedelta

        Returns:
            True if successful
        """
        try:
            redis = await self._get_async_redis()
            if not isinstance(value, (str, int, float, bool)):
                value = json.dumps(value)
            if isinstance(expiry, timedelta):
                expiry = int(expiry.total_seconds())

            if expiry:
                return await redis.setex(key, expiry, value)
            else:
                return await redis.set(key, value)
        except RedisError as e:
            self.logger.error(f"Error async setting key {key}: {str(e)}")
            raise

    async def async_delete(self, *keys: str) -> int:
        try:
            redis = await self._get_async_redis()
            return await redis.delete(*keys)
        except RedisError as e:
            self.logger.error(f"Error async deleting keys: {str(e)}")
            raise

    # Stream operations
    async def stream_add(self, key: str, fields: Dict[str, str], ttl: Optional[int] = None) -> str:
        """
        Append an entry to a stream.

        Args:
            key: Stream key
            fields: Entry fields
            ttl: Optional expiry (seconds) refreshed on the stream key

        Returns:
            The id Redis assigned to the entry
        """
        try:
            redis = await self._get_async_redis()
            entry_id = await redis.xadd(key, fields)
            if ttl:
                await redis.expire(key, ttl)
            return entry_id
        except RedisError as e:
            self.logger.error(f"Error appending to stream {key}: {str(e)}")
            raise

    async def stream_read(self, key: str, last_id: str = "0", block_ms: Optional[int] = None,
                          count: Optional[int] = None) -> List[StreamEntry]:
        """
        Read entries newer than ``last_id``, optionally blocking up to ``block_ms``.

        Returns an empty list when nothing arrived in time.
        """
        try:
            redis = await self._get_async_redis()
            response = await redis.xread({key: last_id}, count=count, block=block_ms)
            if not response:
                return []
            # [[key, [(id, fields), ...]]]
            return list(response[0][1])
        except RedisError as e:
            self.logger.error(f"Error reading stream {key}: {str(e)}")
            raise
