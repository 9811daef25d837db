"""
Async Redis service with connection pooling for the engagement counters.

This module provides an async wrapper for Redis operations with:
- Connection pooling shared by all requests of a worker
- Automatic retries on connection/timeout errors and health checks
- The set, counter and scan primitives the like/view engine relies on

All counter mutations go through Redis atomic commands (INCR, DECR, SADD,
SREM); nothing here reads-modifies-writes a value.
"""

import os
import logging
from typing import Any, List, Optional, Tuple
import redis.asyncio as aioredis
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError, ConnectionError, TimeoutError

logger = logging.getLogger(__name__)


class AsyncRedisService:
    """
    Async Redis service with connection pooling.

    Algorithm:
    1. Initialize connection pool with optimal settings
    2. Create Redis client using the pool
    3. Provide async methods for the operations the engine and jobs use
    4. Retry transparently on connection/timeout errors
    """

    def __init__(
        self,
        host: str = None,
        port: int = None,
        password: Optional[str] = None,
        max_connections: int = None,
        socket_connect_timeout: int = 5,
        socket_timeout: int = 30,
        decode_responses: bool = True,
        ssl_enabled: bool = False,
        **kwargs,
    ):
        """
        Initialize async Redis service with connection pool parameters.

        Args:
            host: Redis host (defaults to REDIS_HOST env var or localhost)
            port: Redis port (defaults to REDIS_PORT env var or 6379)
            password: Redis password (optional)
            max_connections: Maximum connections in pool (default: 100)
            socket_connect_timeout: Connection timeout in seconds
            socket_timeout: Socket timeout in seconds
            decode_responses: Decode responses to strings (default: True)
            ssl_enabled: Enable TLS (default: False)
            **kwargs: Additional Redis client parameters
        """
        self.host = host or os.environ.get("REDIS_HOST") or "localhost"
        self.port = port or int(os.environ.get("REDIS_PORT", 6379))
        self.password = password or os.environ.get("REDIS_PASSWORD")

        self.max_connections = max_connections or 100
        self.socket_connect_timeout = socket_connect_timeout
        self.socket_timeout = socket_timeout
        self.decode_responses = decode_responses
        self.ssl_enabled = ssl_enabled
        self.kwargs = kwargs

        # Will be initialized in connect()
        self.pool: Optional[ConnectionPool] = None
        self.client: Optional[Redis] = None

        logger.info(
            f"Initialized AsyncRedisService: host={self.host}, port={self.port}, "
            f"max_connections={self.max_connections}, tls={self.ssl_enabled}"
        )

    async def connect(self) -> Redis:
        """
        Establish async connection to Redis with connection pooling.

        Returns:
            Redis async client instance

        Raises:
            ConnectionError: If the initial PING fails
        """
        try:
            if self.ssl_enabled:
                # URL-based pool is the form that supports TLS with pooling
                auth = f":{self.password}@" if self.password else ""
                url = f"rediss://{auth}{self.host}:{self.port}/0"
                self.pool = ConnectionPool.from_url(
                    url,
                    max_connections=self.max_connections,
                    socket_connect_timeout=self.socket_connect_timeout,
                    socket_timeout=self.socket_timeout,
                    socket_keepalive=True,
                    decode_responses=self.decode_responses,
                    retry_on_timeout=True,
                    ssl_cert_reqs="none",
                    ssl_check_hostname=False,
                    **self.kwargs
                )
            else:
                pool_params = {
                    "host": self.host,
                    "port": self.port,
                    "password": self.password,
                    "max_connections": self.max_connections,
                    "socket_connect_timeout": self.socket_connect_timeout,
                    "socket_timeout": self.socket_timeout,
                    "socket_keepalive": True,
                    "decode_responses": self.decode_responses,
                    "retry_on_timeout": True,
                    "retry_on_error": [ConnectionError, TimeoutError],
                    "health_check_interval": 30,
                }
                self.pool = ConnectionPool(**pool_params, **self.kwargs)

            self.client = aioredis.Redis(connection_pool=self.pool)
            await self.client.ping()

            logger.info(f"Successfully connected to Redis at {self.host}:{self.port}")
            return self.client

        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise ConnectionError(f"Cannot connect to Redis at {self.host}:{self.port}: {e}")

    async def close(self):
        """
        Close the client and every connection in the pool.

        Should be called during application shutdown.
        """
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("Closed Redis client")

        if self.pool:
            await self.pool.disconnect()
            self.pool = None
            logger.info("Disconnected Redis connection pool")

    async def verify_connection(self) -> bool:
        """
        Verify Redis connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            if not self.client:
                logger.debug("Connection verification: client not initialized")
                return False

            result = await self.client.ping()
            if result is True or result == b"PONG" or result == "PONG":
                return True

            logger.warning(f"Connection verification: unexpected ping result: {result}")
            return False

        except RedisError as e:
            logger.error(f"Connection verification failed: {e}")
            return False

    # Key/value and counter operations

    async def get(self, key: str) -> Any:
        return await self.client.get(key)

    async def set(self, key: str, value: Any, ex: int = None, nx: bool = False) -> bool:
        return await self.client.set(key, value, ex=ex, nx=nx)

    async def delete(self, *keys) -> int:
        return await self.client.delete(*keys)

    async def incr(self, key: str) -> int:
        """Atomically increment a counter (creates it at 0 first)."""
        return await self.client.incr(key)

    async def get_many(self, keys: List[str]) -> List[Optional[str]]:
        """
        Read several keys in one pipelined round trip.

        Values come back in key order; missing keys yield None.
        """
        if not keys:
            return []
        async with self.client.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.get(key)
            return await pipe.execute()

    async def expire_many(self, keys: List[str], seconds: int) -> None:
        """Refresh the TTL of several keys in one pipeline."""
        if not keys:
            return
        async with self.client.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.expire(key, seconds)
            await pipe.execute()

    # SET operations

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self.client.sismember(key, member))

    async def sadd(self, key: str, *members) -> int:
        return await self.client.sadd(key, *members)

    async def srem(self, key: str, *members) -> int:
        return await self.client.srem(key, *members)

    async def srandmember(self, key: str, count: int) -> List[str]:
        """Up to ``count`` distinct members, left in the set."""
        return await self.client.srandmember(key, count) or []

    async def sadd_many(self, memberships: List[Tuple[str, str]]) -> None:
        """Pipeline SADD for a list of (key, member) pairs."""
        if not memberships:
            return
        async with self.client.pipeline(transaction=False) as pipe:
            for key, member in memberships:
                pipe.sadd(key, member)
            await pipe.execute()

    # ZSET operations (sliding-window rate limiting)

    async def zcard(self, key: str) -> int:
        return await self.client.zcard(key)

    # Keyspace iteration

    async def scan_all(self, pattern: str, count: int = 100) -> List[str]:
        """
        Collect every key matching ``pattern`` with cursor-based SCAN.

        SCAN may return any number of keys per call (including none) while
        the cursor is still non-zero, so the loop only stops once Redis
        hands back cursor 0. Stopping earlier misses keys on large keyspaces.

        Args:
            pattern: MATCH glob, e.g. ``video:*:like_count``
            count: COUNT hint per round trip

        Returns:
            All matching keys (a key may appear twice if it was created
            while the scan was running; callers tolerate that)
        """
        keys: List[str] = []
        cursor = 0
        while True:
            cursor, batch = await self.client.scan(cursor=cursor, match=pattern, count=count)
            keys.extend(batch)
            if int(cursor) == 0:
                break
        return keys
