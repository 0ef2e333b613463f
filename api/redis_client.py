"""
Shared Redis connection for the job queue and notification pub/sub.

Provides:
- One async connection pool per process
- Circuit breaker so a flapping Redis is not hammered by every caller
- Graceful degradation for best-effort callers (pub/sub)
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from config import (
    REDIS_HEALTH_CHECK_INTERVAL,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

# Consecutive failures before the circuit opens
CIRCUIT_FAILURE_THRESHOLD = 3
CIRCUIT_MAX_BACKOFF = 300


class RedisClient:
    """Process-wide Redis client with connection pooling and a circuit breaker."""

    _instance: Optional["RedisClient"] = None
    _lock: Optional[asyncio.Lock] = None

    def __init__(self, url: str = REDIS_URL) -> None:
        self.url = url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._healthy: bool = False
        self._consecutive_failures: int = 0
        self._circuit_open_until: Optional[datetime] = None

    @classmethod
    async def get_instance(cls) -> "RedisClient":
        """Get or create the shared instance."""
        if cls._lock is None:
            cls._lock = asyncio.Lock()
        async with cls._lock:
            if cls._instance is None:
                instance = cls()
                await instance.connect()
                cls._instance = instance
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Drop the shared instance (used on shutdown and in tests)."""
        if cls._instance is not None:
            await cls._instance.close()
        cls._instance = None
        cls._lock = None

    async def connect(self) -> None:
        """Create the connection pool and verify it with a PING."""
        if not self.url:
            logger.info("Redis URL not configured, Redis features disabled")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=REDIS_POOL_SIZE,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
                health_check_interval=REDIS_HEALTH_CHECK_INTERVAL,
                retry_on_error=[RedisConnectionError],
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            self._healthy = True
            # Never log credentials
            logger.info(f"Redis connection established: {self.url.split('@')[-1]}")
        except (RedisError, OSError) as e:
            logger.warning(f"Redis connection failed during initialization: {e}")
            self._healthy = False

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    @property
    def is_available(self) -> bool:
        """Check if Redis is currently available (respects circuit breaker)."""
        if not self.url or self._client is None:
            return False

        if self._circuit_open_until is not None:
            if datetime.now(timezone.utc) < self._circuit_open_until:
                return False
            self._circuit_open_until = None
            self._healthy = True
            logger.info("Redis circuit breaker closing, attempting reconnection")

        return self._healthy

    @property
    def client(self) -> Optional[Redis]:
        return self._client if self.is_available else None

    async def execute_with_fallback(
        self,
        redis_fn: Callable[..., Awaitable[Any]],
        fallback_fn: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute a Redis operation, calling fallback_fn if Redis is down or the call fails.

        Args:
            redis_fn: Async function that takes the Redis client as first arg
            fallback_fn: Async function to call if Redis fails
        """
        if not self.is_available:
            return await fallback_fn(*args, **kwargs)

        try:
            result = await redis_fn(self._client, *args, **kwargs)
            self.record_success()
            return result
        except RedisError as e:
            logger.warning(f"Redis operation failed, using fallback: {e}")
            self.record_failure()
            return await fallback_fn(*args, **kwargs)

    def record_failure(self) -> None:
        """Record a failure and open the circuit after repeated failures."""
        self._consecutive_failures += 1
        self._healthy = False

        if self._consecutive_failures >= CIRCUIT_FAILURE_THRESHOLD:
            # 30s, 60s, 120s, 240s, max 300s
            backoff = min(
                CIRCUIT_MAX_BACKOFF,
                30 * (2 ** (self._consecutive_failures - CIRCUIT_FAILURE_THRESHOLD)),
            )
            self._circuit_open_until = datetime.now(timezone.utc) + timedelta(seconds=backoff)
            logger.warning(
                f"Redis circuit breaker opened for {backoff}s (consecutive failures: {self._consecutive_failures})"
            )

    def record_success(self) -> None:
        if self._consecutive_failures > 0:
            logger.info(f"Redis connection recovered after {self._consecutive_failures} failures")
        self._consecutive_failures = 0
        self._healthy = True
        self._circuit_open_until = None

    async def close(self) -> None:
        if self._client:
            try:
                await self._client.close()
            except (RedisError, OSError) as e:
                logger.debug(f"Exception while closing Redis client: {e}")
        if self._pool:
            try:
                await self._pool.disconnect()
            except (RedisError, OSError) as e:
                logger.debug(f"Exception while disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
        self._healthy = False


async def get_redis() -> Optional[Redis]:
    """Return the shared Redis client, or None if Redis is unavailable."""
    client = await RedisClient.get_instance()
    return client.client
