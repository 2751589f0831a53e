from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, cast

from redis.asyncio import ConnectionPool, Redis
from redis.commands.core import AsyncCoreCommands

from ...core.enums import HealthCheckStatus
from ...logger import get_logger

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from .config import RedisConfig

logger: BoundLogger = get_logger(__name__)

type RedisCommands = AsyncCoreCommands[str]


class RedisClient:
    """Async Redis client with an explicitly owned connection pool.

    The sweep never authenticates on its own: the pool is built from an
    already-resolved ``RedisConfig`` and handed to brokers as an opaque,
    pre-authorized handle.

    Examples
    --------
    >>> client = RedisClient(RedisConfig())
    >>> await client.ainitialize()
    >>> async with client.aget_client() as redis:
    ...     await redis.xlen("sweep:queue:orders/$DeadLetterQueue")
    >>> await client.aclose()
    """

    def __init__(self, config: RedisConfig) -> None:
        self.config = config
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None
        self._init_lock = asyncio.Lock()

    async def ainitialize(self) -> None:
        """Create the pool and verify the connection with PING."""
        async with self._init_lock:
            if self._client is not None:
                return

            self._pool = ConnectionPool(**self.config.get_connection_pool_kwargs())
            self._client = Redis(connection_pool=self._pool)

            try:
                await cast(RedisCommands, self._client).ping()
            except Exception as e:
                logger.error("Failed to initialize Redis client", url=self.config.url, exc_info=e)
                await self.aclose()
                raise

            logger.info(
                "Redis client initialized",
                url=self.config.url,
                ssl_enabled=self.config.ssl.enabled,
            )

    async def aclose(self) -> None:
        """Close the client and release the pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None

        logger.debug("Redis client closed")

    async def __aenter__(self) -> RedisClient:
        await self.ainitialize()
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.aclose()

    async def ahealth_check(self) -> HealthCheckStatus:
        if self._client is None:
            return HealthCheckStatus.INITIALIZING

        try:
            await cast(RedisCommands, self._client).ping()
            return HealthCheckStatus.HEALTHY
        except Exception as e:
            logger.error("Redis health check failed", exc_info=e)
            return HealthCheckStatus.UNHEALTHY

    @asynccontextmanager
    async def aget_client(self) -> AsyncIterator[RedisCommands]:
        """Get the Redis client within a context manager.

        Yields
        ------
        RedisCommands
            The initialized Redis client with typed command methods.

        Raises
        ------
        RuntimeError
            If the client has not been initialized.
        """
        if self._client is None:
            raise RuntimeError("Redis client not initialized. Call ainitialize() first.")

        yield cast(RedisCommands, self._client)
