"""Persisted key/value storage backends.

The storage layer is the only thing shared between independent execution
contexts (processes, workers). Credential stores and the polling mutex
are both built on top of it.
"""

from __future__ import annotations

import asyncio

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from redis.asyncio import Redis


# Check for redis package
try:
    from redis.asyncio import Redis as RedisClient

    HAS_REDIS = True
except ImportError:
    HAS_REDIS = False
    RedisClient = None  # type: ignore[assignment,misc]


def _check_redis() -> None:
    """Check if redis package is available."""
    if not HAS_REDIS:
        msg = "Redis backend requires the 'redis' package. Install with: pip install redis"
        raise ImportError(msg)


class KeyValueStorage(ABC):
    """Abstract string key/value storage.

    All methods are async to support both local and network-backed media.
    """

    @abstractmethod
    async def read(self, key: str) -> str | None:
        """Read the value stored under ``key``.

        Parameters
        ----------
        key : str
            Storage key.

        Returns
        -------
        str or None
            The stored value, or None if absent.
        """

    @abstractmethod
    async def write(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        Parameters
        ----------
        key : str
            Storage key.
        value : str
            Value to persist.
        """

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove ``key``. Removing a missing key is not an error.

        Parameters
        ----------
        key : str
            Storage key.
        """


class MemoryStorage(KeyValueStorage):
    """In-memory storage for development and single-process use.

    Several sessions or mutexes may share one instance to simulate
    contexts that share persisted storage.
    """

    def __init__(self) -> None:
        """Initialize the memory storage."""
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def read(self, key: str) -> str | None:
        """Read a value from memory."""
        async with self._lock:
            return self._data.get(key)

    async def write(self, key: str, value: str) -> None:
        """Write a value to memory."""
        async with self._lock:
            self._data[key] = value

    async def remove(self, key: str) -> None:
        """Remove a value from memory."""
        async with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        """List stored keys (test and debugging aid)."""
        return list(self._data)


class RedisStorage(KeyValueStorage):
    """Redis-backed storage for multi-process deployments.

    Besides plain key/value access, exposes Redis' named lock as the
    native mutual-exclusion primitive used by ``NativeLockMutex``.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "tokensession",
        pool_size: int = 10,
        *,
        redis_client: Redis | None = None,
    ) -> None:
        """Initialize the Redis storage.

        Parameters
        ----------
        redis_url : str
            Redis connection URL.
        prefix : str
            Key prefix for namespacing.
        pool_size : int
            Connection pool size.
        redis_client : Redis, optional
            Pre-configured Redis client (for testing with fakeredis).
        """
        _check_redis()
        self._redis_url = redis_url
        self._prefix = prefix
        self._pool_size = pool_size
        self._client: Any = redis_client

    def _key(self, key: str) -> str:
        """Build a Redis key with prefix."""
        return f"{self._prefix}:{key}"

    def _redis(self) -> Any:
        """Get the Redis client, creating it on first use."""
        if self._client is None:
            self._client = RedisClient.from_url(
                self._redis_url,
                max_connections=self._pool_size,
                decode_responses=True,
            )
        return self._client

    async def read(self, key: str) -> str | None:
        """Read a value from Redis."""
        value = await self._redis().get(self._key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def write(self, key: str, value: str) -> None:
        """Write a value to Redis."""
        await self._redis().set(self._key(key), value)

    async def remove(self, key: str) -> None:
        """Delete a value from Redis."""
        await self._redis().delete(self._key(key))

    def native_lock(self, name: str, timeout: float) -> Any:
        """Return a Redis lock for ``name``.

        The lock auto-expires after ``timeout`` seconds so a crashed
        holder cannot keep it forever. Usable with ``async with`` or
        explicit ``acquire()`` / ``release()``.
        """
        return self._redis().lock(
            self._key(f"lock:{name}"),
            timeout=timeout,
            blocking=True,
        )

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
