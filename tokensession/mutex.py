"""Cross-context mutual exclusion.

Serializes work (token refresh) across independent processes that share
persisted storage. Two strategies are offered behind one interface:

- ``NativeLockMutex`` delegates to a named lock provided by the storage
  backend (Redis), with blocking semantics and no client-side polling.
- ``PollingLockMutex`` writes a lease record with an expiry timestamp and
  polls until the record is free, giving up after a bounded number of
  attempts.

``create_mutex`` picks one by probing the storage for ``native_lock``.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import json
import logging
import uuid

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, TypeVar

from redis.exceptions import LockError

from .exceptions import MutexTimeout
from .scheduler import now_ms
from .types import MutexLease


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .config import MutexSettings
    from .storage import KeyValueStorage


logger = logging.getLogger("tokensession.mutex")

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_MS = 50
DEFAULT_MAX_RETRIES = 10


class CrossContextMutex(ABC):
    """Exclusive ownership of a named key across execution contexts.

    Parameters
    ----------
    prefix : str
        Namespace prepended to every key (default ``"tokensession-mutex-"``).
    """

    def __init__(self, prefix: str = "tokensession-mutex-") -> None:
        """Initialize the mutex."""
        self.prefix = prefix

    def internal_key(self, key: str) -> str:
        """Namespaced key used in the underlying storage."""
        return f"{self.prefix}{key}"

    @abstractmethod
    async def acquire(
        self,
        key: str,
        lease_ms: int,
        callback: Callable[[MutexLease], Awaitable[T]],
    ) -> T | None:
        """Run ``callback`` while holding ``key``.

        The lock is released on every exit path.

        Parameters
        ----------
        key : str
            Lock name.
        lease_ms : int
            Maximum time the lock may be held before other contexts
            consider it abandoned.
        callback : callable
            Coroutine function receiving the lease.

        Returns
        -------
        T or None
            The callback's result, or None if the lock was not acquired
            and the attempt was skipped.
        """


class NativeLockMutex(CrossContextMutex):
    """Mutex backed by the storage's native named lock.

    Parameters
    ----------
    storage : Any
        Storage exposing ``native_lock(name, timeout)`` returning a lock
        with awaitable ``acquire()`` and ``release()``. A lease that
        expired before release is logged, not raised.
    prefix : str
        Key namespace.
    """

    def __init__(self, storage: Any, prefix: str = "tokensession-mutex-") -> None:
        """Initialize the native lock mutex."""
        super().__init__(prefix)
        self.storage = storage

    async def acquire(
        self,
        key: str,
        lease_ms: int,
        callback: Callable[[MutexLease], Awaitable[T]],
    ) -> T | None:
        """Block until the native lock is held, then run ``callback``."""
        name = self.internal_key(key)
        lease = MutexLease(key=name, owner=uuid.uuid4().hex)
        lock = self.storage.native_lock(name, timeout=lease_ms / 1000.0)
        await lock.acquire()
        logger.debug("Acquired native lock %s", name)
        try:
            return await callback(lease)
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Lock %s lease lapsed before release", name)


class PollingLockMutex(CrossContextMutex):
    """Mutex implemented as a lease record in shared storage.

    Parameters
    ----------
    storage : KeyValueStorage
        Shared storage holding the lease record.
    poll_interval_ms : int
        Sleep between acquisition attempts (default 50).
    max_retries : int
        Attempts before giving up (default 10).
    raise_on_timeout : bool
        Raise ``MutexTimeout`` when retries are exhausted instead of
        skipping the callback silently.
    prefix : str
        Key namespace.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        *,
        raise_on_timeout: bool = False,
        prefix: str = "tokensession-mutex-",
    ) -> None:
        """Initialize the polling mutex."""
        super().__init__(prefix)
        self.storage = storage
        self.poll_interval_ms = poll_interval_ms
        self.max_retries = max_retries
        self.raise_on_timeout = raise_on_timeout

    async def _read_lease(self, name: str) -> tuple[int, str | None] | None:
        """Decode the stored lease as ``(expires_at, owner)``."""
        raw = await self.storage.read(name)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            if isinstance(data, dict):
                return int(data["expires_at"]), data.get("owner")
            return int(data), None
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed lock record for %s", name)
            return None

    async def _try_acquire(self, name: str, lease_ms: int) -> MutexLease | None:
        current = await self._read_lease(name)
        now = now_ms()
        if current is not None and current[0] > now:
            return None

        lease = MutexLease(key=name, owner=uuid.uuid4().hex, expires_at=now + lease_ms)
        await self.storage.write(
            name, json.dumps({"expires_at": lease.expires_at, "owner": lease.owner})
        )
        # A racing writer may have overwritten us between read and write.
        written = await self._read_lease(name)
        if written is None or written[1] != lease.owner:
            return None
        return lease

    async def _release(self, lease: MutexLease) -> None:
        current = await self._read_lease(lease.key)
        if current is not None and current[1] == lease.owner:
            await self.storage.remove(lease.key)
            logger.debug("Released lock %s", lease.key)
        else:
            logger.warning("Lock %s lease lapsed before release", lease.key)

    async def acquire(
        self,
        key: str,
        lease_ms: int,
        callback: Callable[[MutexLease], Awaitable[T]],
    ) -> T | None:
        """Poll for the lease record, then run ``callback``."""
        name = self.internal_key(key)
        attempts = 0
        while attempts < self.max_retries:
            lease = await self._try_acquire(name, lease_ms)
            if lease is not None:
                logger.debug("Acquired lock %s after %d attempt(s)", name, attempts + 1)
                try:
                    return await callback(lease)
                finally:
                    await self._release(lease)
            attempts += 1
            await asyncio.sleep(self.poll_interval_ms / 1000.0)

        if self.raise_on_timeout:
            msg = f"Could not acquire lock '{key}'"
            raise MutexTimeout(msg, key=key, attempts=attempts)
        logger.warning("Skipping work for lock %s after %d attempts", name, attempts)
        return None


def has_native_lock(storage: Any) -> bool:
    """Check whether ``storage`` offers a native named lock."""
    return callable(getattr(storage, "native_lock", None))


def create_mutex(
    storage: KeyValueStorage,
    settings: MutexSettings | None = None,
) -> CrossContextMutex:
    """Create the best mutex available for ``storage``.

    Parameters
    ----------
    storage : KeyValueStorage
        Shared storage for the lock.
    settings : MutexSettings, optional
        Polling parameters; defaults apply when omitted.

    Returns
    -------
    CrossContextMutex
        ``NativeLockMutex`` if the storage has a native lock,
        ``PollingLockMutex`` otherwise.
    """
    if has_native_lock(storage):
        return NativeLockMutex(storage)
    if settings is None:
        return PollingLockMutex(storage)
    return PollingLockMutex(
        storage,
        poll_interval_ms=settings.poll_interval_ms,
        max_retries=settings.max_retries,
        raise_on_timeout=settings.raise_on_timeout,
    )
