"""Pluggable credential record storage.

Provides the CredentialStore ABC and concrete implementations for
process-local and storage-backed (cross-process) persistence.
"""

from __future__ import annotations

import asyncio
import logging

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from .storage import RedisStorage
from .types import CredentialRecord


if TYPE_CHECKING:
    from .storage import KeyValueStorage


logger = logging.getLogger("tokensession.store")


class CredentialStore(ABC):
    """Passive holder for the credential record.

    No validation is performed; the store returns what was last set.
    Reading before any ``set`` returns the all-null record.
    """

    @abstractmethod
    async def get(self) -> CredentialRecord:
        """Return the latest stored record.

        Returns
        -------
        CredentialRecord
            The stored record, or the empty record if nothing was set.
        """

    @abstractmethod
    async def set(self, record: CredentialRecord) -> None:
        """Replace the stored record.

        Parameters
        ----------
        record : CredentialRecord
            The record to persist.
        """


class MemoryCredentialStore(CredentialStore):
    """In-memory credential store, local to one process."""

    def __init__(self) -> None:
        """Initialize the memory credential store."""
        self._record = CredentialRecord.empty()
        self._lock = asyncio.Lock()

    async def get(self) -> CredentialRecord:
        """Return a copy of the held record."""
        async with self._lock:
            return replace(self._record)

    async def set(self, record: CredentialRecord) -> None:
        """Hold a copy of ``record``."""
        async with self._lock:
            self._record = replace(record)


class StorageCredentialStore(CredentialStore):
    """Credential store on top of shared key/value storage.

    Every ``get`` reads through to the storage so a record written by
    another context is visible immediately.

    Parameters
    ----------
    storage : KeyValueStorage
        The persisted storage medium.
    key : str
        Storage key for the serialized record (default ``"auth_data"``).
    """

    def __init__(self, storage: KeyValueStorage, key: str = "auth_data") -> None:
        """Initialize the storage-backed credential store."""
        self.storage = storage
        self.key = key

    async def get(self) -> CredentialRecord:
        """Read and decode the record from storage."""
        data = await self.storage.read(self.key)
        if data is None:
            return CredentialRecord.empty()
        try:
            return CredentialRecord.from_json(data)
        except (ValueError, AttributeError):
            logger.warning("Discarding unreadable credential record under %r", self.key)
            return CredentialRecord.empty()

    async def set(self, record: CredentialRecord) -> None:
        """Encode and write the record to storage."""
        await self.storage.write(self.key, record.to_json())


def create_credential_store(backend: str = "memory", **kwargs: Any) -> CredentialStore:
    """Factory function for credential stores.

    Every call returns a new instance; sessions never share a store
    unless the caller passes the same one explicitly.

    Parameters
    ----------
    backend : str
        ``"memory"`` for a process-local store, ``"redis"`` for a
        Redis-backed store shared across processes.
    **kwargs : Any
        ``redis_url``, ``prefix``, ``pool_size``, ``redis_client`` and
        ``key`` for the redis backend; ``storage`` to wrap an existing
        KeyValueStorage of any kind.

    Returns
    -------
    CredentialStore
        A configured credential store.
    """
    key = kwargs.get("key", "auth_data")
    storage = kwargs.get("storage")
    if storage is not None:
        return StorageCredentialStore(storage, key=key)

    if backend == "memory":
        return MemoryCredentialStore()
    if backend == "redis":
        storage = RedisStorage(
            redis_url=kwargs.get("redis_url", "redis://localhost:6379/0"),
            prefix=kwargs.get("prefix", "tokensession"),
            pool_size=kwargs.get("pool_size", 10),
            redis_client=kwargs.get("redis_client"),
        )
        return StorageCredentialStore(storage, key=key)

    msg = f"Unknown credential store backend: {backend}"
    raise ValueError(msg)
