"""Factory for wiring an AuthSession from settings.

Kept separate from ``session.py`` so the session has no dependency on
the configuration layer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .config import get_settings
from .log import configure_from_settings
from .mutex import create_mutex
from .session import AuthSession
from .storage import RedisStorage
from .store import MemoryCredentialStore, StorageCredentialStore
from .transport import HttpxTransport
from .types import SessionConfig


if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import TokenSessionSettings
    from .mutex import CrossContextMutex
    from .realtime import RealtimeChannel
    from .store import CredentialStore
    from .transport import Transport


def create_session(
    settings: TokenSessionSettings | None = None,
    *,
    transport: Transport | None = None,
    realtime: RealtimeChannel | None = None,
    on_reauth_required: Callable[[], None] | None = None,
    redis_client: Any = None,
) -> AuthSession:
    """Build an AuthSession from configuration.

    Parameters
    ----------
    settings : TokenSessionSettings, optional
        Settings to use; the cached global settings by default.
    transport : Transport, optional
        Transport to use instead of an ``HttpxTransport`` built from
        the ``[transport]`` section.
    realtime : RealtimeChannel, optional
        Channel to authenticate after login.
    on_reauth_required : callable, optional
        Invoked when a refresh fails.
    redis_client : Redis, optional
        Pre-configured Redis client for the redis storage backend.

    Returns
    -------
    AuthSession
        A new, unauthenticated session.
    """
    settings = settings or get_settings()
    configure_from_settings(settings.log)

    store: CredentialStore
    mutex: CrossContextMutex | None = None
    if settings.storage.backend == "redis":
        storage = RedisStorage(
            redis_url=settings.storage.redis_url,
            prefix=settings.storage.prefix,
            redis_client=redis_client,
        )
        store = StorageCredentialStore(storage, key=settings.storage.credential_key)
        if settings.mutex.enabled:
            mutex = create_mutex(storage, settings.mutex)
    else:
        store = MemoryCredentialStore()

    owns_transport = transport is None
    if transport is None:
        transport = HttpxTransport(
            base_url=settings.transport.base_url,
            timeout=settings.transport.timeout_seconds,
        )

    return AuthSession(
        transport,
        SessionConfig.from_settings(settings, store=store),
        mutex=mutex,
        realtime=realtime,
        mutex_key=settings.mutex.key,
        mutex_lease_ms=settings.mutex.lease_ms,
        on_reauth_required=on_reauth_required,
        owns_transport=owns_transport,
    )
