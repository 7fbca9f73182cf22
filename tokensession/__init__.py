"""tokensession - client-side authentication session management.

Keeps a bearer credential pair alive with proactive refresh, collapses
concurrent refreshes, serializes refreshes across processes that share
storage, and re-authenticates an optional real-time channel.
"""

from __future__ import annotations

from ._factory import create_session
from .config import TokenSessionSettings, get_settings, reload_settings
from .exceptions import (
    AuthenticationError,
    AuthRejected,
    ChannelAuthExpired,
    ChannelError,
    HttpStatusError,
    MutexTimeout,
    NetworkFailure,
    TokenSessionError,
    TransportError,
)
from .mutex import CrossContextMutex, NativeLockMutex, PollingLockMutex, create_mutex
from .realtime import RealtimeChannel, RealtimeReauthHandshake, WebSocketChannel
from .scheduler import RefreshScheduler
from .session import AuthSession
from .single_flight import SingleFlight
from .storage import KeyValueStorage, MemoryStorage, RedisStorage
from .store import (
    CredentialStore,
    MemoryCredentialStore,
    StorageCredentialStore,
    create_credential_store,
)
from .transport import HttpxTransport, Transport
from .types import (
    AuthMode,
    CredentialRecord,
    LoginOptions,
    MutexLease,
    SessionConfig,
    SessionState,
)


__version__ = "0.1.0"

__all__ = [
    "AuthMode",
    "AuthRejected",
    "AuthSession",
    "AuthenticationError",
    "ChannelAuthExpired",
    "ChannelError",
    "CredentialRecord",
    "CredentialStore",
    "CrossContextMutex",
    "HttpStatusError",
    "HttpxTransport",
    "KeyValueStorage",
    "LoginOptions",
    "MemoryCredentialStore",
    "MemoryStorage",
    "MutexLease",
    "MutexTimeout",
    "NativeLockMutex",
    "NetworkFailure",
    "PollingLockMutex",
    "RealtimeChannel",
    "RealtimeReauthHandshake",
    "RedisStorage",
    "RefreshScheduler",
    "SessionConfig",
    "SessionState",
    "SingleFlight",
    "StorageCredentialStore",
    "TokenSessionError",
    "TokenSessionSettings",
    "Transport",
    "TransportError",
    "WebSocketChannel",
    "create_credential_store",
    "create_mutex",
    "create_session",
    "get_settings",
    "reload_settings",
]
