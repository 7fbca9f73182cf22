"""Type definitions shared across tokensession components."""

from __future__ import annotations

import json

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .config import TokenSessionSettings
    from .store import CredentialStore


#: Lifetimes at or above this are treated as "never expires" for scheduling.
MAX_SAFE_INTEGER = 2**53 - 1


class AuthMode(str, Enum):
    """How refresh/logout carry the refresh token.

    ``json`` sends it in the request body; ``cookie`` and ``session``
    rely on credentials attached by the transport.
    """

    COOKIE = "cookie"
    JSON = "json"
    SESSION = "session"


class SessionState(str, Enum):
    """Lifecycle state of an AuthSession."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESH_PENDING = "refresh_pending"


@dataclass
class CredentialRecord:
    """The access/refresh token pair plus expiry bookkeeping.

    Attributes
    ----------
    access_token : str or None
        Bearer token for API requests.
    refresh_token : str or None
        Token used to obtain a new access token.
    expires : int or None
        Server-reported lifetime in milliseconds at issuance.
    expires_at : int or None
        Epoch milliseconds when the access token expires. Derived by the
        session from ``expires``; never taken from the server payload.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    expires: int | None = None
    expires_at: int | None = None

    @classmethod
    def empty(cls) -> CredentialRecord:
        """Return the all-null (unauthenticated) record."""
        return cls()

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CredentialRecord:
        """Build a record from a login/refresh response body.

        Any ``expires_at`` the server sends is ignored.
        """
        expires = payload.get("expires")
        return cls(
            access_token=payload.get("access_token"),
            refresh_token=payload.get("refresh_token"),
            expires=int(expires) if expires is not None else None,
        )

    @property
    def is_empty(self) -> bool:
        """True when every field is null."""
        return (
            self.access_token is None
            and self.refresh_token is None
            and self.expires is None
            and self.expires_at is None
        )

    def expires_within(self, now_ms: int, lead_ms: int) -> bool:
        """Check whether the token expires before ``now_ms + lead_ms``.

        Records without an expiry never expire.
        """
        if self.expires_at is None:
            return False
        return self.expires_at < now_ms + lead_ms

    def to_json(self) -> str:
        """Serialize to a JSON string for persisted storage."""
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires": self.expires,
                "expires_at": self.expires_at,
            }
        )

    @classmethod
    def from_json(cls, data: str) -> CredentialRecord:
        """Deserialize a record written by ``to_json``."""
        obj = json.loads(data)
        return cls(
            access_token=obj.get("access_token"),
            refresh_token=obj.get("refresh_token"),
            expires=obj.get("expires"),
            expires_at=obj.get("expires_at"),
        )


@dataclass(frozen=True)
class LoginOptions:
    """Per-call login options.

    Attributes
    ----------
    otp : str or None
        One-time password for accounts with 2FA enabled.
    mode : AuthMode or None
        Overrides the session mode for this login request only.
    """

    otp: str | None = None
    mode: AuthMode | None = None


@dataclass(frozen=True)
class SessionConfig:
    """Immutable per-session configuration.

    Attributes
    ----------
    mode : AuthMode
        Refresh token transport mode.
    refresh_lead_ms : int
        How long before expiry to refresh proactively.
    auto_refresh : bool
        Whether to arm the refresh timer on each issuance.
    credentials_policy : str or None
        Passed through unchanged to the transport.
    store : CredentialStore or None
        Persistence for the credential record; ``None`` means a fresh
        in-memory store owned by the session.
    """

    mode: AuthMode = AuthMode.COOKIE
    refresh_lead_ms: int = 30_000
    auto_refresh: bool = True
    credentials_policy: str | None = None
    store: CredentialStore | None = field(default=None, compare=False)

    @classmethod
    def from_settings(
        cls,
        settings: TokenSessionSettings,
        store: CredentialStore | None = None,
    ) -> SessionConfig:
        """Build a SessionConfig from the ``[session]`` settings section."""
        section = settings.session
        return cls(
            mode=AuthMode(section.mode),
            refresh_lead_ms=section.refresh_lead_ms,
            auto_refresh=section.auto_refresh,
            credentials_policy=section.credentials_policy,
            store=store,
        )


@dataclass(frozen=True)
class MutexLease:
    """Ownership grant for one CrossContextMutex callback invocation.

    Attributes
    ----------
    key : str
        The lock key that is held.
    owner : str
        Unique id of this acquisition.
    expires_at : int or None
        Epoch milliseconds when the lease lapses (None for native locks,
        which are released by the lock primitive itself).
    """

    key: str
    owner: str
    expires_at: int | None = None


# Type aliases for clarity
RealtimeMessage = dict[str, Any]
