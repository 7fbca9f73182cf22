"""Authentication session with proactive token refresh.

Owns the credential record lifecycle: login, refresh, token retrieval,
manual token override and logout. Refreshes are collapsed by a
single-flight guard within the process and, when a cross-context mutex
is configured, serialized across processes sharing the same store.
Proactive refresh runs from an event-loop timer armed on every issuance.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any

from .exceptions import AuthenticationError
from .realtime import RealtimeReauthHandshake
from .scheduler import RefreshScheduler, now_ms
from .single_flight import SingleFlight
from .store import MemoryCredentialStore
from .types import (
    MAX_SAFE_INTEGER,
    AuthMode,
    CredentialRecord,
    LoginOptions,
    SessionConfig,
    SessionState,
)


if TYPE_CHECKING:
    from collections.abc import Callable

    from .mutex import CrossContextMutex
    from .realtime import RealtimeChannel
    from .store import CredentialStore
    from .transport import Transport
    from .types import MutexLease


logger = logging.getLogger("tokensession.auth")


class AuthSession:
    """Manages a bearer credential pair and keeps it fresh.

    Parameters
    ----------
    transport : Transport
        Sends requests to the auth endpoints.
    config : SessionConfig, optional
        Session behaviour; defaults to cookie mode with a 30 s lead.
    mutex : CrossContextMutex, optional
        Serializes refreshes across processes sharing ``config.store``.
    realtime : RealtimeChannel, optional
        Channel to authenticate after login and keep authenticated.
    mutex_key : str
        Lock name used for refreshes (default ``"auth_refresh"``).
    mutex_lease_ms : int
        Lease for the refresh lock (default 10 000 ms).
    on_reauth_required : callable, optional
        Invoked when a refresh fails and the session is logged out.
        Signature: ``on_reauth_required() -> None``.
    owns_transport : bool
        Close ``transport`` in ``aclose()``.
    """

    def __init__(
        self,
        transport: Transport,
        config: SessionConfig | None = None,
        *,
        mutex: CrossContextMutex | None = None,
        realtime: RealtimeChannel | None = None,
        mutex_key: str = "auth_refresh",
        mutex_lease_ms: int = 10_000,
        on_reauth_required: Callable[[], None] | None = None,
        owns_transport: bool = False,
    ) -> None:
        """Initialize an unauthenticated session."""
        self.transport = transport
        self.config = config or SessionConfig()
        self.mutex = mutex
        self.mutex_key = mutex_key
        self.mutex_lease_ms = mutex_lease_ms
        self.on_reauth_required = on_reauth_required
        self._owns_transport = owns_transport

        self._store: CredentialStore = self.config.store or MemoryCredentialStore()
        self._state = SessionState.UNAUTHENTICATED
        # Bumped whenever credentials are discarded; stale refreshes compare it.
        self._epoch = 0
        self._refresh_flight: SingleFlight[CredentialRecord] = SingleFlight()
        self._scheduler = RefreshScheduler(self.refresh, on_error=self._on_scheduled_refresh_failed)
        self._handshake = RealtimeReauthHandshake(realtime) if realtime is not None else None

    # ── Introspection ───────────────────────────────────────────────

    @property
    def store(self) -> CredentialStore:
        """The credential store backing this session."""
        return self._store

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        if self._refresh_flight.in_flight:
            return SessionState.REFRESH_PENDING
        return self._state

    @property
    def refresh_scheduled(self) -> bool:
        """True while a proactive refresh timer is armed."""
        return self._scheduler.pending

    @property
    def handshake(self) -> RealtimeReauthHandshake | None:
        """The realtime handshake, if a channel was given."""
        return self._handshake

    # ── Public operations ───────────────────────────────────────────

    async def login(
        self,
        email: str,
        password: str,
        options: LoginOptions | None = None,
    ) -> CredentialRecord:
        """Authenticate with email and password.

        Any existing credential is cleared before the request so a
        stale refresh cannot race the new login.

        Parameters
        ----------
        email : str
            Account identifier.
        password : str
            Account secret.
        options : LoginOptions, optional
            One-time password and per-call mode override.

        Returns
        -------
        CredentialRecord
            The stored record.

        Raises
        ------
        AuthRejected
            If the server rejects the credentials.
        NetworkFailure
            If the server cannot be reached.
        """
        options = options or LoginOptions()
        await self._reset_credentials()

        body: dict[str, Any] = {"email": email, "password": password}
        if options.otp is not None:
            body["otp"] = options.otp
        body["mode"] = (options.mode or self.config.mode).value

        payload = await self._post_for_credentials("/auth/login", body)
        record = await self._set_credentials(payload)
        logger.info("Logged in; token expires in %s ms", record.expires)

        # After storage, so an early expiry message finds a valid session.
        if self._handshake is not None:
            await self._handshake.authenticate(email, password)

        return record

    async def refresh(self) -> CredentialRecord:
        """Exchange the refresh token for a new credential.

        Concurrent calls share one request. On failure the stored
        record stays cleared and the error reaches every caller.

        Returns
        -------
        CredentialRecord
            The new record (or, when another process refreshed while we
            waited for the lock, the record it stored).
        """
        return await self._refresh_flight.run(self._refresh_once)

    async def get_token(self) -> str | None:
        """Return a usable access token, refreshing first if near expiry.

        Never raises for refresh failures: a failed refresh leaves the
        session logged out and this returns None.

        Returns
        -------
        str or None
            The access token, or None if unauthenticated.
        """
        if not self._refresh_flight.in_flight:
            record = await self._store.get()
            if not record.expires_within(now_ms(), self.config.refresh_lead_ms):
                return record.access_token
            self._refresh_flight.start(self._refresh_once)

        await self._refresh_flight.wait()
        record = await self._store.get()
        return record.access_token

    async def set_token(self, token: str | None) -> None:
        """Replace the credential with a bare access token.

        The refresh token and expiry are cleared, so no proactive
        refresh happens for this credential.

        Parameters
        ----------
        token : str or None
            The access token to use.
        """
        self._scheduler.cancel()
        await self._store.set(CredentialRecord(access_token=token))
        self._state = SessionState.AUTHENTICATED if token else SessionState.UNAUTHENTICATED

    async def logout(self) -> None:
        """End the session on the server and locally.

        Local cleanup (listener removal, timer cancel, store clear) runs
        even if the logout request fails; the failure is re-raised.
        """
        self._epoch += 1
        record = await self._store.get()
        try:
            await self.transport.send(
                "/auth/logout",
                method="POST",
                body=self._mode_body(record),
                credentials_policy=self.config.credentials_policy,
            )
        finally:
            if self._handshake is not None:
                self._handshake.detach()
            self._scheduler.cancel()
            await self._store.set(CredentialRecord.empty())
            self._state = SessionState.UNAUTHENTICATED
            logger.info("Logged out")

    async def restore(self) -> CredentialRecord | None:
        """Resume from a record already in the store.

        Refreshes immediately if the stored token is near expiry,
        otherwise re-arms the timer for the remaining lifetime.

        Returns
        -------
        CredentialRecord or None
            The usable record, or None if nothing valid was stored.
        """
        record = await self._store.get()
        if record.access_token is None and record.refresh_token is None:
            self._state = SessionState.UNAUTHENTICATED
            return None

        if record.expires_within(now_ms(), self.config.refresh_lead_ms):
            try:
                return await self.refresh()
            except Exception as exc:
                logger.warning("Token refresh on restore failed: %s", exc)
                return None

        self._state = SessionState.AUTHENTICATED
        self._arm_refresh(record)
        return record

    async def aclose(self) -> None:
        """Stop background activity without touching the stored record."""
        self._scheduler.cancel()
        if self._handshake is not None:
            self._handshake.detach()
        if self._owns_transport:
            await self.transport.close()

    async def __aenter__(self) -> AuthSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ── Internals ───────────────────────────────────────────────────

    def _mode_body(self, record: CredentialRecord) -> dict[str, Any]:
        """Body for refresh/logout: mode, plus the refresh token in json mode."""
        body: dict[str, Any] = {"mode": self.config.mode.value}
        if self.config.mode is AuthMode.JSON and record.refresh_token:
            body["refresh_token"] = record.refresh_token
        return body

    async def _post_for_credentials(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        payload = await self.transport.send(
            path,
            method="POST",
            body=body,
            credentials_policy=self.config.credentials_policy,
        )
        if not isinstance(payload, dict):
            msg = f"Malformed credential response from {path}"
            raise AuthenticationError(msg, endpoint=path)
        return payload

    async def _reset_credentials(self) -> None:
        self._epoch += 1
        self._scheduler.cancel()
        await self._store.set(CredentialRecord.empty())
        self._state = SessionState.UNAUTHENTICATED

    async def _set_credentials(self, payload: dict[str, Any]) -> CredentialRecord:
        """Store a freshly issued credential and re-arm the timer."""
        record = CredentialRecord.from_payload(payload)
        if record.expires is not None:
            record.expires_at = now_ms() + record.expires

        self._scheduler.cancel()
        await self._store.set(record)
        self._state = SessionState.AUTHENTICATED

        expires = record.expires
        if (
            self.config.auto_refresh
            and expires is not None
            and self.config.refresh_lead_ms < expires < MAX_SAFE_INTEGER
        ):
            self._scheduler.arm(expires - self.config.refresh_lead_ms)
        return record

    def _arm_refresh(self, record: CredentialRecord) -> None:
        """Arm the timer from an existing record's absolute expiry."""
        if not self.config.auto_refresh or record.expires_at is None:
            return
        if record.expires is not None and record.expires >= MAX_SAFE_INTEGER:
            return
        self._scheduler.arm(record.expires_at - now_ms() - self.config.refresh_lead_ms)

    async def _refresh_once(self) -> CredentialRecord:
        if self.mutex is None:
            return await self._refresh_locked(None)

        snapshot = await self._store.get()

        async def locked(_lease: MutexLease) -> CredentialRecord:
            return await self._refresh_locked(snapshot)

        result = await self.mutex.acquire(self.mutex_key, self.mutex_lease_ms, locked)
        if result is None:
            logger.info("Refresh lock busy; using the credential stored by another context")
            result = await self._store.get()
            if result.access_token is not None:
                self._state = SessionState.AUTHENTICATED
                self._arm_refresh(result)
        return result

    async def _refresh_locked(self, snapshot: CredentialRecord | None) -> CredentialRecord:
        epoch = self._epoch
        record = await self._store.get()

        if (
            snapshot is not None
            and record != snapshot
            and record.access_token is not None
            and not record.expires_within(now_ms(), self.config.refresh_lead_ms)
        ):
            logger.debug("Another context refreshed while we waited; adopting its credential")
            self._state = SessionState.AUTHENTICATED
            self._arm_refresh(record)
            return record

        # Cleared first so a half-finished refresh is never read as valid.
        await self._store.set(CredentialRecord.empty())

        try:
            payload = await self._post_for_credentials("/auth/refresh", self._mode_body(record))
        except Exception as exc:
            logger.debug("Token refresh failed: %s", exc)
            if self._epoch != epoch:
                raise
            self._scheduler.cancel()
            self._state = SessionState.UNAUTHENTICATED
            self._notify_reauth_required()
            raise

        if self._epoch != epoch:
            logger.debug("Session reset during refresh; discarding the new credential")
            return await self._store.get()

        new_record = await self._set_credentials(payload)
        logger.info("Tokens refreshed; next expiry in %s ms", new_record.expires)
        return new_record

    def _notify_reauth_required(self) -> None:
        if self.on_reauth_required is None:
            return
        try:
            self.on_reauth_required()
        except Exception:
            logger.exception("on_reauth_required hook failed")

    def _on_scheduled_refresh_failed(self, exc: BaseException) -> None:
        logger.warning("Background token refresh failed: %s", exc)
