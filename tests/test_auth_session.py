"""Tests for AuthSession: login, refresh, scheduling, logout and locking."""

# pylint: disable=redefined-outer-name,protected-access

from __future__ import annotations

import asyncio

from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from tokensession.exceptions import AuthenticationError, AuthRejected, NetworkFailure
from tokensession.mutex import PollingLockMutex
from tokensession.scheduler import now_ms
from tokensession.session import AuthSession
from tokensession.storage import MemoryStorage
from tokensession.store import MemoryCredentialStore, StorageCredentialStore
from tokensession.types import (
    MAX_SAFE_INTEGER,
    AuthMode,
    CredentialRecord,
    LoginOptions,
    SessionConfig,
    SessionState,
)


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def store() -> MemoryCredentialStore:
    """Create a memory credential store."""
    return MemoryCredentialStore()


@pytest_asyncio.fixture()
async def session(transport, store):
    """Cookie-mode session over the fake transport."""
    auth = AuthSession(transport, SessionConfig(store=store))
    yield auth
    await auth.aclose()


@pytest_asyncio.fixture()
async def json_session(transport, store):
    """JSON-mode session over the fake transport."""
    auth = AuthSession(transport, SessionConfig(mode=AuthMode.JSON, store=store))
    yield auth
    await auth.aclose()


async def _store_near_expiry(store, access_token: str = "at_stale") -> None:
    """Put a record that is inside the default 30 s lead window."""
    await store.set(
        CredentialRecord(
            access_token=access_token,
            refresh_token="rt_stale",
            expires=900_000,
            expires_at=now_ms() + 1_000,
        )
    )


# ── Login ───────────────────────────────────────────────────────────


class TestLogin:
    """Tests for AuthSession.login."""

    @pytest.mark.asyncio
    async def test_login_stores_credentials(self, session, transport, store) -> None:
        """A successful login stores the record and schedules a refresh."""
        before = now_ms()
        record = await session.login("a@b.c", "pw")
        after = now_ms()

        assert record.access_token == "at_login"
        assert record.refresh_token == "rt_login"
        assert before + 900_000 <= record.expires_at <= after + 900_000
        assert await store.get() == record
        assert session.state is SessionState.AUTHENTICATED
        assert session.refresh_scheduled

    @pytest.mark.asyncio
    async def test_login_body_cookie_mode(self, session, transport) -> None:
        """The body carries credentials and the session mode."""
        await session.login("a@b.c", "pw")
        assert transport.last_body("/auth/login") == {
            "email": "a@b.c",
            "password": "pw",
            "mode": "cookie",
        }

    @pytest.mark.asyncio
    async def test_login_with_otp_and_mode_override(self, session, transport) -> None:
        """OTP is included and the per-call mode wins."""
        await session.login("a@b.c", "pw", LoginOptions(otp="123456", mode=AuthMode.SESSION))
        assert transport.last_body("/auth/login") == {
            "email": "a@b.c",
            "password": "pw",
            "otp": "123456",
            "mode": "session",
        }

    @pytest.mark.asyncio
    async def test_login_clears_before_request(self, session, transport, store) -> None:
        """The previous credential is gone while the login is in flight."""
        await session.set_token("old")
        transport.delay = 0.05
        task = asyncio.ensure_future(session.login("a@b.c", "pw"))
        await asyncio.sleep(0.01)
        assert (await store.get()).is_empty
        assert session.state is SessionState.UNAUTHENTICATED
        await task
        assert (await store.get()).access_token == "at_login"

    @pytest.mark.asyncio
    async def test_login_rejected(self, session, transport, store) -> None:
        """A rejected login leaves the session empty."""
        await session.set_token("old")
        transport.responses["/auth/login"] = [
            AuthRejected("Invalid user credentials.", status=401, endpoint="/auth/login")
        ]
        with pytest.raises(AuthRejected):
            await session.login("a@b.c", "wrong")
        assert (await store.get()).is_empty
        assert session.state is SessionState.UNAUTHENTICATED
        assert not session.refresh_scheduled

    @pytest.mark.asyncio
    async def test_malformed_response(self, session, transport) -> None:
        """A non-object payload is an authentication error."""
        transport.responses["/auth/login"] = ["unexpected"]
        with pytest.raises(AuthenticationError, match="Malformed"):
            await session.login("a@b.c", "pw")

    @pytest.mark.asyncio
    async def test_credentials_policy_passed_through(self, transport, store) -> None:
        """The credentials policy reaches the transport unchanged."""
        auth = AuthSession(transport, SessionConfig(credentials_policy="include", store=store))
        await auth.login("a@b.c", "pw")
        await auth.aclose()
        assert transport.calls[0]["credentials_policy"] == "include"

    @pytest.mark.asyncio
    async def test_server_expires_at_ignored(self, session, transport, make_payload) -> None:
        """expires_at is computed locally from expires."""
        payload = make_payload("at", "rt", 60_000)
        payload["expires_at"] = 1
        transport.responses["/auth/login"] = [payload]
        before = now_ms()
        record = await session.login("a@b.c", "pw")
        assert record.expires_at >= before + 60_000


# ── Scheduling ──────────────────────────────────────────────────────


class TestScheduling:
    """Proactive refresh timing."""

    @pytest.mark.asyncio
    async def test_refresh_fires_at_expiry_minus_lead(self, transport, store, make_payload) -> None:
        """The timer fires once at expires - lead."""
        transport.responses["/auth/login"] = [make_payload("at_login", "rt_login", 250)]
        auth = AuthSession(transport, SessionConfig(refresh_lead_ms=100, store=store))
        await auth.login("a@b.c", "pw")

        await asyncio.sleep(0.08)
        assert transport.count("/auth/refresh") == 0

        await asyncio.sleep(0.2)
        assert transport.count("/auth/refresh") == 1
        assert (await store.get()).access_token == "at_refreshed"
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_refresh_rearms(self, transport, store, make_payload) -> None:
        """Each refresh schedules the next one."""
        transport.responses["/auth/login"] = [make_payload("at_login", "rt_login", 150)]
        transport.responses["/auth/refresh"] = [make_payload("at_r", "rt_r", 150)]
        auth = AuthSession(transport, SessionConfig(refresh_lead_ms=100, store=store))
        await auth.login("a@b.c", "pw")
        await asyncio.sleep(0.18)
        await auth.aclose()
        assert transport.count("/auth/refresh") >= 2

    @pytest.mark.asyncio
    async def test_no_timer_when_lifetime_within_lead(self, transport, store, make_payload) -> None:
        """A lifetime not longer than the lead never schedules."""
        transport.responses["/auth/login"] = [make_payload("at", "rt", 100)]
        auth = AuthSession(transport, SessionConfig(refresh_lead_ms=100, store=store))
        await auth.login("a@b.c", "pw")
        assert not auth.refresh_scheduled
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_no_timer_for_unbounded_lifetime(self, transport, store, make_payload) -> None:
        """Lifetimes at the safe-integer limit never schedule."""
        transport.responses["/auth/login"] = [make_payload("at", "rt", MAX_SAFE_INTEGER)]
        auth = AuthSession(transport, SessionConfig(store=store))
        await auth.login("a@b.c", "pw")
        assert not auth.refresh_scheduled
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_no_timer_without_expires(self, session, transport, make_payload) -> None:
        """A null lifetime leaves expires_at null and no timer."""
        transport.responses["/auth/login"] = [make_payload("at", "rt", None)]
        record = await session.login("a@b.c", "pw")
        assert record.expires_at is None
        assert not session.refresh_scheduled

    @pytest.mark.asyncio
    async def test_auto_refresh_disabled(self, transport, store) -> None:
        """auto_refresh=False never arms the timer."""
        auth = AuthSession(transport, SessionConfig(auto_refresh=False, store=store))
        await auth.login("a@b.c", "pw")
        assert not auth.refresh_scheduled
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_scheduled_failure_swallowed(self, transport, store, make_payload) -> None:
        """A failing background refresh logs out without raising."""
        hook = MagicMock()
        transport.responses["/auth/login"] = [make_payload("at", "rt", 150)]
        transport.responses["/auth/refresh"] = [NetworkFailure("down", endpoint="/auth/refresh")]
        auth = AuthSession(
            transport,
            SessionConfig(refresh_lead_ms=100, store=store),
            on_reauth_required=hook,
        )
        await auth.login("a@b.c", "pw")
        await asyncio.sleep(0.15)

        assert transport.count("/auth/refresh") == 1
        assert (await store.get()).is_empty
        assert auth.state is SessionState.UNAUTHENTICATED
        hook.assert_called_once_with()
        await auth.aclose()


# ── Refresh ─────────────────────────────────────────────────────────


class TestRefresh:
    """Tests for AuthSession.refresh."""

    @pytest.mark.asyncio
    async def test_refresh_replaces_record(self, session, store) -> None:
        """A refresh stores the new pair."""
        await session.login("a@b.c", "pw")
        record = await session.refresh()
        assert record.access_token == "at_refreshed"
        assert await store.get() == record

    @pytest.mark.asyncio
    async def test_cookie_mode_body(self, session, transport) -> None:
        """Cookie mode sends only the mode."""
        await session.login("a@b.c", "pw")
        await session.refresh()
        assert transport.last_body("/auth/refresh") == {"mode": "cookie"}

    @pytest.mark.asyncio
    async def test_json_mode_body(self, json_session, transport) -> None:
        """JSON mode sends the stored refresh token."""
        await json_session.login("a@b.c", "pw")
        await json_session.refresh()
        assert transport.last_body("/auth/refresh") == {
            "mode": "json",
            "refresh_token": "rt_login",
        }

    @pytest.mark.asyncio
    async def test_concurrent_refresh_single_request(self, session, transport) -> None:
        """Overlapping refresh calls share one request."""
        await session.login("a@b.c", "pw")
        transport.delay = 0.03
        records = await asyncio.gather(*(session.refresh() for _ in range(5)))
        assert transport.count("/auth/refresh") == 1
        assert {r.access_token for r in records} == {"at_refreshed"}

    @pytest.mark.asyncio
    async def test_state_pending_during_refresh(self, session, transport) -> None:
        """The session reports a pending refresh while in flight."""
        await session.login("a@b.c", "pw")
        transport.delay = 0.05
        task = asyncio.ensure_future(session.refresh())
        await asyncio.sleep(0.01)
        assert session.state is SessionState.REFRESH_PENDING
        await task
        assert session.state is SessionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_store_cleared_while_in_flight(self, session, transport, store) -> None:
        """The old record is not readable during the refresh request."""
        await session.login("a@b.c", "pw")
        transport.delay = 0.05
        task = asyncio.ensure_future(session.refresh())
        await asyncio.sleep(0.01)
        assert (await store.get()).is_empty
        await task

    @pytest.mark.asyncio
    async def test_failure_propagates_and_logs_out(self, transport, store) -> None:
        """A failed refresh raises, clears the store and calls the hook."""
        hook = MagicMock()
        auth = AuthSession(transport, SessionConfig(store=store), on_reauth_required=hook)
        await auth.login("a@b.c", "pw")
        transport.responses["/auth/refresh"] = [
            AuthRejected("expired", status=401, endpoint="/auth/refresh")
        ]
        with pytest.raises(AuthRejected):
            await auth.refresh()

        assert (await store.get()).is_empty
        assert auth.state is SessionState.UNAUTHENTICATED
        assert not auth.refresh_scheduled
        hook.assert_called_once_with()
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_failing_hook_keeps_refresh_error(self, transport, store) -> None:
        """A hook that raises does not replace the refresh failure."""
        hook = MagicMock(side_effect=RuntimeError("hook broke"))
        auth = AuthSession(transport, SessionConfig(store=store), on_reauth_required=hook)
        await auth.login("a@b.c", "pw")
        transport.responses["/auth/refresh"] = [
            AuthRejected("expired", status=401, endpoint="/auth/refresh")
        ]
        with pytest.raises(AuthRejected):
            await auth.refresh()

        hook.assert_called_once_with()
        assert auth.state is SessionState.UNAUTHENTICATED
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_failure_shared_by_joined_callers(self, session, transport) -> None:
        """Every concurrent caller sees the same failure."""
        await session.login("a@b.c", "pw")
        transport.delay = 0.02
        transport.responses["/auth/refresh"] = [NetworkFailure("down", endpoint="/auth/refresh")]
        results = await asyncio.gather(
            session.refresh(), session.refresh(), return_exceptions=True
        )
        assert transport.count("/auth/refresh") == 1
        assert all(isinstance(r, NetworkFailure) for r in results)

    @pytest.mark.asyncio
    async def test_refresh_after_failure_starts_new_request(self, session, transport) -> None:
        """The guard resets once a refresh settles."""
        await session.login("a@b.c", "pw")
        transport.responses["/auth/refresh"] = [
            NetworkFailure("down", endpoint="/auth/refresh"),
            {"access_token": "at_2", "refresh_token": "rt_2", "expires": 900_000},
        ]
        with pytest.raises(NetworkFailure):
            await session.refresh()
        assert (await session.refresh()).access_token == "at_2"
        assert transport.count("/auth/refresh") == 2


# ── get_token ───────────────────────────────────────────────────────


class TestGetToken:
    """Tests for AuthSession.get_token."""

    @pytest.mark.asyncio
    async def test_unauthenticated(self, session, transport) -> None:
        """No credential means no token and no request."""
        assert await session.get_token() is None
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_fresh_token_returned(self, session, transport) -> None:
        """A token outside the lead window is returned as-is."""
        await session.login("a@b.c", "pw")
        assert await session.get_token() == "at_login"
        assert transport.count("/auth/refresh") == 0

    @pytest.mark.asyncio
    async def test_near_expiry_refreshes(self, session, transport, store) -> None:
        """A token inside the lead window is refreshed first."""
        await _store_near_expiry(store)
        assert await session.get_token() == "at_refreshed"
        assert transport.count("/auth/refresh") == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_single_refresh(self, session, transport, store) -> None:
        """Many concurrent readers trigger one refresh and share its token."""
        await _store_near_expiry(store)
        transport.delay = 0.05
        tokens = await asyncio.gather(*(session.get_token() for _ in range(20)))
        assert transport.count("/auth/refresh") == 1
        assert tokens == ["at_refreshed"] * 20

    @pytest.mark.asyncio
    async def test_waits_for_refresh_in_flight(self, session, transport) -> None:
        """A reader during a refresh gets the new token."""
        await session.login("a@b.c", "pw")
        transport.delay = 0.05
        task = asyncio.ensure_future(session.refresh())
        await asyncio.sleep(0.01)
        assert await session.get_token() == "at_refreshed"
        await task
        assert transport.count("/auth/refresh") == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_returns_none(self, session, transport, store) -> None:
        """A failed refresh yields None instead of raising."""
        await _store_near_expiry(store)
        transport.responses["/auth/refresh"] = [NetworkFailure("down", endpoint="/auth/refresh")]
        assert await session.get_token() is None
        assert session.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_manual_token_passthrough(self, session, transport) -> None:
        """A token without expiry is returned without refreshing."""
        await session.set_token("static")
        assert await session.get_token() == "static"
        assert transport.calls == []


# ── set_token ───────────────────────────────────────────────────────


class TestSetToken:
    """Tests for AuthSession.set_token."""

    @pytest.mark.asyncio
    async def test_set_token_clears_refresh_state(self, session, store) -> None:
        """Only the access token remains and no timer is armed."""
        await session.login("a@b.c", "pw")
        assert session.refresh_scheduled
        await session.set_token("manual")
        assert await store.get() == CredentialRecord(access_token="manual")
        assert not session.refresh_scheduled
        assert session.state is SessionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_set_token_none(self, session, store) -> None:
        """Setting None logs the session out locally."""
        await session.set_token("manual")
        await session.set_token(None)
        assert (await store.get()).is_empty
        assert session.state is SessionState.UNAUTHENTICATED


# ── Logout ──────────────────────────────────────────────────────────


class TestLogout:
    """Tests for AuthSession.logout."""

    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, session, transport, store) -> None:
        """Logout notifies the server and resets local state."""
        await session.login("a@b.c", "pw")
        await session.logout()
        assert transport.count("/auth/logout") == 1
        assert transport.last_body("/auth/logout") == {"mode": "cookie"}
        assert (await store.get()).is_empty
        assert not session.refresh_scheduled
        assert session.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_logout_json_mode_sends_refresh_token(self, json_session, transport) -> None:
        """JSON mode logout carries the refresh token."""
        await json_session.login("a@b.c", "pw")
        await json_session.logout()
        assert transport.last_body("/auth/logout") == {
            "mode": "json",
            "refresh_token": "rt_login",
        }

    @pytest.mark.asyncio
    async def test_logout_cleans_up_on_failure(self, session, transport, store) -> None:
        """Local cleanup runs even when the server call fails."""
        await session.login("a@b.c", "pw")
        transport.responses["/auth/logout"] = [NetworkFailure("down", endpoint="/auth/logout")]
        with pytest.raises(NetworkFailure):
            await session.logout()
        assert (await store.get()).is_empty
        assert not session.refresh_scheduled
        assert session.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_no_refresh_after_logout(self, transport, store, make_payload) -> None:
        """A cancelled timer never fires after logout."""
        transport.responses["/auth/login"] = [make_payload("at", "rt", 150)]
        auth = AuthSession(transport, SessionConfig(refresh_lead_ms=100, store=store))
        await auth.login("a@b.c", "pw")
        await auth.logout()
        await asyncio.sleep(0.1)
        assert transport.count("/auth/refresh") == 0
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_refresh_settling_after_logout_is_discarded(
        self, session, transport, store
    ) -> None:
        """A refresh still in flight at logout does not revive the session."""
        await session.login("a@b.c", "pw")
        transport.delay = 0.1
        task = asyncio.ensure_future(session.refresh())
        await asyncio.sleep(0.01)
        transport.delay = 0
        await session.logout()
        assert await session.get_token() is None

        await task
        assert await session.get_token() is None
        assert (await store.get()).is_empty
        assert not session.refresh_scheduled
        assert session.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_refresh_settling_during_logout_is_discarded(
        self, session, transport, store
    ) -> None:
        """A refresh finishing while the logout request is out is dropped."""
        await session.login("a@b.c", "pw")
        transport.delay = 0.05
        task = asyncio.ensure_future(session.refresh())
        await asyncio.sleep(0.01)
        await session.logout()
        await task
        assert (await store.get()).is_empty
        assert not session.refresh_scheduled
        assert session.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_login_during_refresh_keeps_new_credential(
        self, session, transport, store, make_payload
    ) -> None:
        """A stale refresh does not overwrite a newer login."""
        await session.login("a@b.c", "pw")
        transport.delay = 0.1
        task = asyncio.ensure_future(session.refresh())
        await asyncio.sleep(0.01)
        transport.delay = 0
        transport.responses["/auth/login"] = [make_payload("at_second", "rt_second")]
        await session.login("a@b.c", "pw")

        record = await task
        assert record.access_token == "at_second"
        assert (await store.get()).access_token == "at_second"
        assert session.state is SessionState.AUTHENTICATED
        assert session.refresh_scheduled


# ── Restore ─────────────────────────────────────────────────────────


class TestRestore:
    """Tests for AuthSession.restore."""

    @pytest.mark.asyncio
    async def test_restore_empty(self, session) -> None:
        """An empty store restores nothing."""
        assert await session.restore() is None
        assert session.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_restore_fresh_record(self, session, transport, store) -> None:
        """A valid record is adopted and the timer re-armed."""
        record = CredentialRecord("at_saved", "rt_saved", 900_000, now_ms() + 600_000)
        await store.set(record)
        assert await session.restore() == record
        assert session.state is SessionState.AUTHENTICATED
        assert session.refresh_scheduled
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_restore_near_expiry_refreshes(self, session, transport, store) -> None:
        """A stale record is refreshed on restore."""
        await _store_near_expiry(store)
        restored = await session.restore()
        assert restored.access_token == "at_refreshed"
        assert transport.count("/auth/refresh") == 1

    @pytest.mark.asyncio
    async def test_restore_refresh_failure(self, session, transport, store) -> None:
        """A failed refresh on restore returns None."""
        await _store_near_expiry(store)
        transport.responses["/auth/refresh"] = [
            AuthRejected("expired", status=401, endpoint="/auth/refresh")
        ]
        assert await session.restore() is None
        assert session.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_restore_manual_token(self, session, store) -> None:
        """A bare access token restores without a timer."""
        await store.set(CredentialRecord(access_token="manual"))
        assert (await session.restore()).access_token == "manual"
        assert not session.refresh_scheduled


# ── Lifecycle ───────────────────────────────────────────────────────


class TestLifecycle:
    """Context manager and aclose."""

    @pytest.mark.asyncio
    async def test_context_manager_stops_timer(self, transport, store) -> None:
        """Leaving the context cancels the timer but keeps the record."""
        async with AuthSession(transport, SessionConfig(store=store)) as auth:
            await auth.login("a@b.c", "pw")
            assert auth.refresh_scheduled
        assert not auth.refresh_scheduled
        assert (await store.get()).access_token == "at_login"

    @pytest.mark.asyncio
    async def test_owned_transport_closed(self, transport) -> None:
        """An owned transport is closed by aclose."""
        auth = AuthSession(transport, owns_transport=True)
        await auth.aclose()
        assert transport.closed

    @pytest.mark.asyncio
    async def test_borrowed_transport_left_open(self, transport) -> None:
        """A caller's transport is not closed."""
        await AuthSession(transport).aclose()
        assert not transport.closed

    def test_default_store_is_private(self, transport) -> None:
        """Sessions without a configured store do not share one."""
        first = AuthSession(transport)
        second = AuthSession(transport)
        assert first.store is not second.store


# ── Realtime ────────────────────────────────────────────────────────


class TestRealtime:
    """Session integration with the realtime handshake."""

    @pytest.mark.asyncio
    async def test_login_authenticates_channel(self, transport, store, channel) -> None:
        """Login sends password auth on the channel after storing."""
        auth = AuthSession(transport, SessionConfig(store=store), realtime=channel)
        await auth.login("a@b.c", "pw")
        assert channel.sent == [{"type": "auth", "email": "a@b.c", "password": "pw"}]
        assert auth.handshake.attached
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_rotation_token_not_stored(self, transport, store, channel) -> None:
        """The channel's refresh token stays out of the credential store."""
        auth = AuthSession(transport, SessionConfig(store=store), realtime=channel)
        await auth.login("a@b.c", "pw")
        await channel.deliver({"type": "auth", "status": "ok", "refresh_token": "ws_rt"})
        assert auth.handshake.rotation_token == "ws_rt"
        assert (await store.get()).refresh_token == "rt_login"
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_channel_failure_does_not_fail_login(self, transport, store, channel) -> None:
        """Login succeeds even when the channel cannot authenticate."""
        channel.fail_sends = 2
        auth = AuthSession(transport, SessionConfig(store=store), realtime=channel)
        record = await auth.login("a@b.c", "pw")
        assert record.access_token == "at_login"
        assert channel.connect_calls == 1
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_logout_detaches(self, transport, store, channel) -> None:
        """Logout removes the channel listener."""
        auth = AuthSession(transport, SessionConfig(store=store), realtime=channel)
        await auth.login("a@b.c", "pw")
        await auth.logout()
        assert channel.handlers == []
        assert not auth.handshake.attached


# ── Cross-context locking ───────────────────────────────────────────


class TestCrossContext:
    """Two sessions sharing storage, as two processes would."""

    @pytest.mark.asyncio
    async def test_second_context_adopts_refreshed_record(
        self, make_transport, make_payload
    ) -> None:
        """Only one context calls the server; the other reuses its result."""
        storage = MemoryStorage()
        transports = [make_transport(), make_transport()]
        for fake in transports:
            fake.queue("/auth/refresh", make_payload("at_shared", "rt_shared", 900_000))
            fake.delay = 0.1
        sessions = [
            AuthSession(
                fake,
                SessionConfig(mode=AuthMode.JSON, store=StorageCredentialStore(storage)),
                mutex=PollingLockMutex(storage),
            )
            for fake in transports
        ]
        await _store_near_expiry(sessions[0].store)

        tokens = await asyncio.gather(*(s.get_token() for s in sessions))

        assert tokens == ["at_shared", "at_shared"]
        assert sum(fake.count("/auth/refresh") for fake in transports) == 1
        assert sessions[1].state is SessionState.AUTHENTICATED
        for auth in sessions:
            await auth.aclose()

    @pytest.mark.asyncio
    async def test_lock_released_after_refresh(self, transport) -> None:
        """The lock record is removed once the refresh completes."""
        storage = MemoryStorage()
        mutex = PollingLockMutex(storage)
        auth = AuthSession(
            transport,
            SessionConfig(store=StorageCredentialStore(storage)),
            mutex=mutex,
        )
        await auth.login("a@b.c", "pw")
        await auth.refresh()
        assert storage.keys() == ["auth_data"]
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_busy_lock_skips_and_uses_stored_record(self, transport) -> None:
        """When the lock cannot be acquired the stored record is used."""
        storage = MemoryStorage()
        mutex = PollingLockMutex(storage, poll_interval_ms=5, max_retries=2)
        await storage.write(
            mutex.internal_key("auth_refresh"),
            f'{{"expires_at": {now_ms() + 60_000}, "owner": "other"}}',
        )
        store = StorageCredentialStore(storage)
        await store.set(CredentialRecord("at_other", "rt_other", 900_000, now_ms() + 600_000))

        auth = AuthSession(transport, SessionConfig(store=store), mutex=mutex)
        record = await auth.refresh()

        assert record.access_token == "at_other"
        assert transport.count("/auth/refresh") == 0
        assert auth.state is SessionState.AUTHENTICATED
        assert auth.refresh_scheduled
        await auth.aclose()

    @pytest.mark.asyncio
    async def test_custom_mutex_key(self, transport) -> None:
        """The configured lock key is used."""
        storage = MemoryStorage()
        seen: list[str] = []
        mutex = PollingLockMutex(storage)
        original = mutex._try_acquire

        async def spy(name: str, lease_ms: int):
            seen.append(name)
            return await original(name, lease_ms)

        mutex._try_acquire = spy
        auth = AuthSession(
            transport,
            SessionConfig(store=StorageCredentialStore(storage)),
            mutex=mutex,
            mutex_key="tenant_7",
            mutex_lease_ms=2_000,
        )
        await auth.login("a@b.c", "pw")
        await auth.refresh()
        assert seen == ["tokensession-mutex-tenant_7"]
        await auth.aclose()
