"""Pytest configuration and shared fakes for tokensession tests."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio
import contextlib

from typing import TYPE_CHECKING, Any

import pytest

from tokensession.exceptions import ChannelError


if TYPE_CHECKING:
    from collections.abc import Callable


# =============================================================================
# Transport double
# =============================================================================


class FakeTransport:
    """Transport double that records requests and replays queued outcomes.

    ``responses`` maps a path to a list of outcomes consumed in order;
    the last outcome repeats. An outcome is a payload dict, an
    exception instance (raised), or a callable taking the body.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.responses: dict[str, list[Any]] = {}
        self.delay: float = 0.0
        self.closed = False

    def queue(self, path: str, *outcomes: Any) -> None:
        """Append outcomes for ``path``."""
        self.responses.setdefault(path, []).extend(outcomes)

    def count(self, path: str) -> int:
        """Number of requests sent to ``path``."""
        return sum(1 for call in self.calls if call["path"] == path)

    def last_body(self, path: str) -> dict[str, Any] | None:
        """Body of the most recent request to ``path``."""
        for call in reversed(self.calls):
            if call["path"] == path:
                return call["body"]
        return None

    async def send(
        self,
        path: str,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        credentials_policy: str | None = None,
    ) -> Any:
        self.calls.append(
            {
                "path": path,
                "method": method,
                "headers": headers,
                "body": body,
                "credentials_policy": credentials_policy,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)

        outcomes = self.responses.get(path) or [None]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(body)
        return outcome

    async def close(self) -> None:
        self.closed = True


# =============================================================================
# Realtime channel double
# =============================================================================


class FakeChannel:
    """In-process RealtimeChannel double.

    ``fail_sends`` makes the next N ``send`` calls raise ChannelError.
    """

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.handlers: list[Callable[[dict[str, Any]], Any]] = []
        self.connect_calls = 0
        self.fail_sends = 0

    async def connect(self) -> None:
        self.connect_calls += 1

    async def send(self, message: dict[str, Any]) -> None:
        if self.fail_sends > 0:
            self.fail_sends -= 1
            msg = "not connected"
            raise ChannelError(msg)
        self.sent.append(message)

    def on_message(self, handler: Callable[[dict[str, Any]], Any]) -> Callable[[], None]:
        self.handlers.append(handler)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self.handlers.remove(handler)

        return unsubscribe

    async def deliver(self, message: dict[str, Any]) -> None:
        """Simulate an inbound message."""
        for handler in list(self.handlers):
            result = handler(message)
            if asyncio.iscoroutine(result):
                await result


# =============================================================================
# Fixtures
# =============================================================================


def credential_payload(
    access_token: str = "at_1",
    refresh_token: str | None = "rt_1",
    expires: int | None = 900_000,
) -> dict[str, Any]:
    """Build a login/refresh response body."""
    return {"access_token": access_token, "refresh_token": refresh_token, "expires": expires}


@pytest.fixture()
def transport() -> FakeTransport:
    """Create a transport double with a default login/refresh/logout script."""
    fake = FakeTransport()
    fake.queue("/auth/login", credential_payload("at_login", "rt_login"))
    fake.queue("/auth/refresh", credential_payload("at_refreshed", "rt_refreshed"))
    fake.queue("/auth/logout", None)
    return fake


@pytest.fixture()
def channel() -> FakeChannel:
    """Create a realtime channel double."""
    return FakeChannel()


@pytest.fixture()
def make_payload() -> Callable[..., dict[str, Any]]:
    """Expose the credential payload builder to tests."""
    return credential_payload


@pytest.fixture()
def make_transport() -> Callable[[], FakeTransport]:
    """Factory for extra transport doubles (one per simulated process)."""
    return FakeTransport
