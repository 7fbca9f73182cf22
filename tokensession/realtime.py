"""Real-time channel authentication.

A persistent duplex channel (WebSocket) authenticates itself with its own
``auth`` handshake, separate from the HTTP session:

- outbound ``{"type": "auth", "email": ..., "password": ...}`` after login
- inbound ``{"type": "auth", "status": "ok", "refresh_token": ...}`` records
  the channel's rotation token
- inbound ``{"type": "auth", "status": "error", "error": {"code":
  "TOKEN_EXPIRED"}}`` triggers ``{"type": "auth", "refresh_token": ...}``
  with the recorded rotation token

The rotation token is channel-scoped and is never written to the
session's credential store.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .exceptions import ChannelAuthExpired, ChannelError


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .types import RealtimeMessage

    MessageHandler = Callable[[RealtimeMessage], Awaitable[None] | None]


logger = logging.getLogger("tokensession.realtime")

TOKEN_EXPIRED = "TOKEN_EXPIRED"


class RealtimeChannel(ABC):
    """Abstract duplex message channel."""

    @abstractmethod
    async def connect(self) -> None:
        """Open (or re-open) the channel."""

    @abstractmethod
    async def send(self, message: RealtimeMessage) -> None:
        """Send one message.

        Raises
        ------
        ChannelError
            If the channel is not connected or the send fails.
        """

    @abstractmethod
    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Register ``handler`` for inbound messages.

        Returns
        -------
        callable
            Zero-argument function that unregisters the handler.
        """


class WebSocketChannel(RealtimeChannel):
    """RealtimeChannel over a ``websockets`` client connection.

    Inbound frames are decoded as JSON objects and dispatched to every
    registered handler in registration order.

    Parameters
    ----------
    url : str
        WebSocket endpoint (``ws://`` or ``wss://``).
    """

    def __init__(self, url: str) -> None:
        """Initialize an unconnected channel."""
        self.url = url
        self._connection: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._handlers: list[MessageHandler] = []

    @property
    def connected(self) -> bool:
        """True while a connection is open."""
        return self._connection is not None

    async def connect(self) -> None:
        """Open the WebSocket and start the reader task."""
        await self.close()
        try:
            self._connection = await ws_connect(self.url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            msg = f"Could not connect to {self.url}: {exc}"
            raise ChannelError(msg, url=self.url) from exc
        self._reader = asyncio.ensure_future(self._read_loop(self._connection))
        logger.debug("Connected realtime channel %s", self.url)

    async def close(self) -> None:
        """Close the connection and stop the reader task."""
        connection, self._connection = self._connection, None
        reader, self._reader = self._reader, None
        if connection is not None:
            await connection.close()
        if reader is not None:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

    async def send(self, message: RealtimeMessage) -> None:
        """Encode ``message`` as JSON and send it."""
        if self._connection is None:
            msg = "Realtime channel is not connected"
            raise ChannelError(msg, url=self.url)
        try:
            await self._connection.send(json.dumps(message))
        except ConnectionClosed as exc:
            self._connection = None
            msg = f"Realtime channel closed: {exc}"
            raise ChannelError(msg, url=self.url) from exc

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Register a message handler."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return unsubscribe

    async def _read_loop(self, connection: Any) -> None:
        try:
            async for frame in connection:
                try:
                    message = json.loads(frame)
                except ValueError:
                    logger.debug("Dropping non-JSON realtime frame")
                    continue
                if isinstance(message, dict):
                    await self._dispatch(message)
        except ConnectionClosed:
            logger.debug("Realtime channel %s closed by peer", self.url)
        finally:
            if self._connection is connection:
                self._connection = None

    async def _dispatch(self, message: RealtimeMessage) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Realtime message handler failed")


def _raise_for_auth_error(code: str | None) -> None:
    """Raise ChannelAuthExpired for an expiry code; log anything else."""
    if code == TOKEN_EXPIRED:
        msg = "Realtime channel token expired"
        raise ChannelAuthExpired(msg, code=code)
    logger.warning("Realtime auth error: %s", code)


class RealtimeReauthHandshake:
    """Authenticates a channel and rotates its credential on expiry.

    One listener is installed per ``authenticate`` call; a previous
    listener is removed first. ``detach`` removes it for good.

    Parameters
    ----------
    channel : RealtimeChannel
        The channel to authenticate.
    """

    def __init__(self, channel: RealtimeChannel) -> None:
        """Initialize the handshake for ``channel``."""
        self.channel = channel
        self._unsubscribe: Callable[[], None] | None = None
        self._rotation_token: str | None = None

    @property
    def rotation_token(self) -> str | None:
        """The channel's current refresh token, if one was received."""
        return self._rotation_token

    @property
    def attached(self) -> bool:
        """True while the message listener is installed."""
        return self._unsubscribe is not None

    async def authenticate(self, email: str, password: str) -> None:
        """Install the reauth listener and send password credentials.

        If the send fails, the channel is reconnected and the send is
        retried once. A second failure is logged, not raised; the HTTP
        session stays valid without the channel.

        Parameters
        ----------
        email : str
            Account identifier.
        password : str
            Account secret.
        """
        self.detach()
        self._unsubscribe = self.channel.on_message(self.handle_message)

        message = {"type": "auth", "email": email, "password": password}
        try:
            await self.channel.send(message)
        except ChannelError as exc:
            logger.debug("Realtime auth send failed (%s); reconnecting", exc)
            try:
                await self.channel.connect()
                await self.channel.send(message)
            except ChannelError:
                logger.exception("Realtime channel authentication failed after reconnect")

    async def handle_message(self, message: RealtimeMessage) -> None:
        """React to an inbound channel message.

        Parameters
        ----------
        message : dict
            Decoded inbound message.
        """
        if message.get("type") != "auth":
            return

        status = message.get("status")
        if status == "ok":
            self._rotation_token = message.get("refresh_token")
            logger.debug("Realtime channel authenticated")
            return

        if status != "error":
            return

        error = message.get("error") or {}
        code = error.get("code") if isinstance(error, dict) else None
        try:
            _raise_for_auth_error(code)
        except ChannelAuthExpired as exc:
            await self._reauthenticate(exc)

    async def _reauthenticate(self, expiry: ChannelAuthExpired) -> None:
        if not self._rotation_token:
            logger.info("%s; no rotation token on hand", expiry)
            return

        logger.debug("%s; re-authenticating with rotation token", expiry)
        try:
            await self.channel.send({"type": "auth", "refresh_token": self._rotation_token})
        except ChannelError:
            logger.exception("Realtime re-authentication failed")

    def detach(self) -> None:
        """Remove the message listener and forget the rotation token."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._rotation_token = None
