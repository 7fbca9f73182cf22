"""tokensession exception hierarchy.

All tokensession exceptions inherit from TokenSessionError, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class TokenSessionError(Exception):
    """Base exception for all tokensession errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize the exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (endpoint, status, key, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class TransportError(TokenSessionError):
    """HTTP transport operation failed.

    Base for everything the transport collaborator can raise.
    """

    def __init__(self, message: str, endpoint: str | None = None, **context: Any) -> None:
        """Initialize transport error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        endpoint : str, optional
            The request path that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, endpoint=endpoint, **context)
        self.endpoint = endpoint


class NetworkFailure(TransportError):
    """The server could not be reached.

    Raised for connection errors, DNS failures, and transport timeouts.
    """


class HttpStatusError(TransportError):
    """The server answered with a non-success status."""

    def __init__(
        self,
        message: str,
        status: int,
        endpoint: str | None = None,
        payload: Any = None,
        **context: Any,
    ) -> None:
        """Initialize HTTP status error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status : int
            The HTTP status code.
        endpoint : str, optional
            The request path that failed.
        payload : Any, optional
            The decoded error body, if any.
        **context : Any
            Additional context.
        """
        super().__init__(message, endpoint=endpoint, status=status, **context)
        self.status = status
        self.payload = payload


class AuthenticationError(TokenSessionError):
    """Base exception for all authentication failures."""


class AuthRejected(AuthenticationError, HttpStatusError):
    """The server rejected the credentials or refresh token.

    Raised for 401/403 answers from the auth endpoints.
    """


class MutexTimeout(TokenSessionError):
    """Cross-context lock was not acquired within its retry budget."""

    def __init__(self, message: str, key: str, attempts: int, **context: Any) -> None:
        """Initialize mutex timeout.

        Parameters
        ----------
        message : str
            Human-readable error message.
        key : str
            The lock key that could not be acquired.
        attempts : int
            Number of acquisition attempts made.
        **context : Any
            Additional context.
        """
        super().__init__(message, key=key, attempts=attempts, **context)
        self.key = key
        self.attempts = attempts


class ChannelError(TokenSessionError):
    """Real-time channel operation failed."""


class ChannelAuthExpired(ChannelError):
    """The real-time channel reported that its token expired.

    Handled by the reauth handshake; never raised to callers.
    """

    def __init__(self, message: str, code: str | None = None, **context: Any) -> None:
        """Initialize channel expiry error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        code : str, optional
            The error code sent by the channel.
        **context : Any
            Additional context.
        """
        super().__init__(message, code=code, **context)
        self.code = code
