"""HTTP transport for the auth endpoints.

Defines the Transport ABC the session depends on and an httpx-backed
implementation. The transport owns URL resolution, JSON encoding, error
mapping and unwrapping of the ``{"data": ...}`` response envelope.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import json
import logging

from abc import ABC, abstractmethod
from typing import Any

import httpx

from .exceptions import AuthRejected, HttpStatusError, NetworkFailure
from .log import redact_sensitive_data


logger = logging.getLogger("tokensession.transport")

_AUTH_REJECTED_STATUSES = frozenset({401, 403})


class Transport(ABC):
    """Abstract request/response transport."""

    @abstractmethod
    async def send(
        self,
        path: str,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        credentials_policy: str | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON payload.

        Parameters
        ----------
        path : str
            Endpoint path (e.g. ``/auth/login``).
        method : str
            HTTP method.
        headers : dict, optional
            Extra request headers.
        body : dict, optional
            JSON request body.
        credentials_policy : str, optional
            Opaque policy for ambient credentials (cookies).

        Returns
        -------
        Any
            The decoded payload, or None for empty responses.

        Raises
        ------
        NetworkFailure
            If the server could not be reached.
        AuthRejected
            If the server answered 401 or 403.
        HttpStatusError
            For any other non-success status.
        """

    async def close(self) -> None:  # noqa: B027
        """Release transport resources."""


class HttpxTransport(Transport):
    """Transport built on ``httpx.AsyncClient``.

    Parameters
    ----------
    base_url : str
        Server root URL.
    timeout : float
        Request timeout in seconds (default 30).
    client : httpx.AsyncClient, optional
        Pre-configured client (for tests with ``httpx.MockTransport``).
        A client passed in is not closed by ``close()``.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 30.0,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the httpx transport."""
        self.base_url = base_url
        self.timeout = timeout
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    async def send(
        self,
        path: str,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        credentials_policy: str | None = None,
    ) -> Any:
        """Send a JSON request through httpx."""
        client = await self._get_client()
        request_headers = {"Content-Type": "application/json"}
        if headers:
            request_headers.update(headers)

        request = client.build_request(
            method,
            path,
            headers=request_headers,
            content=json.dumps(body) if body is not None else None,
        )
        if credentials_policy == "omit":
            request.headers.pop("cookie", None)

        logger.debug("%s %s body=%s", method, path, redact_sensitive_data(body))

        try:
            response = await client.send(request)
        except httpx.TransportError as exc:
            msg = f"Request to {path} failed: {exc}"
            raise NetworkFailure(msg, endpoint=path) from exc

        payload = _decode(response)
        if response.is_success:
            if isinstance(payload, dict) and "data" in payload:
                return payload["data"]
            return payload

        msg = f"{method} {path} returned {response.status_code}"
        if response.status_code in _AUTH_REJECTED_STATUSES:
            raise AuthRejected(msg, status=response.status_code, endpoint=path, payload=payload)
        raise HttpStatusError(msg, status=response.status_code, endpoint=path, payload=payload)


def _decode(response: httpx.Response) -> Any:
    """Decode a JSON body, tolerating empty or non-JSON responses."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None
