"""Demo: keep a Directus-style API session alive with tokensession.

Demonstrates the documented session patterns:

- ``create_session()`` wiring from ``[tool.tokensession]`` / env settings
- ``session.login()`` followed by ``session.get_token()`` on every request
- proactive refresh in the background, with ``on_reauth_required``
  called if the server stops accepting the refresh token
- an optional ``WebSocketChannel`` authenticated alongside the HTTP session

Setup
-----
1. Point the transport at a server exposing ``/auth/login``,
   ``/auth/refresh`` and ``/auth/logout``::

       # Bash
       export TOKENSESSION_TRANSPORT__BASE_URL="http://localhost:8055"
       export TOKENSESSION_SESSION__MODE="json"

       # Share refreshes across several worker processes
       export TOKENSESSION_STORAGE__BACKEND="redis"
       export TOKENSESSION_STORAGE__REDIS_URL="redis://localhost:6379/0"

2. Export the account to sign in with::

       export DEMO_EMAIL="admin@example.com"
       export DEMO_PASSWORD="d1r3ctu5"
       export DEMO_WEBSOCKET_URL="ws://localhost:8055/websocket"   # optional

3. Run::

       python examples/tokensession_demo.py
"""

from __future__ import annotations

import asyncio
import os
import sys

from tokensession import (
    TokenSessionError,
    WebSocketChannel,
    create_session,
    get_settings,
)
from tokensession.log import enable_debug


EMAIL = os.environ.get("DEMO_EMAIL", "")
PASSWORD = os.environ.get("DEMO_PASSWORD", "")
WEBSOCKET_URL = os.environ.get("DEMO_WEBSOCKET_URL")


def on_reauth_required() -> None:
    """Called when the refresh token is no longer accepted."""
    print("Session expired: please sign in again.")


async def main() -> int:
    """Sign in, poll the token for a while, then sign out."""
    if not EMAIL or not PASSWORD:
        print("Set DEMO_EMAIL and DEMO_PASSWORD first (see the module docstring).")
        return 1

    if "--debug" in sys.argv:
        enable_debug()

    print(get_settings().show())

    realtime = WebSocketChannel(WEBSOCKET_URL) if WEBSOCKET_URL else None
    if realtime is not None:
        await realtime.connect()

    async with create_session(realtime=realtime, on_reauth_required=on_reauth_required) as session:
        try:
            record = await session.login(EMAIL, PASSWORD)
        except TokenSessionError as exc:
            print(f"Authentication failed: {exc}")
            return 1

        print(f"Signed in; token expires in {record.expires} ms")
        for _ in range(6):
            token = await session.get_token()
            print(f"[{session.state.value}] token={token[:12] if token else None}...")
            await asyncio.sleep(10)

        await session.logout()
        print("Signed out")

    if realtime is not None:
        await realtime.close()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
