"""WebSocket helpers for the Buttplug client transport."""

from __future__ import annotations

import asyncio

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    ButtplugConnectionError,
    ButtplugHandshakeError,
    ButtplugTimeout,
)

# Seconds the library waits for the closing handshake before dropping the socket.
CLOSE_TIMEOUT = 5


async def connect_websocket(
    url: str,
    *,
    timeout: float = 15.0,
    ping_interval: float | None = None,
) -> ClientConnection:
    """Open a text-frame connection to a Buttplug server.

    Liveness is checked with Buttplug ``Ping`` messages paced by the
    server's ``MaxPingTime``, so WebSocket-level ping frames are off unless
    ``ping_interval`` asks for them. Frames are not size-limited because a
    ``DeviceList`` grows with the number of connected devices.

    Args:
        url: Server URL, e.g. ``ws://127.0.0.1:12345``
        timeout: Seconds allowed for the opening handshake
        ping_interval: Seconds between WebSocket ping frames, or None

    Raises:
        ButtplugTimeout: The opening handshake took longer than ``timeout``.
        ButtplugHandshakeError: The URL is invalid or the upgrade was refused.
        ButtplugConnectionError: The server could not be reached.
    """
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=CLOSE_TIMEOUT,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise ButtplugTimeout("WebSocket connect", timeout) from err
    except (InvalidHandshake, InvalidURI) as err:
        raise ButtplugHandshakeError(f"Cannot open {url}: {err}") from err
    except (OSError, WebSocketException) as err:
        raise ButtplugConnectionError(f"Cannot reach {url}: {err}") from err
