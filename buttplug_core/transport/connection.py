"""WebSocket transport owning the single socket of a Buttplug session."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import ButtplugClientError, ButtplugConnectionError
from .ws import connect_websocket

_LOGGER = logging.getLogger(__name__)

# RFC 6455 status used when a connection dropped without a close frame.
ABNORMAL_CLOSURE = 1006


class ConnectionState(Enum):
    """Transport lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TransportEvent(Enum):
    """Events emitted by ``WebSocketTransport``.

    Handler arguments per event:
        OPENED: none
        MESSAGE: frame text (str)
        CLOSED: close code (int), reason (str)
        ERRORED: exception
    """

    OPENED = "opened"
    MESSAGE = "message"
    CLOSED = "closed"
    ERRORED = "errored"


class WebSocketTransport:
    """Text-frame WebSocket transport with a background reader task.

    Only this class touches the socket. The connection state is exposed
    read-only through ``state``.
    """

    def __init__(
        self,
        *,
        connect_timeout: float = 15.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._logger = (logger or _LOGGER).getChild("ws-transport")
        self._listeners: dict[TransportEvent, list[Callable[..., Any]]] = {}

        self._ws: ClientConnection | None = None
        self._state = ConnectionState.DISCONNECTED
        self._connect_task: asyncio.Task[None] | None = None
        self._disconnect_requested = False
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def on(self, event: TransportEvent, handler: Callable[..., Any]) -> None:
        handlers = self._listeners.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: TransportEvent, handler: Callable[..., Any]) -> None:
        handlers = self._listeners.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def connect(self, url: str) -> None:
        """Open the socket.

        Returns at once when already connected. Concurrent callers share the
        outcome of the attempt already in flight.

        Raises:
            ButtplugConnectionError: The server could not be reached.
            ButtplugHandshakeError: The WebSocket upgrade was rejected.
            ButtplugTimeout: The opening handshake took too long.
        """
        if self._state is ConnectionState.CONNECTED:
            return
        task = self._connect_task
        if task is None:
            self._state = ConnectionState.CONNECTING
            self._disconnect_requested = False
            self._logger.debug("Opening WebSocket connection to %s", url)
            task = asyncio.get_running_loop().create_task(
                self._open(url), name="ws-transport-connect"
            )
            self._connect_task = task
            task.add_done_callback(self._connect_done)
        await asyncio.shield(task)

    async def disconnect(self) -> None:
        """Close the socket gracefully. No-op when already disconnected.

        A connect attempt still in flight is flagged so its socket is torn
        down as soon as it opens; this waits for that to happen.
        """
        if self._state is ConnectionState.DISCONNECTED:
            return

        self._logger.info("Disconnecting WebSocket")
        connect_task = self._connect_task
        if connect_task is not None:
            self._disconnect_requested = True
            await asyncio.wait([connect_task])
            if self._state is ConnectionState.CONNECTED:
                # the attempt had already opened before the flag was set
                await self.disconnect()
            return

        ws = self._ws
        if ws is None:
            self._state = ConnectionState.DISCONNECTED
            return
        await ws.close(code=1000, reason="Client disconnect")
        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task():
            await asyncio.wait([reader])

    async def send(self, data: str) -> None:
        """Send one text frame.

        Raises:
            ButtplugConnectionError: If the socket is not connected or the
                write fails.
        """
        ws = self._ws
        if self._state is not ConnectionState.CONNECTED or ws is None:
            raise ButtplugConnectionError("Cannot send: WebSocket is not connected")
        try:
            await ws.send(data)
        except WebSocketException as err:
            raise ButtplugConnectionError(f"Failed to send data: {err}") from err

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _open(self, url: str) -> None:
        try:
            ws = await connect_websocket(url, timeout=self._connect_timeout)
        except ButtplugClientError as err:
            self._state = ConnectionState.DISCONNECTED
            self._logger.error("WebSocket connect failed: %s", err)
            self._emit(TransportEvent.ERRORED, err)
            raise

        if self._disconnect_requested:
            # disconnect() arrived while connecting
            self._disconnect_requested = False
            self._logger.debug("Disconnect requested during connect, closing socket")
            await ws.close(code=1000, reason="Client disconnect")
            self._state = ConnectionState.DISCONNECTED
            return

        self._ws = ws
        self._state = ConnectionState.CONNECTED
        self._reader_task = asyncio.get_running_loop().create_task(
            self._read_loop(ws), name="ws-transport-reader"
        )
        self._logger.info("WebSocket connected")
        self._emit(TransportEvent.OPENED)

    def _connect_done(self, task: asyncio.Task[None]) -> None:
        if self._connect_task is task:
            self._connect_task = None
        if task.cancelled():
            if self._ws is None:
                self._state = ConnectionState.DISCONNECTED
            return
        # Consumed here so a failure nobody awaited is not reported as
        # "never retrieved"; callers see it through the shielded await.
        task.exception()

    async def _read_loop(self, ws: ClientConnection) -> None:
        try:
            async for frame in ws:
                if isinstance(frame, bytes):
                    self._logger.debug("Ignoring binary frame (%d bytes)", len(frame))
                    continue
                self._emit(TransportEvent.MESSAGE, frame)
        except ConnectionClosed:
            pass
        except Exception as err:
            self._logger.error("WebSocket error: %s", err)
            self._emit(
                TransportEvent.ERRORED, ButtplugConnectionError(f"WebSocket error: {err}")
            )
            await ws.close(code=1011, reason="Client read error")

        code = ws.close_code if ws.close_code is not None else ABNORMAL_CLOSURE
        reason = ws.close_reason or f"Code: {code}"
        if self._ws is ws:
            self._ws = None
            self._state = ConnectionState.DISCONNECTED
            self._reader_task = None
        self._logger.info("WebSocket closed (code: %d, reason: %s)", code, reason)
        self._emit(TransportEvent.CLOSED, code, reason)

    def _emit(self, event: TransportEvent, *args: Any) -> None:
        for handler in list(self._listeners.get(event, ())):
            try:
                handler(*args)
            except Exception:
                self._logger.exception("Error in %s handler", event.value)
