"""High-level session manager for Buttplug servers.

This module provides the client API used by applications. It handles:
- Connection management and the protocol handshake
- Request/response correlation
- Keep-alive pings and automatic reconnection
- Device inventory reconciliation
- Sensor subscription routing
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

from .config import SessionConfig
from .devices import Device
from .errors import (
    ButtplugClientError,
    ButtplugConnectionError,
    ButtplugProtocolError,
    ErrorCode,
)
from .events import ClientEvent, EventHub, Handler
from .handshake import perform_handshake
from .protocol import (
    ClientMessage,
    DeviceList,
    ErrorMessage,
    InputReading,
    RawDevice,
    ServerInfo,
    ServerMessage,
    build_disconnect,
    build_ping,
    build_request_device_list,
    build_start_scanning,
    build_stop_cmd,
    build_stop_scanning,
)
from .reconcile import ReconcileCallbacks, reconcile_devices
from .router import MessageRouter
from .scheduler import AsyncioScheduler, Scheduler
from .sensors import SensorCallback, SensorHandler, SensorKey
from .transport.connection import ConnectionState, TransportEvent, WebSocketTransport
from .transport.ping import PingManager
from .transport.reconnect import ReconnectHandler

_LOGGER = logging.getLogger(__name__)

# Grace periods for the best-effort messages sent while disconnecting.
STOP_DEVICES_TIMEOUT = 2.0
DISCONNECT_TIMEOUT = 3.0


class ButtplugSession:
    """Client session with a Buttplug server.

    Usage:
        session = ButtplugSession("ws://127.0.0.1:12345", client_name="my-app")
        session.on_device_added(my_device_handler)
        await session.connect()
        await session.start_scanning()
        ...
        await session.close()

    Settings come from ``config`` (a ``SessionConfig``), with any keyword
    ``overrides`` applied on top.
    """

    def __init__(
        self,
        url: str,
        config: SessionConfig | None = None,
        *,
        scheduler: Scheduler | None = None,
        transport: WebSocketTransport | None = None,
        logger: logging.Logger | None = None,
        **overrides: Any,
    ) -> None:
        config = config or SessionConfig()
        if overrides:
            config = config.with_overrides(**overrides)
        self.url = url
        self.config = config

        self._logger = logger or _LOGGER
        self._scheduler = scheduler or AsyncioScheduler(self._logger)
        self._transport = transport or WebSocketTransport(
            connect_timeout=config.connect_timeout, logger=self._logger
        )
        self._events = EventHub(self._scheduler, self._logger)

        self._router = MessageRouter(
            self._transport.send,
            scheduler=self._scheduler,
            timeout=config.request_timeout,
            on_device_list=self._handle_device_list,
            on_scanning_finished=self._handle_scanning_finished,
            on_input_reading=self._handle_input_reading,
            on_error=self._handle_server_error,
            logger=self._logger,
        )
        self._ping = PingManager(
            send_ping=self._send_ping,
            cancel_ping=self._cancel_ping,
            is_connected=lambda: self.connected,
            on_disconnect=self.disconnect,
            on_error=lambda err: self._events.emit(ClientEvent.ERROR, err),
            scheduler=self._scheduler,
            auto_ping=config.auto_ping,
            logger=self._logger,
        )
        self._sensors = SensorHandler(self._scheduler, self._logger.getChild("sensor"))

        self._reconnect: ReconnectHandler | None = None
        if config.auto_reconnect:
            self._reconnect = ReconnectHandler(
                self._transport,
                url,
                scheduler=self._scheduler,
                reconnect_delay=config.reconnect_delay,
                max_reconnect_delay=config.max_reconnect_delay,
                max_reconnect_attempts=config.max_reconnect_attempts,
                on_reconnecting=self._handle_reconnecting,
                on_reconnected=self._handle_reconnected,
                on_failed=self._handle_reconnect_failed,
                logger=self._logger,
            )

        self._reconcile_callbacks = ReconcileCallbacks(
            on_added=lambda device: self._events.emit(ClientEvent.DEVICE_ADDED, device),
            on_removed=self._device_removed,
            on_updated=lambda device, previous: self._events.emit(
                ClientEvent.DEVICE_UPDATED, device, previous
            ),
            on_list=lambda devices: self._events.emit(ClientEvent.DEVICE_LIST, devices),
        )

        # Session state
        self._devices: dict[int, Device] = {}
        self._server_info: ServerInfo | None = None
        self._scanning = False
        self._connect_task: asyncio.Task[None] | None = None
        self._handshaking = False
        self._disconnecting = False
        self._ping_id: int | None = None
        # Bumped by every explicit disconnect so recovery work started
        # before it stands down.
        self._session_generation = 0

        self._transport.on(TransportEvent.MESSAGE, self._router.handle_message)
        self._transport.on(TransportEvent.CLOSED, self._handle_transport_closed)
        self._transport.on(TransportEvent.ERRORED, self._handle_transport_error)

    # -------------------------------------------------------------------------
    # Public API: Properties
    # -------------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._transport.state is ConnectionState.CONNECTED

    @property
    def connection_state(self) -> ConnectionState:
        return self._transport.state

    @property
    def scanning(self) -> bool:
        return self._scanning

    @property
    def server_info(self) -> ServerInfo | None:
        """Handshake result, or None while not connected."""
        return self._server_info

    @property
    def devices(self) -> list[Device]:
        return list(self._devices.values())

    @property
    def events(self) -> EventHub:
        return self._events

    def get_device(self, index: int) -> Device | None:
        return self._devices.get(index)

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection and perform the handshake.

        Concurrent calls share one attempt. Returns at once when already
        connected.

        Raises:
            ButtplugConnectionError: If the server cannot be reached.
            ButtplugHandshakeError: If the server rejects the handshake.
            ButtplugTimeout: If the WebSocket opening handshake times out.
        """
        if self.connected and self._server_info is not None:
            return
        task = self._connect_task
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._perform_connect(), name="buttplug-connect"
            )
            self._connect_task = task
            task.add_done_callback(self._connect_done)
        await asyncio.shield(task)

    async def disconnect(self, reason: str | None = None) -> None:
        """Disconnect gracefully.

        Devices are stopped and the server told about the disconnect when a
        handshake has completed; both steps are time-bounded. Pending
        requests fail with ``ButtplugConnectionError``.
        """
        reason = reason or "Client disconnected"
        self._session_generation += 1
        self._disconnecting = True
        try:
            emitted = False

            if self._reconnect is not None and self._reconnect.active:
                self._reconnect.cancel()
                self._ping.stop()
                self._finish_disconnect(reason)
                emitted = True

            if self._transport.state is ConnectionState.CONNECTING:
                await self._transport.disconnect()
                return
            if not self.connected:
                return

            self._logger.info("[%s] Disconnecting: %s", self.config.client_name, reason)
            self._ping.stop()
            if self._reconnect is not None:
                self._reconnect.cancel()

            if self._server_info is not None and not self._handshaking:
                try:
                    await asyncio.wait_for(self.stop_all(), timeout=STOP_DEVICES_TIMEOUT)
                except (ButtplugClientError, TimeoutError) as err:
                    self._logger.warning(
                        "[%s] Stopping devices during disconnect failed: %s",
                        self.config.client_name,
                        err,
                    )
                try:
                    await asyncio.wait_for(
                        self._router.send(build_disconnect(self._router.next_id())),
                        timeout=DISCONNECT_TIMEOUT,
                    )
                except (ButtplugClientError, TimeoutError) as err:
                    self._logger.warning(
                        "[%s] Disconnect message failed or timed out: %s",
                        self.config.client_name,
                        err,
                    )

            self._router.cancel_all(ButtplugConnectionError("Client disconnected"))
            await self._transport.disconnect()

            # The close handler stays quiet while disconnecting.
            if not emitted:
                self._finish_disconnect(reason)
        finally:
            self._disconnecting = False

    async def close(self) -> None:
        """Disconnect and drop all listeners and state.

        The session must not be used afterwards.
        """
        await self.disconnect()
        self._events.clear()
        self._ping.stop()
        self._sensors.clear()
        if self._reconnect is not None:
            self._reconnect.cancel()
        self._devices.clear()

    # -------------------------------------------------------------------------
    # Public API: Server Commands
    # -------------------------------------------------------------------------

    async def start_scanning(self) -> None:
        self._require_connection("start scanning")
        await self._router.send(build_start_scanning(self._router.next_id()))
        self._scanning = True

    async def stop_scanning(self) -> None:
        self._require_connection("stop scanning")
        await self._router.send(build_stop_scanning(self._router.next_id()))
        self._scanning = False

    async def stop_all(self) -> None:
        """Stop every device on the server."""
        self._require_connection("stop devices")
        await self._router.send(build_stop_cmd(self._router.next_id()))

    async def request_device_list(self) -> None:
        """Fetch the device list and reconcile it with the local devices."""
        self._require_connection("request device list")
        responses = await self._router.send(
            build_request_device_list(self._router.next_id())
        )
        for response in responses:
            if isinstance(response, DeviceList):
                self._reconcile(list(response.devices))

    async def send(
        self, messages: ClientMessage | Sequence[ClientMessage]
    ) -> list[ServerMessage]:
        """Send raw protocol messages and return their responses in order."""
        self._require_connection("send message")
        return await self._router.send(messages)

    def next_id(self) -> int:
        return self._router.next_id()

    def register_sensor_subscription(
        self, key: SensorKey, callback: SensorCallback
    ) -> None:
        self._sensors.register(key, callback)

    def unregister_sensor_subscription(self, key: SensorKey) -> None:
        self._sensors.unregister(key)

    # -------------------------------------------------------------------------
    # Public API: Event Registration
    # -------------------------------------------------------------------------

    def on_connected(self, handler: Handler) -> Callable[[], None]:
        """Register handler called after a successful connect and handshake."""
        return self._events.subscribe(ClientEvent.CONNECTED, handler)

    def on_disconnected(self, handler: Handler) -> Callable[[], None]:
        """Register handler called with the reason when the session disconnects."""
        return self._events.subscribe(ClientEvent.DISCONNECTED, handler)

    def on_reconnecting(self, handler: Handler) -> Callable[[], None]:
        """Register handler called with the attempt number before each reconnect."""
        return self._events.subscribe(ClientEvent.RECONNECTING, handler)

    def on_reconnected(self, handler: Handler) -> Callable[[], None]:
        return self._events.subscribe(ClientEvent.RECONNECTED, handler)

    def on_scanning_finished(self, handler: Handler) -> Callable[[], None]:
        return self._events.subscribe(ClientEvent.SCANNING_FINISHED, handler)

    def on_device_added(self, handler: Handler) -> Callable[[], None]:
        return self._events.subscribe(ClientEvent.DEVICE_ADDED, handler)

    def on_device_removed(self, handler: Handler) -> Callable[[], None]:
        return self._events.subscribe(ClientEvent.DEVICE_REMOVED, handler)

    def on_device_updated(self, handler: Handler) -> Callable[[], None]:
        """Register handler called with (device, previous_device)."""
        return self._events.subscribe(ClientEvent.DEVICE_UPDATED, handler)

    def on_device_list(self, handler: Handler) -> Callable[[], None]:
        """Register handler called with the full device list after every inventory."""
        return self._events.subscribe(ClientEvent.DEVICE_LIST, handler)

    def on_input_reading(self, handler: Handler) -> Callable[[], None]:
        """Register handler for readings that match no sensor subscription."""
        return self._events.subscribe(ClientEvent.INPUT_READING, handler)

    def on_error(self, handler: Handler) -> Callable[[], None]:
        return self._events.subscribe(ClientEvent.ERROR, handler)

    # -------------------------------------------------------------------------
    # Internal: Connection
    # -------------------------------------------------------------------------

    def _require_connection(self, action: str) -> None:
        if not self.connected:
            raise ButtplugConnectionError(f"Cannot {action}: not connected")

    async def _perform_connect(self) -> None:
        self._logger.info("[%s] Connecting to %s", self.config.client_name, self.url)
        await self._transport.connect(self.url)
        if not self.connected:
            raise ButtplugConnectionError("Disconnected while connecting")

        self._handshaking = True
        try:
            self._server_info = await perform_handshake(
                self._router, self._ping, self.config.client_name, self._logger
            )
        except ButtplugClientError:
            self._ping.stop()
            await self._transport.disconnect()
            raise
        finally:
            self._handshaking = False

        self._logger.info(
            "[%s] Connected to server: %s",
            self.config.client_name,
            self._server_info.server_name or "unknown",
        )
        self._events.emit(ClientEvent.CONNECTED)

    def _connect_done(self, task: asyncio.Task[None]) -> None:
        if self._connect_task is task:
            self._connect_task = None
        if not task.cancelled():
            # Retrieved here too; callers see it through the shielded await.
            task.exception()

    def _finish_disconnect(self, reason: str, *, keep_devices: bool = False) -> None:
        self._scanning = False
        self._server_info = None
        self._sensors.clear()
        if not keep_devices:
            self._remove_all_devices()
        self._events.emit(ClientEvent.DISCONNECTED, reason)

    def _handle_connection_lost(self, reason: str) -> None:
        self._logger.warning("[%s] Connection lost: %s", self.config.client_name, reason)
        # With auto-reconnect the device table is reconciled after reconnecting.
        self._finish_disconnect(reason, keep_devices=self._reconnect is not None)
        if self._reconnect is not None:
            self._reconnect.start()

    def _handle_transport_closed(self, code: int, reason: str) -> None:
        self._ping.stop()
        if self._disconnecting:
            return
        self._router.cancel_all(ButtplugConnectionError(f"Connection closed: {reason}"))
        if self._handshaking:
            # The failing handshake reports this to whoever started it.
            return
        self._handle_connection_lost(reason)

    def _handle_transport_error(self, error: Exception) -> None:
        self._events.emit(ClientEvent.ERROR, error)

    # -------------------------------------------------------------------------
    # Internal: Reconnection
    # -------------------------------------------------------------------------

    def _handle_reconnecting(self, attempt: int) -> None:
        self._ping.stop()
        self._events.emit(ClientEvent.RECONNECTING, attempt)

    async def _handle_reconnected(self) -> None:
        generation = self._session_generation
        self._logger.info("[%s] Reconnected, performing handshake", self.config.client_name)
        self._router.cancel_all(ButtplugConnectionError("Reconnecting"))
        self._router.reset_id()
        self._server_info = None
        self._scanning = False
        self._sensors.clear()
        try:
            self._handshaking = True
            try:
                self._server_info = await perform_handshake(
                    self._router, self._ping, self.config.client_name, self._logger
                )
            finally:
                self._handshaking = False
            self._events.emit(ClientEvent.RECONNECTED)
            await self.request_device_list()
        except ButtplugClientError as err:
            if generation != self._session_generation:
                return
            self._logger.error(
                "[%s] Recovery after reconnect failed: %s", self.config.client_name, err
            )
            self._events.emit(ClientEvent.ERROR, err)
            if self.connected:
                await self.disconnect("Handshake failed after reconnect")
            elif self._reconnect is not None and not self._reconnect.active:
                self._handle_connection_lost("Connection lost during reconnect handshake")

    def _handle_reconnect_failed(self, reason: str) -> None:
        self._logger.error("[%s] Reconnection failed: %s", self.config.client_name, reason)
        self._events.emit(ClientEvent.ERROR, ButtplugConnectionError(reason))
        self._remove_all_devices()

    # -------------------------------------------------------------------------
    # Internal: Ping
    # -------------------------------------------------------------------------

    async def _send_ping(self) -> None:
        msg_id = self._router.next_id()
        self._ping_id = msg_id
        try:
            await self._router.send(build_ping(msg_id))
        finally:
            if self._ping_id == msg_id:
                self._ping_id = None

    def _cancel_ping(self, error: Exception) -> None:
        if self._ping_id is not None:
            self._router.cancel_pending(self._ping_id, error)

    # -------------------------------------------------------------------------
    # Internal: Server Events
    # -------------------------------------------------------------------------

    def _create_device(self, raw: RawDevice) -> Device:
        return Device.from_raw(self, raw, logger=self._logger.getChild("device"))

    def _reconcile(self, raw_devices: list[RawDevice]) -> None:
        reconcile_devices(
            self._devices,
            raw_devices,
            self._create_device,
            self._reconcile_callbacks,
            self._logger,
        )

    def _handle_device_list(self, raw_devices: list[RawDevice]) -> None:
        try:
            self._reconcile(raw_devices)
        except ButtplugProtocolError as err:
            self._logger.warning(
                "[%s] Ignoring device list: %s", self.config.client_name, err
            )
            self._events.emit(ClientEvent.ERROR, err)

    def _device_removed(self, device: Device) -> None:
        self._sensors.unsubscribe_device(
            device.index,
            self._router,
            connected=self._server_info is not None and self.connected,
        )
        self._events.emit(ClientEvent.DEVICE_REMOVED, device)

    def _remove_all_devices(self) -> None:
        devices = list(self._devices.values())
        self._devices.clear()
        for device in devices:
            self._device_removed(device)

    def _handle_scanning_finished(self) -> None:
        self._scanning = False
        self._events.emit(ClientEvent.SCANNING_FINISHED)

    def _handle_input_reading(self, reading: InputReading) -> None:
        self._sensors.handle_reading(
            reading, lambda r: self._events.emit(ClientEvent.INPUT_READING, r)
        )

    def _handle_server_error(self, message: ErrorMessage) -> None:
        self._logger.warning(
            "[%s] Error from server: [%d] %s",
            self.config.client_name,
            message.error_code,
            message.error_message,
        )
        error = ButtplugProtocolError(message.error_code, message.error_message)
        self._events.emit(ClientEvent.ERROR, error)
        if error.code == ErrorCode.PING:
            self._logger.error(
                "[%s] Server ping timeout, server will stop devices and disconnect",
                self.config.client_name,
            )
            self._scheduler.spawn(
                self.disconnect("Server ping timeout"), name="buttplug-server-ping"
            )
