"""Request/response correlation and event dispatch over one socket."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any

from .config import DEFAULT_REQUEST_TIMEOUT
from .errors import ButtplugProtocolError, ButtplugTimeout, ErrorCode
from .protocol import (
    EVENT_MESSAGE_ID,
    MAX_MESSAGE_ID,
    ClientMessage,
    DeviceList,
    ErrorMessage,
    InputReading,
    RawDevice,
    ScanningFinished,
    ServerMessage,
    extract_message_id,
    parse_server_messages,
    serialize_messages,
)

if TYPE_CHECKING:
    from .scheduler import Scheduler, TimerHandle

_LOGGER = logging.getLogger(__name__)


@dataclass
class _PendingRequest:
    future: asyncio.Future[ServerMessage]
    timer: TimerHandle


class MessageRouter:
    """Correlates responses with requests by message id.

    Messages with id 0, or whose id matches no pending request, are
    dispatched as server events to the callbacks given at construction.

    Args:
        send: Writes one serialized frame to the transport.
        scheduler: Timer source for request timeouts.
        timeout: Seconds each request may wait for its response.
    """

    def __init__(
        self,
        send: Callable[[str], Awaitable[None]],
        *,
        scheduler: Scheduler,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        on_device_list: Callable[[list[RawDevice]], None] | None = None,
        on_scanning_finished: Callable[[], None] | None = None,
        on_input_reading: Callable[[InputReading], None] | None = None,
        on_error: Callable[[ErrorMessage], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._send = send
        self._scheduler = scheduler
        self._timeout = timeout
        self._on_device_list = on_device_list
        self._on_scanning_finished = on_scanning_finished
        self._on_input_reading = on_input_reading
        self._on_error = on_error
        self._logger = (logger or _LOGGER).getChild("router")

        self._pending: dict[int, _PendingRequest] = {}
        self._message_id = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def timeout(self) -> float:
        return self._timeout

    def next_id(self) -> int:
        """Return the next message id, wrapping from ``MAX_MESSAGE_ID`` back to 1."""
        self._message_id = (self._message_id % MAX_MESSAGE_ID) + 1
        return self._message_id

    def reset_id(self) -> None:
        """Restart ids from 1. Used after a reconnect."""
        self._message_id = 0

    async def send(
        self, messages: ClientMessage | Sequence[ClientMessage]
    ) -> list[ServerMessage]:
        """Send one or more messages in a single frame.

        Returns the responses in the order of ``messages``, matched by id.

        Raises:
            ButtplugTimeout: A response did not arrive in time.
            ButtplugProtocolError: The server answered with an Error, or a
                message is malformed or reuses a pending id.
            ButtplugConnectionError: The frame could not be written.
        """
        batch = [messages] if isinstance(messages, Mapping) else list(messages)
        if not batch:
            return []

        ids = [extract_message_id(message) for message in batch]
        seen: set[int] = set()
        for msg_id in ids:
            if msg_id == EVENT_MESSAGE_ID:
                raise ButtplugProtocolError(
                    ErrorCode.MESSAGE, "Invalid message: Id 0 is reserved for server events"
                )
            if msg_id in self._pending or msg_id in seen:
                raise ButtplugProtocolError(
                    ErrorCode.MESSAGE, f"Invalid message: Id {msg_id} is already pending"
                )
            seen.add(msg_id)

        serialized = serialize_messages(batch)
        label = "message" if len(batch) == 1 else f"batch ({len(batch)})"
        self._logger.debug("Sending %s: %s", label, serialized)

        loop = asyncio.get_running_loop()
        futures: list[asyncio.Future[ServerMessage]] = []
        for msg_id in ids:
            future: asyncio.Future[ServerMessage] = loop.create_future()
            timer = self._scheduler.call_later(self._timeout, partial(self._expire, msg_id))
            self._pending[msg_id] = _PendingRequest(future, timer)
            futures.append(future)

        try:
            await self._send(serialized)
        except BaseException:
            self._discard(ids, futures)
            raise

        try:
            return list(await asyncio.gather(*futures))
        except asyncio.CancelledError:
            self._discard(ids, futures)
            raise

    def handle_message(self, raw: str) -> None:
        """Route every message of an inbound frame. Never raises on bad input."""
        self._logger.debug("Received message: %s", raw)
        try:
            messages = parse_server_messages(raw, self._logger)
        except ValueError as err:
            self._logger.error("Failed to parse message: %s", err)
            return
        for message in messages:
            self._process_message(message)

    def cancel_pending(self, msg_id: int, error: Exception) -> None:
        """Fail one pending request with ``error``."""
        entry = self._pending.pop(msg_id, None)
        if entry is None:
            return
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_exception(error)

    def cancel_all(self, error: Exception) -> None:
        """Fail every pending request with ``error``."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(error)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _expire(self, msg_id: int) -> None:
        entry = self._pending.pop(msg_id, None)
        if entry is None or entry.future.done():
            return
        self._logger.debug("Request %d timed out after %gs", msg_id, self._timeout)
        entry.future.set_exception(ButtplugTimeout(f"Request (ID {msg_id})", self._timeout))

    def _discard(
        self, ids: list[int], futures: list[asyncio.Future[ServerMessage]]
    ) -> None:
        for msg_id, future in zip(ids, futures):
            entry = self._pending.get(msg_id)
            if entry is not None and entry.future is future:
                del self._pending[msg_id]
                entry.timer.cancel()
            if not future.done():
                future.cancel()

    def _process_message(self, message: ServerMessage) -> None:
        if message.id == EVENT_MESSAGE_ID:
            self._route_event(message)
            return

        entry = self._pending.pop(message.id, None)
        if entry is None:
            self._route_event(message)
            return

        # Settle the table before resolving: the waiter may send again at once.
        entry.timer.cancel()
        if entry.future.done():
            return
        if isinstance(message, ErrorMessage):
            entry.future.set_exception(
                ButtplugProtocolError(message.error_code, message.error_message)
            )
        else:
            entry.future.set_result(message)

    def _route_event(self, message: ServerMessage) -> None:
        if isinstance(message, DeviceList):
            self._dispatch("device list", self._on_device_list, list(message.devices))
        elif isinstance(message, ScanningFinished):
            self._dispatch("scanning finished", self._on_scanning_finished)
        elif isinstance(message, InputReading):
            self._dispatch("input reading", self._on_input_reading, message)
        elif isinstance(message, ErrorMessage):
            self._dispatch("error", self._on_error, message)
        else:
            self._logger.warning(
                "Unexpected %s message with id %d, dropping",
                type(message).__name__,
                message.id,
            )

    def _dispatch(
        self, name: str, callback: Callable[..., None] | None, *args: Any
    ) -> None:
        if callback is None:
            self._logger.debug("No handler for %s event", name)
            return
        try:
            callback(*args)
        except Exception:
            self._logger.exception("Error in %s handler", name)
