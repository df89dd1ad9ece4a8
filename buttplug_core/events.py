"""Publish/subscribe hub for session lifecycle events."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .scheduler import Scheduler

_LOGGER = logging.getLogger(__name__)


class ClientEvent(Enum):
    """Events published by ``ButtplugSession``.

    Handler arguments per event:
        CONNECTED: none
        DISCONNECTED: reason (str)
        RECONNECTING: attempt (int)
        RECONNECTED: none
        SCANNING_FINISHED: none
        DEVICE_ADDED: device
        DEVICE_REMOVED: device
        DEVICE_UPDATED: device, previous device
        DEVICE_LIST: list of devices
        INPUT_READING: InputReading
        ERROR: exception
    """

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    SCANNING_FINISHED = "scanning_finished"
    DEVICE_ADDED = "device_added"
    DEVICE_REMOVED = "device_removed"
    DEVICE_UPDATED = "device_updated"
    DEVICE_LIST = "device_list"
    INPUT_READING = "input_reading"
    ERROR = "error"


Handler = Callable[..., Any]


class EventHub:
    """Dispatches events to registered handlers.

    Handlers run synchronously in registration order. A handler that returns
    a coroutine has it scheduled as a background task. Exceptions raised by
    one handler are logged and never reach the publisher or other handlers.
    """

    def __init__(
        self, scheduler: Scheduler, logger: logging.Logger | None = None
    ) -> None:
        self._scheduler = scheduler
        self._logger = logger or _LOGGER
        self._handlers: dict[ClientEvent, list[Handler]] = {}

    def subscribe(self, event: ClientEvent, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event`` and return a function that removes it."""
        self._handlers.setdefault(event, []).append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(event, handler)

        return _unsubscribe

    def unsubscribe(self, event: ClientEvent, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def clear(self) -> None:
        """Drop every registered handler."""
        self._handlers.clear()

    def listener_count(self, event: ClientEvent) -> int:
        return len(self._handlers.get(event, ()))

    def emit(self, event: ClientEvent, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
            except Exception:
                self._logger.exception("Error in %s handler", event.value)
                continue
            if inspect.iscoroutine(result):
                self._scheduler.spawn(result, name=f"event-{event.value}")
