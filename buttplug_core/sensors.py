"""Local registry of sensor subscriptions and dispatch of incoming readings."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol

from .errors import ButtplugClientError
from .protocol import ClientMessage, InputReading, build_input_cmd

if TYPE_CHECKING:
    from .scheduler import Scheduler

_LOGGER = logging.getLogger(__name__)

SensorCallback = Callable[[int | float], Any]


class SensorKey(NamedTuple):
    """Composite key identifying one sensor subscription."""

    device_index: int
    feature_index: int
    sensor_type: str


def sensor_key(device_index: int, feature_index: int, sensor_type: str) -> SensorKey:
    return SensorKey(device_index, feature_index, sensor_type)


class _RequestSender(Protocol):
    def next_id(self) -> int: ...

    async def send(self, messages: ClientMessage | Sequence[ClientMessage]) -> Any: ...


class SensorHandler:
    """Maps ``SensorKey`` to the callback receiving its readings."""

    def __init__(
        self, scheduler: Scheduler, logger: logging.Logger | None = None
    ) -> None:
        self._scheduler = scheduler
        self._logger = logger or _LOGGER
        self._subscriptions: dict[SensorKey, SensorCallback] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, key: object) -> bool:
        return key in self._subscriptions

    def register(self, key: SensorKey, callback: SensorCallback) -> None:
        """Register ``callback`` for ``key``.

        Raises:
            ButtplugClientError: If ``key`` already has a subscription.
        """
        if key in self._subscriptions:
            raise ButtplugClientError(
                f"Sensor {key.sensor_type} on device {key.device_index} "
                f"feature {key.feature_index} is already subscribed"
            )
        self._subscriptions[key] = callback
        self._logger.debug("Registered sensor subscription: %s", key)

    def unregister(self, key: SensorKey) -> None:
        if self._subscriptions.pop(key, None) is not None:
            self._logger.debug("Unregistered sensor subscription: %s", key)

    def handle_reading(
        self,
        reading: InputReading,
        fallback: Callable[[InputReading], None] | None = None,
    ) -> None:
        """Deliver the reading's value to its subscriber.

        Readings with no matching subscription go to ``fallback`` instead.
        A subscriber that returns a coroutine has it run in the background.
        """
        sensor_type = reading.sensor_type
        value = reading.value
        callback = None
        if sensor_type is not None and value is not None:
            callback = self._subscriptions.get(
                SensorKey(reading.device_index, reading.feature_index, sensor_type)
            )
        if callback is None:
            if fallback is not None:
                fallback(reading)
            return
        try:
            result = callback(value)
        except Exception:
            self._logger.exception(
                "Error in sensor callback for device %d feature %d",
                reading.device_index,
                reading.feature_index,
            )
            return
        if inspect.iscoroutine(result):
            self._scheduler.spawn(
                result,
                name=f"sensor-{reading.device_index}-{reading.feature_index}",
            )

    def unsubscribe_device(
        self, device_index: int, sender: _RequestSender, connected: bool
    ) -> None:
        """Drop every subscription of a device.

        When still connected, an ``Unsubscribe`` is sent per subscription in
        the background. Failures are logged at debug level only: the device
        is usually already gone on the server.
        """
        keys = [k for k in self._subscriptions if k.device_index == device_index]
        for key in keys:
            del self._subscriptions[key]
            if connected:
                self._scheduler.spawn(
                    self._send_unsubscribe(key, sender),
                    name=f"sensor-unsubscribe-{device_index}",
                )

    async def _send_unsubscribe(self, key: SensorKey, sender: _RequestSender) -> None:
        try:
            await sender.send(
                build_input_cmd(
                    sender.next_id(),
                    device_index=key.device_index,
                    feature_index=key.feature_index,
                    input_type=key.sensor_type,
                    command="Unsubscribe",
                )
            )
        except Exception as err:
            self._logger.debug("Unsubscribe of %s failed: %s", key, err)

    def cleanup_device(self, device_index: int) -> None:
        """Forget a device's subscriptions without contacting the server."""
        for key in [k for k in self._subscriptions if k.device_index == device_index]:
            del self._subscriptions[key]

    def clear(self) -> None:
        self._subscriptions.clear()
