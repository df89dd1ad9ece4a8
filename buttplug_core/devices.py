"""Device records and the device handle exposed to callers.

A ``DeviceInfo`` is an immutable snapshot of one server-reported device.
Inventory updates never mutate a record; they replace it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import ButtplugDeviceError
from .protocol import (
    INPUT_TYPES,
    OUTPUT_TYPES,
    ClientMessage,
    InputReading,
    RawDevice,
    ServerMessage,
    build_input_cmd,
    build_output_cmd,
    build_stop_cmd,
)
from .sensors import SensorCallback, SensorKey, sensor_key

_LOGGER = logging.getLogger(__name__)


class DeviceMessageSender(Protocol):
    """What a ``Device`` needs from the session to reach the server."""

    def next_id(self) -> int: ...

    async def send(
        self, messages: ClientMessage | Sequence[ClientMessage]
    ) -> list[ServerMessage]: ...

    def register_sensor_subscription(
        self, key: SensorKey, callback: SensorCallback
    ) -> None: ...

    def unregister_sensor_subscription(self, key: SensorKey) -> None: ...


@dataclass(frozen=True)
class OutputFeature:
    type: str
    index: int
    description: str
    range: tuple[int, int]
    duration_range: tuple[int, int] | None = None


@dataclass(frozen=True)
class InputFeature:
    type: str
    index: int
    description: str
    range: tuple[int, int]
    can_read: bool
    can_subscribe: bool


@dataclass(frozen=True)
class DeviceFeatures:
    outputs: tuple[OutputFeature, ...] = ()
    inputs: tuple[InputFeature, ...] = ()

    def outputs_of(self, output_type: str) -> tuple[OutputFeature, ...]:
        return tuple(f for f in self.outputs if f.type == output_type)

    def inputs_of(self, input_type: str) -> tuple[InputFeature, ...]:
        return tuple(f for f in self.inputs if f.type == input_type)


def _pair(value: Any, *, default: tuple[int, int] | None = None) -> tuple[int, int]:
    if (
        isinstance(value, Sequence)
        and not isinstance(value, str)
        and len(value) == 2
        and all(isinstance(v, int) and not isinstance(v, bool) for v in value)
    ):
        return (value[0], value[1])
    if default is not None:
        return default
    raise ValueError(f"Expected an integer pair, got {value!r}")


def parse_features(raw: RawDevice, logger: logging.Logger | None = None) -> DeviceFeatures:
    """Flatten a raw ``DeviceFeatures`` map into typed feature tuples.

    Features are ordered by feature index, then by the protocol's type order.
    Unknown output/input type tags are logged and skipped.
    """
    log = logger or _LOGGER
    raw_features = raw.get("DeviceFeatures") or {}
    ordered = sorted(
        (f for f in raw_features.values() if isinstance(f, Mapping)),
        key=lambda f: f.get("FeatureIndex", 0),
    )

    outputs: list[OutputFeature] = []
    inputs: list[InputFeature] = []
    for feature in ordered:
        index = feature.get("FeatureIndex", 0)
        description = feature.get("FeatureDescription") or ""

        output_block = feature.get("Output") or {}
        for key in output_block:
            if key not in OUTPUT_TYPES:
                log.warning(
                    "Unknown output type %r at feature index %s, skipping", key, index
                )
        for output_type in OUTPUT_TYPES:
            config = output_block.get(output_type)
            if not config:
                continue
            duration = config.get("Duration")
            outputs.append(
                OutputFeature(
                    type=output_type,
                    index=index,
                    description=description,
                    range=_pair(config.get("Value")),
                    duration_range=_pair(duration) if duration is not None else None,
                )
            )

        input_block = feature.get("Input") or {}
        for key in input_block:
            if key not in INPUT_TYPES:
                log.warning(
                    "Unknown input type %r at feature index %s, skipping", key, index
                )
        for input_type in INPUT_TYPES:
            config = input_block.get(input_type)
            if not config:
                continue
            commands = config.get("Command") or []
            values = config.get("Value") or []
            inputs.append(
                InputFeature(
                    type=input_type,
                    index=index,
                    description=description,
                    range=_pair(values[0] if values else None, default=(0, 0)),
                    can_read="Read" in commands,
                    can_subscribe="Subscribe" in commands,
                )
            )

    return DeviceFeatures(outputs=tuple(outputs), inputs=tuple(inputs))


def features_equal(a: DeviceFeatures, b: DeviceFeatures) -> bool:
    """Structural equality ignoring the order features were reported in."""

    def _key(feature: OutputFeature | InputFeature) -> tuple[int, str]:
        return (feature.index, feature.type)

    if len(a.outputs) != len(b.outputs) or len(a.inputs) != len(b.inputs):
        return False
    return sorted(a.outputs, key=_key) == sorted(b.outputs, key=_key) and sorted(
        a.inputs, key=_key
    ) == sorted(b.inputs, key=_key)


@dataclass(frozen=True)
class DeviceInfo:
    """Immutable snapshot of a device descriptor."""

    index: int
    name: str
    display_name: str | None
    message_timing_gap: int  # milliseconds
    features: DeviceFeatures

    @classmethod
    def from_raw(cls, raw: RawDevice, logger: logging.Logger | None = None) -> DeviceInfo:
        return cls(
            index=raw["DeviceIndex"],
            name=raw["DeviceName"],
            display_name=raw.get("DeviceDisplayName"),
            message_timing_gap=raw.get("DeviceMessageTimingGap") or 0,
            features=parse_features(raw, logger),
        )


class Device:
    """Handle for one server-side device.

    The handle wraps an immutable ``DeviceInfo``. Commands go through the
    owning session, so a handle for a removed device fails with the
    session's connection or protocol errors rather than mutating state.
    """

    def __init__(
        self,
        sender: DeviceMessageSender,
        info: DeviceInfo,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._sender = sender
        self._info = info
        self._logger = logger or _LOGGER
        self._last_command_time: float | None = None

    @classmethod
    def from_raw(
        cls,
        sender: DeviceMessageSender,
        raw: RawDevice,
        *,
        logger: logging.Logger | None = None,
    ) -> Device:
        return cls(sender, DeviceInfo.from_raw(raw, logger), logger=logger)

    def __repr__(self) -> str:
        return f"Device(index={self.index}, name={self.name!r})"

    @property
    def info(self) -> DeviceInfo:
        return self._info

    @property
    def index(self) -> int:
        return self._info.index

    @property
    def name(self) -> str:
        return self._info.name

    @property
    def display_name(self) -> str | None:
        return self._info.display_name

    @property
    def message_timing_gap(self) -> int:
        return self._info.message_timing_gap

    @property
    def features(self) -> DeviceFeatures:
        return self._info.features

    def can_output(self, output_type: str) -> bool:
        return bool(self.features.outputs_of(output_type))

    def can_read(self, input_type: str) -> bool:
        return any(f.can_read for f in self.features.inputs_of(input_type))

    def can_subscribe(self, input_type: str) -> bool:
        return any(f.can_subscribe for f in self.features.inputs_of(input_type))

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def stop(
        self,
        *,
        feature_index: int | None = None,
        inputs: bool | None = None,
        outputs: bool | None = None,
    ) -> None:
        """Stop this device, or one of its features.

        Raises:
            ButtplugDeviceError: If ``feature_index`` does not exist or the
                filters exclude the only kind of feature at that index.
        """
        self._check_timing_gap()
        if feature_index is not None:
            is_output = any(f.index == feature_index for f in self.features.outputs)
            is_input = any(f.index == feature_index for f in self.features.inputs)
            if not (is_output or is_input):
                raise ButtplugDeviceError(self.index, f"No feature at index {feature_index}")
            if is_output and not is_input and outputs is False:
                raise ButtplugDeviceError(
                    self.index,
                    f"Feature at index {feature_index} is output-only, but outputs filter is False",
                )
            if is_input and not is_output and inputs is False:
                raise ButtplugDeviceError(
                    self.index,
                    f"Feature at index {feature_index} is input-only, but inputs filter is False",
                )
        self._logger.debug("Stop command on device %s (index %d)", self.name, self.index)
        await self._sender.send(
            build_stop_cmd(
                self._sender.next_id(),
                device_index=self.index,
                feature_index=feature_index,
                inputs=inputs,
                outputs=outputs,
            )
        )

    async def output(
        self, feature_index: int, command: Mapping[str, Mapping[str, Any]]
    ) -> None:
        """Send a raw output command, e.g. ``{"Vibrate": {"Value": 10}}``.

        Raises:
            ButtplugDeviceError: If the device has no matching output feature.
        """
        self._check_timing_gap()
        if len(command) != 1:
            raise ButtplugDeviceError(self.index, "Output command must have exactly one type")
        command_type = next(iter(command))
        if not any(
            f.index == feature_index and f.type == command_type
            for f in self.features.outputs
        ):
            raise ButtplugDeviceError(
                self.index, f'No "{command_type}" output feature at index {feature_index}'
            )
        self._logger.debug(
            "Output command: %s on device %s feature %d",
            command_type,
            self.name,
            feature_index,
        )
        await self._sender.send(
            build_output_cmd(
                self._sender.next_id(),
                device_index=self.index,
                feature_index=feature_index,
                command=command,
            )
        )

    async def read_sensor(self, input_type: str, sensor_index: int = 0) -> int | float:
        """Read one value from a sensor."""
        feature = self._require_sensor(input_type, sensor_index, subscribe=False)
        response = await self._send_input_cmd(feature.index, input_type, "Read")
        if isinstance(response, InputReading) and response.sensor_type == input_type:
            value = response.value
            if value is not None:
                return value
        raise ButtplugDeviceError(
            self.index, f"Failed to read {input_type} sensor: unexpected response"
        )

    async def subscribe_sensor(
        self,
        input_type: str,
        callback: SensorCallback,
        sensor_index: int = 0,
    ) -> Callable[[], Awaitable[None]]:
        """Subscribe to a sensor; returns a coroutine function that unsubscribes.

        The local subscription is registered only after the server accepts it.
        """
        feature = self._require_sensor(input_type, sensor_index, subscribe=True)
        key = sensor_key(self.index, feature.index, input_type)
        await self._send_input_cmd(feature.index, input_type, "Subscribe")
        self._sender.register_sensor_subscription(key, callback)

        async def _unsubscribe() -> None:
            self._sender.unregister_sensor_subscription(key)
            await self._send_input_cmd(feature.index, input_type, "Unsubscribe")

        return _unsubscribe

    async def unsubscribe_sensor(self, input_type: str, sensor_index: int = 0) -> None:
        features = self.features.inputs_of(input_type)
        if sensor_index >= len(features):
            raise ButtplugDeviceError(
                self.index,
                f"Device does not have {input_type} sensor at index {sensor_index}",
            )
        feature = features[sensor_index]
        self._sender.unregister_sensor_subscription(
            sensor_key(self.index, feature.index, input_type)
        )
        await self._send_input_cmd(feature.index, input_type, "Unsubscribe")

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _require_sensor(
        self, input_type: str, sensor_index: int, *, subscribe: bool
    ) -> InputFeature:
        features = self.features.inputs_of(input_type)
        if sensor_index >= len(features):
            raise ButtplugDeviceError(
                self.index,
                f"Device does not have {input_type} sensor at index {sensor_index}",
            )
        feature = features[sensor_index]
        if subscribe and not feature.can_subscribe:
            raise ButtplugDeviceError(
                self.index,
                f"{input_type} sensor at index {sensor_index} does not support subscriptions",
            )
        if not subscribe and not feature.can_read:
            raise ButtplugDeviceError(
                self.index,
                f"{input_type} sensor at index {sensor_index} does not support reading",
            )
        return feature

    async def _send_input_cmd(
        self, feature_index: int, input_type: str, command: str
    ) -> ServerMessage:
        responses = await self._sender.send(
            build_input_cmd(
                self._sender.next_id(),
                device_index=self.index,
                feature_index=feature_index,
                input_type=input_type,
                command=command,
            )
        )
        return responses[0]

    def _check_timing_gap(self) -> None:
        gap = self.message_timing_gap
        if gap <= 0:
            return
        now = time.monotonic()
        if self._last_command_time is not None:
            elapsed_ms = (now - self._last_command_time) * 1000
            if elapsed_ms < gap:
                self._logger.warning(
                    "Command sent %.0fms after previous (timing gap is %dms), "
                    "server may drop it",
                    elapsed_ms,
                    gap,
                )
        self._last_command_time = now
