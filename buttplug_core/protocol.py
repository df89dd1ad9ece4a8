"""Wire format helpers for Buttplug protocol frames.

Every frame is a JSON array of single-key envelopes::

    [{"Ping": {"Id": 7}}, {"StopCmd": {"Id": 8, "DeviceIndex": 0}}]

Client envelopes are built as plain dicts. Server envelopes are decoded into
frozen dataclasses, one class per message tag.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union

from .errors import ButtplugProtocolError, ErrorCode

_LOGGER = logging.getLogger(__name__)

PROTOCOL_VERSION_MAJOR = 4
PROTOCOL_VERSION_MINOR = 0

DEFAULT_CLIENT_NAME = "buttplug-py"

# Ids are unsigned 32-bit; 0 is reserved for server-originated events.
MAX_MESSAGE_ID = 0xFFFFFFFF
EVENT_MESSAGE_ID = 0

OUTPUT_TYPES: tuple[str, ...] = (
    "Vibrate",
    "Rotate",
    "RotateWithDirection",
    "Oscillate",
    "Constrict",
    "Spray",
    "Temperature",
    "Led",
    "Position",
    "HwPositionWithDuration",
)

INPUT_TYPES: tuple[str, ...] = ("Battery", "RSSI", "Pressure", "Button", "Position")

INPUT_COMMANDS: tuple[str, ...] = ("Read", "Subscribe", "Unsubscribe")

RawDevice = dict[str, Any]
ClientMessage = dict[str, dict[str, Any]]


# -----------------------------------------------------------------------------
# Client messages
# -----------------------------------------------------------------------------


def build_envelope(tag: str, msg_id: int, **fields: Any) -> ClientMessage:
    """Wrap ``fields`` in a single-key envelope carrying ``msg_id``.

    Fields whose value is ``None`` are omitted.
    """
    body: dict[str, Any] = {"Id": msg_id}
    body.update({key: value for key, value in fields.items() if value is not None})
    return {tag: body}


def build_request_server_info(msg_id: int, client_name: str) -> ClientMessage:
    """Construct the handshake request announcing the client's protocol version."""
    if not client_name:
        raise ValueError("client_name is required for RequestServerInfo")
    return build_envelope(
        "RequestServerInfo",
        msg_id,
        ClientName=client_name,
        ProtocolVersionMajor=PROTOCOL_VERSION_MAJOR,
        ProtocolVersionMinor=PROTOCOL_VERSION_MINOR,
    )


def build_start_scanning(msg_id: int) -> ClientMessage:
    return build_envelope("StartScanning", msg_id)


def build_stop_scanning(msg_id: int) -> ClientMessage:
    return build_envelope("StopScanning", msg_id)


def build_request_device_list(msg_id: int) -> ClientMessage:
    return build_envelope("RequestDeviceList", msg_id)


def build_ping(msg_id: int) -> ClientMessage:
    return build_envelope("Ping", msg_id)


def build_disconnect(msg_id: int) -> ClientMessage:
    return build_envelope("Disconnect", msg_id)


def build_stop_cmd(
    msg_id: int,
    *,
    device_index: int | None = None,
    feature_index: int | None = None,
    inputs: bool | None = None,
    outputs: bool | None = None,
) -> ClientMessage:
    """Construct a StopCmd.

    Without targeting arguments the server stops every device.
    """
    if feature_index is not None and device_index is None:
        raise ValueError("StopCmd: feature_index requires device_index")
    return build_envelope(
        "StopCmd",
        msg_id,
        DeviceIndex=device_index,
        FeatureIndex=feature_index,
        Inputs=inputs,
        Outputs=outputs,
    )


def build_output_cmd(
    msg_id: int,
    *,
    device_index: int,
    feature_index: int,
    command: Mapping[str, Mapping[str, Any]],
) -> ClientMessage:
    """Construct an OutputCmd carrying a single-key output command payload."""
    return build_envelope(
        "OutputCmd",
        msg_id,
        DeviceIndex=device_index,
        FeatureIndex=feature_index,
        Command={key: dict(value) for key, value in command.items()},
    )


def build_input_cmd(
    msg_id: int,
    *,
    device_index: int,
    feature_index: int,
    input_type: str,
    command: str,
) -> ClientMessage:
    """Construct an InputCmd (read, subscribe or unsubscribe a sensor)."""
    if input_type not in INPUT_TYPES:
        raise ValueError(f"Unknown input type: {input_type}")
    if command not in INPUT_COMMANDS:
        raise ValueError(f"Unknown input command: {command}")
    return build_envelope(
        "InputCmd",
        msg_id,
        DeviceIndex=device_index,
        FeatureIndex=feature_index,
        Type=input_type,
        Command=command,
    )


def extract_message_id(message: Mapping[str, Any]) -> int:
    """Return the correlation id of a client envelope.

    Raises:
        ButtplugProtocolError: If the envelope is not single-key or has no valid Id.
    """
    if len(message) != 1:
        raise ButtplugProtocolError(
            ErrorCode.MESSAGE, "Invalid message: expected exactly one key"
        )
    inner = next(iter(message.values()))
    msg_id = inner.get("Id") if isinstance(inner, Mapping) else None
    if not _is_int(msg_id) or not 0 <= msg_id <= MAX_MESSAGE_ID:
        raise ButtplugProtocolError(
            ErrorCode.MESSAGE, "Invalid message: missing or non-numeric Id field"
        )
    return msg_id


def serialize_messages(messages: Iterable[ClientMessage]) -> str:
    """Serialize envelopes into one frame. Always a JSON array."""
    return json.dumps(list(messages), separators=(",", ":"))


# -----------------------------------------------------------------------------
# Server messages
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerInfo:
    """Handshake response describing the server."""

    id: int
    server_name: str | None
    protocol_version_major: int
    protocol_version_minor: int
    max_ping_time: int  # milliseconds, 0 disables pinging


@dataclass(frozen=True)
class Ok:
    id: int


@dataclass(frozen=True)
class ErrorMessage:
    id: int
    error_code: int
    error_message: str


@dataclass(frozen=True)
class DeviceList:
    """Authoritative device inventory. Devices are kept as raw descriptors."""

    id: int
    devices: tuple[RawDevice, ...]


@dataclass(frozen=True)
class ScanningFinished:
    id: int


@dataclass(frozen=True)
class InputReading:
    """Sensor reading; ``reading`` is the single-key ``{type: {"Value": n}}`` payload."""

    id: int
    device_index: int
    feature_index: int
    reading: Mapping[str, Mapping[str, Any]]

    @property
    def sensor_type(self) -> str | None:
        if len(self.reading) != 1:
            return None
        return next(iter(self.reading))

    @property
    def value(self) -> int | float | None:
        sensor_type = self.sensor_type
        if sensor_type is None:
            return None
        wrapper = self.reading[sensor_type]
        value = wrapper.get("Value") if isinstance(wrapper, Mapping) else None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return value


ServerMessage = Union[ServerInfo, Ok, ErrorMessage, DeviceList, ScanningFinished, InputReading]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _require_int(body: Mapping[str, Any], key: str) -> int:
    value = body.get(key)
    if not _is_int(value):
        raise ValueError(f"{key} must be an integer")
    return value


def _require_str(body: Mapping[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _require_id(body: Mapping[str, Any]) -> int:
    msg_id = _require_int(body, "Id")
    if not 0 <= msg_id <= MAX_MESSAGE_ID:
        raise ValueError(f"Id out of range: {msg_id}")
    return msg_id


def _parse_server_info(body: Mapping[str, Any]) -> ServerInfo:
    server_name = body.get("ServerName")
    if server_name is not None and not isinstance(server_name, str):
        raise ValueError("ServerName must be a string")
    return ServerInfo(
        id=_require_id(body),
        server_name=server_name,
        protocol_version_major=_require_int(body, "ProtocolVersionMajor"),
        protocol_version_minor=_require_int(body, "ProtocolVersionMinor"),
        max_ping_time=_require_int(body, "MaxPingTime"),
    )


def _parse_ok(body: Mapping[str, Any]) -> Ok:
    return Ok(id=_require_id(body))


def _parse_error(body: Mapping[str, Any]) -> ErrorMessage:
    return ErrorMessage(
        id=_require_id(body),
        error_code=_require_int(body, "ErrorCode"),
        error_message=_require_str(body, "ErrorMessage"),
    )


def _is_int_pair(value: Any) -> bool:
    return (
        isinstance(value, Sequence)
        and not isinstance(value, str)
        and len(value) == 2
        and all(_is_int(v) for v in value)
    )


def _is_list(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, str)


def _check_feature_block(
    feature: Mapping[str, Any], block: str, known_types: tuple[str, ...]
) -> None:
    configs = feature.get(block)
    if configs is None:
        return
    if not isinstance(configs, Mapping):
        raise ValueError(f"{block} must be an object")
    for feature_type, config in configs.items():
        # Unknown types are skipped when the device is built.
        if feature_type not in known_types or config is None:
            continue
        if not isinstance(config, Mapping):
            raise ValueError(f"{block} {feature_type} must be an object")
        value = config.get("Value")
        if block == "Output":
            if not _is_int_pair(value):
                raise ValueError(f"Output {feature_type} Value must be an integer pair")
            duration = config.get("Duration")
            if duration is not None and not _is_int_pair(duration):
                raise ValueError(f"Output {feature_type} Duration must be an integer pair")
        else:
            if value is not None and not _is_list(value):
                raise ValueError(f"Input {feature_type} Value must be a list")
            commands = config.get("Command")
            if commands is not None and not (
                _is_list(commands) and all(isinstance(c, str) for c in commands)
            ):
                raise ValueError(f"Input {feature_type} Command must be a list of strings")


def _check_device_features(raw: Mapping[str, Any]) -> None:
    features = raw.get("DeviceFeatures")
    if features is None:
        return
    if not isinstance(features, Mapping):
        raise ValueError("DeviceFeatures must be an object")
    for feature in features.values():
        if not isinstance(feature, Mapping):
            raise ValueError("Device feature must be an object")
        if not _is_int(feature.get("FeatureIndex", 0)):
            raise ValueError("FeatureIndex must be an integer")
        description = feature.get("FeatureDescription")
        if description is not None and not isinstance(description, str):
            raise ValueError("FeatureDescription must be a string")
        _check_feature_block(feature, "Output", OUTPUT_TYPES)
        _check_feature_block(feature, "Input", INPUT_TYPES)


def _parse_device_list(body: Mapping[str, Any]) -> DeviceList:
    devices = body.get("Devices")
    if not isinstance(devices, Mapping):
        raise ValueError("Devices must be an object")
    parsed: list[RawDevice] = []
    for raw in devices.values():
        if not isinstance(raw, Mapping):
            raise ValueError("Device descriptor must be an object")
        index = _require_int(raw, "DeviceIndex")
        _require_str(raw, "DeviceName")
        gap = raw.get("DeviceMessageTimingGap")
        if gap is not None and not _is_int(gap):
            raise ValueError("DeviceMessageTimingGap must be an integer")
        try:
            _check_device_features(raw)
        except ValueError as err:
            raise ValueError(f"Device {index}: {err}") from err
        parsed.append(dict(raw))
    return DeviceList(id=_require_id(body), devices=tuple(parsed))


def _parse_scanning_finished(body: Mapping[str, Any]) -> ScanningFinished:
    return ScanningFinished(id=_require_id(body))


def _parse_input_reading(body: Mapping[str, Any]) -> InputReading:
    reading = body.get("Reading")
    if not isinstance(reading, Mapping) or len(reading) != 1:
        raise ValueError("Reading must be a single-key object")
    return InputReading(
        id=_require_id(body),
        device_index=_require_int(body, "DeviceIndex"),
        feature_index=_require_int(body, "FeatureIndex"),
        reading=dict(reading),
    )


_SERVER_PARSERS: dict[str, Callable[[Mapping[str, Any]], ServerMessage]] = {
    "ServerInfo": _parse_server_info,
    "Ok": _parse_ok,
    "Error": _parse_error,
    "DeviceList": _parse_device_list,
    "ScanningFinished": _parse_scanning_finished,
    "InputReading": _parse_input_reading,
}


def parse_server_messages(
    raw: str, logger: logging.Logger | None = None
) -> list[ServerMessage]:
    """Decode a server frame into typed messages.

    Unknown or invalid envelopes inside an otherwise well-formed frame are
    logged and skipped so newer servers stay readable. An invalid envelope
    carrying a request id is replaced by a ``MESSAGE`` error for that id.

    Raises:
        ValueError: If the frame is not JSON or not a non-empty array of
            single-key objects.
    """
    log = logger or _LOGGER
    parsed = json.loads(raw)
    if not isinstance(parsed, list) or not parsed:
        raise ValueError("Invalid server message: expected non-empty array")

    messages: list[ServerMessage] = []
    for element in parsed:
        if not isinstance(element, dict):
            raise ValueError("Invalid server message: expected object")
        if len(element) != 1:
            raise ValueError(
                f"Invalid server message: expected exactly one key, got {len(element)}"
            )
        ((tag, body),) = element.items()
        parser = _SERVER_PARSERS.get(tag)
        if parser is None:
            log.warning("Unknown server message type: %s", tag)
            continue
        if not isinstance(body, Mapping):
            log.warning("Invalid %s message: body is not an object", tag)
            continue
        try:
            messages.append(parser(body))
        except ValueError as err:
            log.warning("Invalid %s message: %s", tag, err)
            msg_id = body.get("Id")
            if _is_int(msg_id) and EVENT_MESSAGE_ID < msg_id <= MAX_MESSAGE_ID:
                # Reject the waiting request now rather than letting it time out.
                messages.append(
                    ErrorMessage(msg_id, ErrorCode.MESSAGE, f"Invalid {tag} message: {err}")
                )
    return messages
