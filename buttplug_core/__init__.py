"""Session and reliability core for Buttplug protocol clients."""

__version__ = "0.1.0"

from .config import ConfigError, SessionConfig, load_config
from .devices import (
    Device,
    DeviceFeatures,
    DeviceInfo,
    DeviceMessageSender,
    InputFeature,
    OutputFeature,
    features_equal,
    parse_features,
)
from .errors import (
    ButtplugClientError,
    ButtplugConnectionError,
    ButtplugDeviceError,
    ButtplugHandshakeError,
    ButtplugProtocolError,
    ButtplugTimeout,
    ErrorCode,
)
from .events import ClientEvent, EventHub
from .handshake import perform_handshake
from .protocol import (
    PROTOCOL_VERSION_MAJOR,
    PROTOCOL_VERSION_MINOR,
    DeviceList,
    ErrorMessage,
    InputReading,
    Ok,
    ScanningFinished,
    ServerInfo,
    ServerMessage,
    parse_server_messages,
    serialize_messages,
)
from .reconcile import ReconcileCallbacks, reconcile_devices
from .router import MessageRouter
from .scheduler import AsyncioScheduler, Scheduler
from .sensors import SensorHandler, SensorKey, sensor_key
from .session import ButtplugSession
from .transport import (
    ConnectionState,
    PingManager,
    ReconnectHandler,
    ReconnectState,
    WebSocketTransport,
)

__all__ = [
    "PROTOCOL_VERSION_MAJOR",
    "PROTOCOL_VERSION_MINOR",
    "AsyncioScheduler",
    "ButtplugClientError",
    "ButtplugConnectionError",
    "ButtplugDeviceError",
    "ButtplugHandshakeError",
    "ButtplugProtocolError",
    "ButtplugSession",
    "ButtplugTimeout",
    "ClientEvent",
    "ConfigError",
    "ConnectionState",
    "Device",
    "DeviceFeatures",
    "DeviceInfo",
    "DeviceList",
    "DeviceMessageSender",
    "ErrorCode",
    "ErrorMessage",
    "EventHub",
    "InputFeature",
    "InputReading",
    "MessageRouter",
    "Ok",
    "OutputFeature",
    "PingManager",
    "ReconcileCallbacks",
    "ReconnectHandler",
    "ReconnectState",
    "ScanningFinished",
    "Scheduler",
    "SensorHandler",
    "SensorKey",
    "ServerInfo",
    "ServerMessage",
    "SessionConfig",
    "WebSocketTransport",
    "__version__",
    "features_equal",
    "load_config",
    "parse_features",
    "parse_server_messages",
    "perform_handshake",
    "reconcile_devices",
    "sensor_key",
    "serialize_messages",
]
