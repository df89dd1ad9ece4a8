"""Client error types for Buttplug server interactions."""

from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    """Numeric error codes carried by server Error messages."""

    UNKNOWN = 0
    INIT = 1
    PING = 2
    MESSAGE = 3
    DEVICE = 4


class ButtplugClientError(Exception):
    """Base error for Buttplug client failures."""


class ButtplugTimeout(ButtplugClientError):
    """An operation did not complete within its allotted time."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


class ButtplugConnectionError(ButtplugClientError):
    """Network connection to the server failed or is not available."""


class ButtplugHandshakeError(ButtplugClientError):
    """Protocol or WebSocket handshake failed."""


class ButtplugProtocolError(ButtplugClientError):
    """Error reported by the server for a request."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        try:
            self.code: ErrorCode | int = ErrorCode(code)
        except ValueError:
            self.code = code


class ButtplugDeviceError(ButtplugClientError):
    """A device operation was rejected before reaching the server."""

    def __init__(self, device_index: int, message: str) -> None:
        super().__init__(message)
        self.device_index = device_index
