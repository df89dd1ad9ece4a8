"""Session configuration.

Configuration is plain data: a ``SessionConfig`` built in code or loaded
from a YAML mapping whose keys match the dataclass fields::

    client_name: living-room
    request_timeout: 5
    auto_reconnect: true
    max_reconnect_attempts: 20
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .protocol import DEFAULT_CLIENT_NAME
from .transport.reconnect import (
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_MAX_RECONNECT_DELAY,
    DEFAULT_RECONNECT_DELAY,
)

DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 15.0


class ConfigError(ValueError):
    """Configuration file is missing or invalid."""


@dataclass(frozen=True)
class SessionConfig:
    """Tunable behaviour of a ``ButtplugSession``.

    Attributes:
        client_name: Name announced to the server during the handshake.
        request_timeout: Seconds to wait for each request's response.
        connect_timeout: Seconds allowed for the WebSocket opening handshake.
        auto_ping: Send keep-alive pings at the server's requested rate.
        auto_reconnect: Reconnect automatically after an unexpected close.
        reconnect_delay: Base backoff delay in seconds.
        max_reconnect_delay: Backoff ceiling in seconds.
        max_reconnect_attempts: Attempts before reconnection gives up.
    """

    client_name: str = DEFAULT_CLIENT_NAME
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    auto_ping: bool = True
    auto_reconnect: bool = False
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS

    def __post_init__(self) -> None:
        if not self.client_name:
            raise ConfigError("client_name must not be empty")
        for name in (
            "request_timeout",
            "connect_timeout",
            "reconnect_delay",
            "max_reconnect_delay",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name} must be a number")
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        if isinstance(self.max_reconnect_attempts, bool) or not isinstance(
            self.max_reconnect_attempts, int
        ):
            raise ConfigError("max_reconnect_attempts must be an integer")
        if self.max_reconnect_attempts < 1:
            raise ConfigError("max_reconnect_attempts must be at least 1")

    def with_overrides(self, **overrides: Any) -> SessionConfig:
        """Return a copy with the given fields replaced."""
        unknown = set(overrides) - _FIELD_NAMES
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return replace(self, **overrides)


_FIELD_NAMES = frozenset(f.name for f in fields(SessionConfig))


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigError(f"File not found: {path}")
    with path.open() as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as err:
            raise ConfigError(f"Invalid YAML in {path}") from err
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}")
    return data


def load_config(path: Path | str) -> SessionConfig:
    """Load a ``SessionConfig`` from a YAML file.

    Missing keys keep their defaults. Unknown keys are rejected so typos do
    not silently fall back to defaults.

    Raises:
        ConfigError: If the file is missing, malformed, or holds invalid values.
    """
    data = _load_yaml(Path(path))
    return SessionConfig().with_overrides(**data)
