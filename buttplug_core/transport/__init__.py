"""Transport layer for the Buttplug client.

This package owns all socket IO and connection supervision.

Components:
- ws: WebSocket connection helper
- connection: Transport with connection state and events
- ping: Keep-alive ping manager
- reconnect: Backoff reconnection handler
"""

from .connection import ConnectionState, TransportEvent, WebSocketTransport
from .ping import PingManager
from .reconnect import ReconnectHandler, ReconnectState, backoff_delay
from .ws import connect_websocket

__all__ = [
    "ConnectionState",
    "PingManager",
    "ReconnectHandler",
    "ReconnectState",
    "TransportEvent",
    "WebSocketTransport",
    "backoff_delay",
    "connect_websocket",
]
