"""Protocol version handshake performed right after the socket opens."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .errors import ButtplugClientError, ButtplugHandshakeError
from .protocol import (
    PROTOCOL_VERSION_MAJOR,
    PROTOCOL_VERSION_MINOR,
    ServerInfo,
    build_request_server_info,
)

if TYPE_CHECKING:
    from .router import MessageRouter
    from .transport.ping import PingManager

_LOGGER = logging.getLogger(__name__)


async def perform_handshake(
    router: MessageRouter,
    ping_manager: PingManager,
    client_name: str,
    logger: logging.Logger | None = None,
) -> ServerInfo:
    """Negotiate the protocol version and start keep-alive pings.

    Returns the server's ``ServerInfo``.

    Raises:
        ButtplugHandshakeError: If the request fails, the server answers with
            anything other than ``ServerInfo``, or its major version differs.
    """
    log = logger or _LOGGER
    try:
        responses = await router.send(
            build_request_server_info(router.next_id(), client_name)
        )
    except ButtplugClientError as err:
        raise ButtplugHandshakeError(f"Handshake failed: {err}") from err

    response = responses[0]
    if not isinstance(response, ServerInfo):
        raise ButtplugHandshakeError(
            f"Handshake failed: unexpected {type(response).__name__} response"
        )

    # A newer server downgrades to our version; an older one should have
    # answered with an Error. Either way the major versions must agree.
    if response.protocol_version_major != PROTOCOL_VERSION_MAJOR:
        raise ButtplugHandshakeError(
            f"Server protocol version {response.protocol_version_major} is "
            f"incompatible (client requires {PROTOCOL_VERSION_MAJOR})"
        )

    negotiated_minor = min(PROTOCOL_VERSION_MINOR, response.protocol_version_minor)
    log.info(
        "Connected to %s, protocol version %d.%d",
        response.server_name or "server",
        PROTOCOL_VERSION_MAJOR,
        negotiated_minor,
    )
    ping_manager.start(response.max_ping_time / 1000)
    return response
