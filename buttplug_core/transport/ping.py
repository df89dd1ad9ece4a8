"""Keep-alive pings for a Buttplug session."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from ..errors import ButtplugTimeout

if TYPE_CHECKING:
    from ..scheduler import Scheduler, TimerHandle

_LOGGER = logging.getLogger(__name__)

MIN_PING_INTERVAL = 0.1
DEFAULT_PING_TIMEOUT = 5.0
PING_INTERVAL_RATIO = 0.6


def ping_interval(max_ping_time: float) -> float:
    """Seconds between pings for a server allowing ``max_ping_time`` seconds."""
    return max(max_ping_time * PING_INTERVAL_RATIO, MIN_PING_INTERVAL)


class PingManager:
    """Sends periodic pings and disconnects when the server stops answering.

    The manager does not watch the transport itself. Owners must call
    ``stop()`` whenever the connection goes away.

    Args:
        send_ping: Sends one ping and returns when the server acknowledges it.
        cancel_ping: Fails the in-flight ping request with the given error.
        is_connected: Reports whether the transport is connected.
        on_disconnect: Forces a disconnect after a ping timeout.
        on_error: Receives every ping failure.
        scheduler: Timer source.
        auto_ping: When False, ``start()`` never schedules pings.
    """

    def __init__(
        self,
        *,
        send_ping: Callable[[], Awaitable[None]],
        cancel_ping: Callable[[Exception], None],
        is_connected: Callable[[], bool],
        on_disconnect: Callable[[str], Awaitable[None]],
        on_error: Callable[[Exception], None],
        scheduler: Scheduler,
        auto_ping: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self._send_ping = send_ping
        self._cancel_ping = cancel_ping
        self._is_connected = is_connected
        self._on_disconnect = on_disconnect
        self._on_error = on_error
        self._scheduler = scheduler
        self._auto_ping = auto_ping
        self._logger = (logger or _LOGGER).getChild("ping")

        self._timer: TimerHandle | None = None
        self._interval = 0.0
        self._max_ping_time = 0.0
        self._in_flight = False
        # Bumped on every start/stop so a ping from an earlier cycle
        # cannot touch the state of the current one.
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._timer is not None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def start(self, max_ping_time: float) -> None:
        """Start pinging for a server allowing ``max_ping_time`` seconds between pings.

        Any ping still in flight from a previous cycle is cancelled first.
        """
        if self._in_flight:
            self._cancel_ping(ButtplugTimeout("Ping", 0))
        self.stop()
        self._max_ping_time = max_ping_time

        if not self._auto_ping or max_ping_time <= 0:
            return

        self._interval = ping_interval(max_ping_time)
        self._logger.debug("Starting ping timer with interval %.3fs", self._interval)
        self._schedule_tick()

    def stop(self) -> None:
        """Stop the timer and forget any in-flight ping. Idempotent."""
        self._generation += 1
        self._in_flight = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._logger.debug("Stopped ping timer")

    def _schedule_tick(self) -> None:
        self._timer = self._scheduler.call_later(self._interval, self._tick)

    def _tick(self) -> None:
        self._schedule_tick()
        if not self._is_connected():
            return
        if self._in_flight:
            self._logger.warning("Skipping ping: previous ping still in flight")
            return
        self._in_flight = True
        self._scheduler.spawn(self._do_ping(self._generation), name="buttplug-ping")

    async def _do_ping(self, generation: int) -> None:
        self._logger.debug("Sending ping")
        timeout = self._max_ping_time or DEFAULT_PING_TIMEOUT
        timer = self._scheduler.call_later(
            timeout, lambda: self._cancel_ping(ButtplugTimeout("Ping", timeout))
        )
        try:
            await self._send_ping()
        except Exception as err:
            if generation != self._generation:
                self._logger.debug("Ignoring failure of superseded ping: %s", err)
                return
            is_timeout = isinstance(err, ButtplugTimeout)
            self._logger.error("Ping failed: %s", err)
            self._on_error(err)
            if is_timeout and self._is_connected():
                await self._on_disconnect("Ping response timeout")
            elif not is_timeout:
                self._logger.warning("Ping failed with non-timeout error, not disconnecting")
        finally:
            timer.cancel()
            if generation == self._generation:
                self._in_flight = False
