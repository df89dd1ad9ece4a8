"""Automatic reconnection with exponential backoff."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from ..errors import ButtplugClientError
from .connection import ConnectionState

if TYPE_CHECKING:
    from ..scheduler import Scheduler, TimerHandle

_LOGGER = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 1.0
DEFAULT_MAX_RECONNECT_DELAY = 30.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10

# Caps the backoff exponent so pathological attempt counts cannot overflow.
MAX_BACKOFF_EXPONENT = 30


class ReconnectState(Enum):
    IDLE = "idle"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ReconnectableTransport(Protocol):
    @property
    def state(self) -> ConnectionState: ...

    async def connect(self, url: str) -> None: ...

    async def disconnect(self) -> None: ...


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay in seconds before reconnect ``attempt`` (1-based)."""
    exponent = min(max(attempt - 1, 0), MAX_BACKOFF_EXPONENT)
    return min(base * 2**exponent, cap)


class ReconnectHandler:
    """Re-opens a transport after an unexpected close.

    Attempts are spaced by ``backoff_delay`` and stop after
    ``max_reconnect_attempts`` consecutive failures, at which point
    ``on_failed`` is called once and the handler enters ``FAILED``.

    Callbacks may be plain functions or coroutine functions. Their
    exceptions are logged and never interrupt the sequence.
    """

    def __init__(
        self,
        transport: ReconnectableTransport,
        url: str,
        *,
        scheduler: Scheduler,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        on_reconnecting: Callable[[int], Any] | None = None,
        on_reconnected: Callable[[], Any] | None = None,
        on_failed: Callable[[str], Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._url = url
        self._scheduler = scheduler
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._on_reconnecting = on_reconnecting
        self._on_reconnected = on_reconnected
        self._on_failed = on_failed
        self._logger = (logger or _LOGGER).getChild("reconnect")

        self._state = ReconnectState.IDLE
        self._attempt = 0
        self._timer: TimerHandle | None = None
        # Identifies the current sequence; completions from an older one are ignored.
        self._generation = 0

    @property
    def state(self) -> ReconnectState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state is ReconnectState.RECONNECTING

    @property
    def attempt(self) -> int:
        return self._attempt

    def start(self) -> None:
        """Begin a reconnection sequence. No-op while one is running."""
        if self._state is ReconnectState.RECONNECTING:
            return
        self._logger.info("Starting reconnection sequence")
        self._generation += 1
        self._attempt = 0
        self._state = ReconnectState.RECONNECTING
        self._schedule_attempt(self._generation)

    def cancel(self) -> None:
        """Stop the sequence. Attempts already running finish but are ignored."""
        if self._state is ReconnectState.RECONNECTING:
            self._logger.debug("Reconnect cancelled")
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._state = ReconnectState.IDLE
        self._attempt = 0

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state is ReconnectState.RECONNECTING

    def _schedule_attempt(self, generation: int) -> None:
        if not self._is_current(generation):
            return

        self._attempt += 1
        if self._attempt > self._max_reconnect_attempts:
            reason = f"Failed to reconnect after {self._max_reconnect_attempts} attempts"
            self._logger.error(reason)
            self._state = ReconnectState.FAILED
            self._timer = None
            self._safe_callback("on_failed", self._on_failed, reason)
            return

        self._safe_callback("on_reconnecting", self._on_reconnecting, self._attempt)

        delay = backoff_delay(
            self._attempt, self._reconnect_delay, self._max_reconnect_delay
        )
        self._logger.info(
            "Reconnect attempt %d/%d (delay: %gs)",
            self._attempt,
            self._max_reconnect_attempts,
            delay,
        )
        self._timer = self._scheduler.call_later(
            delay,
            lambda: self._scheduler.spawn(
                self._run_attempt(generation), name="buttplug-reconnect"
            ),
        )

    async def _run_attempt(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        self._timer = None
        try:
            if self._transport.state is not ConnectionState.DISCONNECTED:
                await self._transport.disconnect()
            await self._transport.connect(self._url)
        except ButtplugClientError as err:
            if not self._is_current(generation):
                return
            self._logger.debug("Reconnect attempt %d failed: %s", self._attempt, err)
            self._schedule_attempt(generation)
            return

        if not self._is_current(generation):
            return
        self._state = ReconnectState.IDLE
        self._attempt = 0
        self._logger.info("Reconnection successful")
        self._safe_callback("on_reconnected", self._on_reconnected)

    def _safe_callback(
        self, name: str, callback: Callable[..., Any] | None, *args: Any
    ) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:
            self._logger.exception("Error in %s callback", name)
            return
        if inspect.isawaitable(result):
            self._scheduler.spawn(
                self._await_callback(name, result), name=f"reconnect-{name}"
            )

    async def _await_callback(self, name: str, result: Awaitable[Any]) -> None:
        try:
            await result
        except Exception:
            self._logger.exception("Error in async %s callback", name)
