"""Tests for ReconnectHandler backoff and cancellation."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from buttplug_core.errors import ButtplugConnectionError
from buttplug_core.transport.connection import ConnectionState
from buttplug_core.transport.reconnect import (
    ReconnectHandler,
    ReconnectState,
    backoff_delay,
)

from .conftest import settle

URL = "ws://127.0.0.1:12345"


def make_handler(transport, scheduler, **kwargs):
    callbacks = {
        "on_reconnecting": MagicMock(),
        "on_reconnected": MagicMock(),
        "on_failed": MagicMock(),
    }
    callbacks.update({k: v for k, v in kwargs.items() if k.startswith("on_")})
    options = {k: v for k, v in kwargs.items() if not k.startswith("on_")}
    handler = ReconnectHandler(transport, URL, scheduler=scheduler, **callbacks, **options)
    return handler, callbacks


def refuse(count):
    return [ButtplugConnectionError("refused") for _ in range(count)]


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_doubles_until_cap(self):
        """Test delays grow as base * 2^(attempt-1) up to the cap."""
        delays = [backoff_delay(n, 1.0, 30.0) for n in range(1, 8)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_huge_attempt_count_is_capped(self):
        """Test the exponent cap keeps pathological attempts finite."""
        assert backoff_delay(10_000, 0.5, 60.0) == 60.0


class TestReconnectHandler:
    """Tests for the reconnect state machine."""

    @pytest.mark.asyncio
    async def test_reconnects_after_delay(self, transport, scheduler):
        """Test the first attempt waits the base delay and succeeds."""
        handler, callbacks = make_handler(transport, scheduler)
        handler.start()

        assert handler.state is ReconnectState.RECONNECTING
        callbacks["on_reconnecting"].assert_called_once_with(1)
        assert scheduler.next_delay() == pytest.approx(1.0)

        await scheduler.advance(1.0)
        assert transport.state is ConnectionState.CONNECTED
        callbacks["on_reconnected"].assert_called_once_with()
        assert handler.state is ReconnectState.IDLE
        assert handler.attempt == 0

    @pytest.mark.asyncio
    async def test_backoff_sequence(self, transport, scheduler):
        """Test consecutive failures wait 1, 2, 4 seconds."""
        transport.connect_errors = refuse(2)
        handler, callbacks = make_handler(transport, scheduler)
        handler.start()

        delays = []
        while handler.active:
            delay = scheduler.next_delay()
            delays.append(delay)
            await scheduler.advance(delay)

        assert delays == [1.0, 2.0, 4.0]
        assert [c.args[0] for c in callbacks["on_reconnecting"].call_args_list] == [1, 2, 3]
        callbacks["on_reconnected"].assert_called_once()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, transport, scheduler):
        """Test exhaustion reports failure once and stops trying."""
        transport.connect_errors = refuse(10)
        handler, callbacks = make_handler(
            transport, scheduler, max_reconnect_attempts=3, max_reconnect_delay=2.0
        )
        handler.start()

        await scheduler.advance(60.0)
        assert transport.connect_calls == 3
        assert handler.state is ReconnectState.FAILED
        callbacks["on_failed"].assert_called_once_with("Failed to reconnect after 3 attempts")
        callbacks["on_reconnected"].assert_not_called()
        assert scheduler.pending_timers == []

        await scheduler.advance(60.0)
        assert transport.connect_calls == 3

    @pytest.mark.asyncio
    async def test_start_after_failure_begins_fresh(self, transport, scheduler):
        """Test start() from FAILED restarts at attempt 1."""
        transport.connect_errors = refuse(1)
        handler, callbacks = make_handler(transport, scheduler, max_reconnect_attempts=1)
        handler.start()
        await scheduler.advance(10.0)
        assert handler.state is ReconnectState.FAILED

        handler.start()
        assert callbacks["on_reconnecting"].call_args.args == (1,)
        await scheduler.advance(1.0)
        assert handler.state is ReconnectState.IDLE
        callbacks["on_reconnected"].assert_called_once()

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_reconnecting(self, transport, scheduler):
        """Test a second start() does not schedule another attempt."""
        handler, callbacks = make_handler(transport, scheduler)
        handler.start()
        handler.start()
        assert len(scheduler.pending_timers) == 1
        callbacks["on_reconnecting"].assert_called_once()
        handler.cancel()

    @pytest.mark.asyncio
    async def test_cancel_clears_timer(self, transport, scheduler):
        """Test cancel() before the delay elapses prevents the attempt."""
        handler, callbacks = make_handler(transport, scheduler)
        handler.start()
        handler.cancel()

        assert handler.state is ReconnectState.IDLE
        await scheduler.advance(5.0)
        assert transport.connect_calls == 0
        callbacks["on_reconnected"].assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_suppresses_in_flight_completion(self, transport, scheduler):
        """Test an attempt finishing after cancel() reports nothing."""
        gate = asyncio.Event()
        original_connect = transport.connect

        async def slow_connect(url):
            await gate.wait()
            await original_connect(url)

        transport.connect = slow_connect
        handler, callbacks = make_handler(transport, scheduler)
        handler.start()
        await scheduler.advance(1.0)

        handler.cancel()
        handler.start()
        gate.set()
        await settle()

        callbacks["on_reconnected"].assert_not_called()
        assert handler.state is ReconnectState.RECONNECTING
        handler.cancel()

    @pytest.mark.asyncio
    async def test_disconnects_transport_before_connecting(self, transport, scheduler):
        """Test a half-open transport is torn down before the next attempt."""
        transport.state = ConnectionState.CONNECTED
        handler, _ = make_handler(transport, scheduler)
        handler.start()
        await scheduler.advance(1.0)
        assert transport.disconnect_calls == 1
        assert transport.connect_calls == 1

    @pytest.mark.asyncio
    async def test_callback_errors_are_logged(self, transport, scheduler, caplog):
        """Test failing callbacks, sync or async, do not break the sequence."""

        async def broken_reconnected():
            raise RuntimeError("async boom")

        handler, _ = make_handler(
            transport,
            scheduler,
            on_reconnecting=MagicMock(side_effect=RuntimeError("boom")),
            on_reconnected=broken_reconnected,
        )
        handler.start()
        await scheduler.advance(1.0)

        assert handler.state is ReconnectState.IDLE
        assert "Error in on_reconnecting callback" in caplog.text
        assert "Error in async on_reconnected callback" in caplog.text
