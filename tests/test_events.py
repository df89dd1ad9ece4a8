"""Tests for the EventHub."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from buttplug_core.events import ClientEvent, EventHub

from .conftest import settle


def test_subscribe_and_unsubscribe(scheduler):
    """Test the returned function removes the handler."""
    hub = EventHub(scheduler)
    handler = MagicMock()
    unsubscribe = hub.subscribe(ClientEvent.DISCONNECTED, handler)

    hub.emit(ClientEvent.DISCONNECTED, "bye")
    handler.assert_called_once_with("bye")

    unsubscribe()
    unsubscribe()
    hub.emit(ClientEvent.DISCONNECTED, "again")
    handler.assert_called_once()
    assert hub.listener_count(ClientEvent.DISCONNECTED) == 0


def test_handlers_run_in_registration_order(scheduler):
    """Test handlers fire in the order they were added."""
    hub = EventHub(scheduler)
    order = []
    hub.subscribe(ClientEvent.CONNECTED, lambda: order.append("a"))
    hub.subscribe(ClientEvent.CONNECTED, lambda: order.append("b"))
    hub.emit(ClientEvent.CONNECTED)
    assert order == ["a", "b"]


def test_handler_exception_is_isolated(scheduler, caplog):
    """Test one failing handler does not stop the others."""
    hub = EventHub(scheduler)
    good = MagicMock()
    hub.subscribe(ClientEvent.ERROR, MagicMock(side_effect=RuntimeError("boom")))
    hub.subscribe(ClientEvent.ERROR, good)

    hub.emit(ClientEvent.ERROR, ValueError("x"))

    good.assert_called_once()
    assert "Error in error handler" in caplog.text


@pytest.mark.asyncio
async def test_coroutine_handler_is_scheduled(scheduler):
    """Test async handlers run as background tasks."""
    hub = EventHub(scheduler)
    seen = []

    async def handler(attempt):
        seen.append(attempt)

    hub.subscribe(ClientEvent.RECONNECTING, handler)
    hub.emit(ClientEvent.RECONNECTING, 2)
    assert len(scheduler.tasks) == 1
    await settle()
    assert seen == [2]


def test_clear_drops_all_handlers(scheduler):
    """Test clear empties every event."""
    hub = EventHub(scheduler)
    hub.subscribe(ClientEvent.CONNECTED, MagicMock())
    hub.subscribe(ClientEvent.DEVICE_ADDED, MagicMock())
    hub.clear()
    assert hub.listener_count(ClientEvent.CONNECTED) == 0
    assert hub.listener_count(ClientEvent.DEVICE_ADDED) == 0
