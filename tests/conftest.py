"""Pytest configuration and fixtures for buttplug_core tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Coroutine
from typing import Any

import pytest

from buttplug_core.errors import ButtplugConnectionError
from buttplug_core.transport.connection import ConnectionState, TransportEvent


async def settle(rounds: int = 20) -> None:
    """Let ready tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualTimer:
    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler with virtual time, advanced explicitly by tests."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[ManualTimer] = []
        self.tasks: list[asyncio.Task[Any]] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.now + max(delay, 0.0), callback)
        self._timers.append(timer)
        return timer

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self.tasks.append(task)
        return task

    @property
    def pending_timers(self) -> list[ManualTimer]:
        return [t for t in self._timers if not t.cancelled]

    def next_delay(self) -> float | None:
        pending = self.pending_timers
        if not pending:
            return None
        return min(t.when for t in pending) - self.now

    async def advance(self, seconds: float) -> None:
        """Fire every timer due within ``seconds``, in order, settling between them."""
        target = self.now + seconds
        while True:
            await settle()
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self.now = timer.when
            timer.callback()
        self.now = target
        await settle()


def make_raw_device(
    index: int = 0,
    name: str = "Test Vibrator",
    *,
    features: dict[str, Any] | None = None,
    display_name: str | None = None,
    timing_gap: int = 0,
) -> dict[str, Any]:
    """Build a raw device descriptor as a server would send it."""
    if features is None:
        features = {
            "0": {
                "FeatureIndex": 0,
                "FeatureDescription": "Motor",
                "Output": {"Vibrate": {"Value": [0, 20]}},
            }
        }
    raw: dict[str, Any] = {
        "DeviceIndex": index,
        "DeviceName": name,
        "DeviceMessageTimingGap": timing_gap,
        "DeviceFeatures": features,
    }
    if display_name is not None:
        raw["DeviceDisplayName"] = display_name
    return raw


def sensor_device(index: int = 1) -> dict[str, Any]:
    """Device with a vibrator plus a readable battery and a subscribable pressure sensor."""
    return make_raw_device(
        index,
        "Sensor Toy",
        features={
            "0": {
                "FeatureIndex": 0,
                "FeatureDescription": "Motor",
                "Output": {"Vibrate": {"Value": [0, 20]}},
            },
            "1": {
                "FeatureIndex": 1,
                "FeatureDescription": "Battery",
                "Input": {"Battery": {"Value": [[0, 100]], "Command": ["Read"]}},
            },
            "2": {
                "FeatureIndex": 2,
                "FeatureDescription": "Pressure",
                "Input": {
                    "Pressure": {"Value": [[0, 1000]], "Command": ["Read", "Subscribe"]}
                },
            },
        },
    )


class FakeTransport:
    """In-memory transport that can play a Buttplug server.

    With ``auto_respond`` set, each sent frame is answered on the next loop
    iteration: ``RequestServerInfo`` with ``server_info``,
    ``RequestDeviceList`` with ``devices``, anything else with ``Ok``.
    Tags in ``silent_tags`` get no answer; tags in ``error_tags`` get an
    ``Error`` with the mapped (code, message).
    """

    def __init__(self, *, auto_respond: bool = True) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.auto_respond = auto_respond
        self.sent: list[str] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.connect_errors: list[Exception] = []
        self.server_info: dict[str, Any] = {
            "ServerName": "Test Server",
            "ProtocolVersionMajor": 4,
            "ProtocolVersionMinor": 0,
            "MaxPingTime": 0,
        }
        self.devices: dict[str, dict[str, Any]] = {}
        self.silent_tags: set[str] = set()
        self.error_tags: dict[str, tuple[int, str]] = {}
        self._listeners: dict[TransportEvent, list[Callable[..., Any]]] = {}

    def on(self, event: TransportEvent, handler: Callable[..., Any]) -> None:
        self._listeners.setdefault(event, []).append(handler)

    def off(self, event: TransportEvent, handler: Callable[..., Any]) -> None:
        self._listeners.get(event, []).remove(handler)

    def emit(self, event: TransportEvent, *args: Any) -> None:
        for handler in list(self._listeners.get(event, ())):
            handler(*args)

    async def connect(self, url: str) -> None:
        self.connect_calls += 1
        if self.state is ConnectionState.CONNECTED:
            return
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.state = ConnectionState.CONNECTED
        self.emit(TransportEvent.OPENED)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.state is ConnectionState.DISCONNECTED:
            return
        self.state = ConnectionState.DISCONNECTED
        self.emit(TransportEvent.CLOSED, 1000, "Client disconnect")

    async def send(self, data: str) -> None:
        if self.state is not ConnectionState.CONNECTED:
            raise ButtplugConnectionError("Cannot send: WebSocket is not connected")
        self.sent.append(data)
        if self.auto_respond:
            responses = self._respond(json.loads(data))
            if responses:
                asyncio.get_running_loop().call_soon(self.receive, responses)

    def receive(self, payload: Any) -> None:
        """Deliver a server frame. Non-string payloads are JSON-encoded."""
        if self.state is not ConnectionState.CONNECTED:
            return
        text = payload if isinstance(payload, str) else json.dumps(payload)
        self.emit(TransportEvent.MESSAGE, text)

    def drop(self, code: int = 1006, reason: str = "Connection lost") -> None:
        """Simulate the server going away."""
        self.state = ConnectionState.DISCONNECTED
        self.emit(TransportEvent.CLOSED, code, reason)

    @property
    def sent_messages(self) -> list[dict[str, Any]]:
        return [envelope for frame in self.sent for envelope in json.loads(frame)]

    def sent_tags(self) -> list[str]:
        return [next(iter(envelope)) for envelope in self.sent_messages]

    def _respond(self, envelopes: list[dict[str, Any]]) -> list[dict[str, Any]]:
        responses = []
        for envelope in envelopes:
            ((tag, body),) = envelope.items()
            msg_id = body["Id"]
            if tag in self.silent_tags:
                continue
            if tag in self.error_tags:
                code, message = self.error_tags[tag]
                responses.append(
                    {"Error": {"Id": msg_id, "ErrorCode": code, "ErrorMessage": message}}
                )
            elif tag == "RequestServerInfo":
                responses.append({"ServerInfo": {"Id": msg_id, **self.server_info}})
            elif tag == "RequestDeviceList":
                responses.append({"DeviceList": {"Id": msg_id, "Devices": self.devices}})
            else:
                responses.append({"Ok": {"Id": msg_id}})
        return responses


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
