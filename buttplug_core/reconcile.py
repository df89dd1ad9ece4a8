"""Diffing of server device inventories against local device state."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .devices import Device, features_equal
from .errors import ButtplugProtocolError, ErrorCode
from .protocol import RawDevice

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileCallbacks:
    """Receivers for the changes found by ``reconcile_devices``."""

    on_added: Callable[[Device], None]
    on_removed: Callable[[Device], None]
    on_updated: Callable[[Device, Device], None]
    on_list: Callable[[list[Device]], None]


def reconcile_devices(
    current: dict[int, Device],
    incoming: Sequence[RawDevice],
    create_device: Callable[[RawDevice], Device],
    callbacks: ReconcileCallbacks,
    logger: logging.Logger | None = None,
) -> None:
    """Apply an authoritative inventory to ``current`` in place.

    Devices missing from ``incoming`` are removed, devices whose features
    changed are replaced, and new indices are added. ``on_list`` is called
    exactly once at the end with the resulting devices.

    Raises:
        ButtplugProtocolError: If a descriptor cannot be turned into a
            device. ``current`` is left untouched and no callback runs.
    """
    log = logger or _LOGGER
    try:
        candidates = [(raw["DeviceIndex"], create_device(raw)) for raw in incoming]
    except (KeyError, TypeError, ValueError, AttributeError) as err:
        raise ButtplugProtocolError(
            ErrorCode.MESSAGE, f"Invalid device list: {err}"
        ) from err
    incoming_indices = {index for index, _ in candidates}

    for index in [i for i in current if i not in incoming_indices]:
        device = current.pop(index)
        log.debug("Device removed: %s (index %d)", device.name, index)
        callbacks.on_removed(device)

    for index, candidate in candidates:
        existing = current.get(index)
        if existing is None:
            current[index] = candidate
            log.debug("Device added: %s (index %d)", candidate.name, index)
            callbacks.on_added(candidate)
        elif not features_equal(existing.features, candidate.features):
            current[index] = candidate
            log.debug("Device updated: %s (index %d)", candidate.name, index)
            callbacks.on_updated(candidate, existing)

    callbacks.on_list(list(current.values()))
