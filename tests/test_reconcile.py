"""Tests for device inventory reconciliation."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from buttplug_core.devices import Device
from buttplug_core.errors import ButtplugProtocolError, ErrorCode
from buttplug_core.reconcile import ReconcileCallbacks, reconcile_devices

from .conftest import make_raw_device, sensor_device

SENDER = MagicMock()


def create(raw):
    return Device.from_raw(SENDER, raw)


def make_callbacks():
    return ReconcileCallbacks(
        on_added=MagicMock(),
        on_removed=MagicMock(),
        on_updated=MagicMock(),
        on_list=MagicMock(),
    )


def table(*raws):
    return {raw["DeviceIndex"]: create(raw) for raw in raws}


class TestReconcileDevices:
    """Tests for reconcile_devices."""

    def test_adds_new_devices(self):
        """Test unknown indices are added and reported."""
        current = {}
        callbacks = make_callbacks()
        reconcile_devices(current, [make_raw_device(0), sensor_device(1)], create, callbacks)

        assert sorted(current) == [0, 1]
        assert callbacks.on_added.call_count == 2
        callbacks.on_removed.assert_not_called()
        callbacks.on_list.assert_called_once()
        assert len(callbacks.on_list.call_args.args[0]) == 2

    def test_empty_inventory_removes_everything(self):
        """Test an empty list removes every known device."""
        current = table(make_raw_device(0), sensor_device(1))
        callbacks = make_callbacks()
        reconcile_devices(current, [], create, callbacks)

        assert current == {}
        assert callbacks.on_removed.call_count == 2
        callbacks.on_list.assert_called_once_with([])

    def test_unchanged_device_is_kept(self):
        """Test identical descriptors keep the existing handle."""
        current = table(make_raw_device(0))
        existing = current[0]
        callbacks = make_callbacks()
        reconcile_devices(current, [make_raw_device(0)], create, callbacks)

        assert current[0] is existing
        callbacks.on_added.assert_not_called()
        callbacks.on_updated.assert_not_called()
        callbacks.on_list.assert_called_once_with([existing])

    def test_feature_order_is_ignored(self):
        """Test the same features reported in another order cause no update."""
        raw = sensor_device(1)
        current = table(raw)
        reordered = dict(raw)
        reordered["DeviceFeatures"] = dict(reversed(list(raw["DeviceFeatures"].items())))
        callbacks = make_callbacks()
        reconcile_devices(current, [reordered], create, callbacks)
        callbacks.on_updated.assert_not_called()

    def test_changed_features_replace_device(self):
        """Test a feature change swaps in a new handle and reports both."""
        current = table(make_raw_device(0))
        previous = current[0]
        changed = make_raw_device(
            0,
            features={
                "0": {
                    "FeatureIndex": 0,
                    "FeatureDescription": "Motor",
                    "Output": {"Vibrate": {"Value": [0, 40]}},
                }
            },
        )
        callbacks = make_callbacks()
        reconcile_devices(current, [changed], create, callbacks)

        assert current[0] is not previous
        callbacks.on_updated.assert_called_once_with(current[0], previous)
        assert current[0].features.outputs[0].range == (0, 40)

    def test_removals_reported_before_additions(self):
        """Test removed devices are announced before new ones."""
        order = []
        callbacks = ReconcileCallbacks(
            on_added=lambda d: order.append(("added", d.index)),
            on_removed=lambda d: order.append(("removed", d.index)),
            on_updated=lambda d, p: order.append(("updated", d.index)),
            on_list=lambda ds: order.append(("list", len(ds))),
        )
        current = table(make_raw_device(0))
        reconcile_devices(current, [make_raw_device(5)], create, callbacks)
        assert order == [("removed", 0), ("added", 5), ("list", 1)]

    def test_unbuildable_device_leaves_table_untouched(self):
        """Test a descriptor that cannot be built aborts before any change."""
        current = table(make_raw_device(0), sensor_device(1))
        before = dict(current)
        callbacks = make_callbacks()

        def create_or_fail(raw):
            if raw["DeviceIndex"] == 2:
                raise ValueError("Output Vibrate Value must be an integer pair")
            return create(raw)

        with pytest.raises(ButtplugProtocolError) as exc_info:
            reconcile_devices(
                current, [make_raw_device(0), make_raw_device(2)], create_or_fail, callbacks
            )

        assert exc_info.value.code == ErrorCode.MESSAGE
        assert current == before
        callbacks.on_removed.assert_not_called()
        callbacks.on_added.assert_not_called()
        callbacks.on_list.assert_not_called()
