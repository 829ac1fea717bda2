"""Unit tests for models.py - Device types."""

import dataclasses

import pytest

from models import (
    DEFAULT_BILLING_CYCLE,
    Device,
    DeviceSpec,
    DeviceState,
    DeviceStatus,
    IPAddress,
    ObjectKey,
    string_to_state,
)


class TestStringToState:
    """Tests for string_to_state."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("active", DeviceState.ACTIVE),
            ("inactive", DeviceState.INACTIVE),
            ("queued", DeviceState.QUEUED),
            ("provisioning", DeviceState.PROVISIONING),
        ],
    )
    def test_known_states(self, value, expected):
        assert string_to_state(value) == expected

    @pytest.mark.parametrize(
        "value", ["", "deprovisioning", "ACTIVE", " active", None, 42]
    )
    def test_anything_else_is_unknown(self, value):
        assert string_to_state(value) == DeviceState.UNKNOWN

    def test_unknown_renders_as_empty_string(self):
        assert DeviceState.UNKNOWN.value == ""


class TestObjectKey:
    """Tests for ObjectKey."""

    def test_str(self):
        assert str(ObjectKey("default", "worker-1")) == "default/worker-1"

    def test_hashable_and_equal_by_value(self):
        keys = {ObjectKey("a", "b"), ObjectKey("a", "b")}
        assert len(keys) == 1


class TestDeviceSpec:
    """Tests for DeviceSpec."""

    def test_with_defaults_fills_billing_cycle(self, sample_spec):
        assert sample_spec.billing_cycle == ""
        assert sample_spec.with_defaults().billing_cycle == DEFAULT_BILLING_CYCLE
        assert DEFAULT_BILLING_CYCLE == "hourly"

    def test_with_defaults_keeps_explicit_billing_cycle(self, sample_spec):
        spec = dataclasses.replace(sample_spec, billing_cycle="monthly")
        assert spec.with_defaults().billing_cycle == "monthly"

    def test_with_defaults_does_not_mutate(self, sample_spec):
        sample_spec.with_defaults()
        assert sample_spec.billing_cycle == ""

    def test_to_dict_omits_empty_optionals(self, sample_spec):
        data = sample_spec.to_dict()
        assert data == {
            "projectID": "p1",
            "facility": "ams1",
            "plan": "baremetal_0",
            "hostname": "h1",
            "os": "ubuntu_20_04",
        }

    def test_from_dict(self):
        spec = DeviceSpec.from_dict(
            {
                "projectID": "p1",
                "facility": "ams1",
                "plan": "small",
                "hostname": "h1",
                "os": "ubuntu",
                "billingCycle": "daily",
                "userData": "#!/bin/sh",
            }
        )
        assert spec.project_id == "p1"
        assert spec.billing_cycle == "daily"
        assert spec.user_data == "#!/bin/sh"


class TestDeviceStatus:
    """Tests for DeviceStatus."""

    @pytest.mark.parametrize("state", list(DeviceState))
    def test_ready_iff_active(self, state):
        assert DeviceStatus(id="x", state=state).ready == (state == DeviceState.ACTIVE)

    def test_default_is_empty(self):
        status = DeviceStatus()
        assert status.id == ""
        assert status.state == DeviceState.UNKNOWN
        assert status.ip_addresses == ()
        assert status.ready is False

    def test_round_trip_preserves_addresses(self, sample_addresses):
        status = DeviceStatus(
            id="dev-1", state=DeviceState.ACTIVE, ip_addresses=sample_addresses
        )
        assert DeviceStatus.from_dict(status.to_dict()) == status

    def test_from_dict_none(self):
        assert DeviceStatus.from_dict(None) == DeviceStatus()

    def test_to_dict_reports_ready(self):
        data = DeviceStatus(id="dev-1", state=DeviceState.ACTIVE).to_dict()
        assert data["ready"] is True
        assert data["state"] == "active"


class TestIPAddress:
    """Tests for IPAddress."""

    def test_to_dict_uses_camel_case(self, sample_addresses):
        data = sample_addresses[0].to_dict()
        assert data["addressFamily"] == 4
        assert data["public"] is True

    def test_from_dict_defaults(self):
        ip = IPAddress.from_dict({"address": "10.0.0.1"})
        assert ip.address == "10.0.0.1"
        assert ip.address_family == 0
        assert ip.public is False


class TestDevice:
    """Tests for Device."""

    def test_frozen(self, sample_device):
        with pytest.raises(dataclasses.FrozenInstanceError):
            sample_device.name = "other"

    def test_key(self, sample_device):
        assert sample_device.key == ObjectKey("default", "worker-1")

    def test_with_status_returns_copy(self, sample_device):
        status = DeviceStatus(id="dev-1", state=DeviceState.QUEUED)
        updated = sample_device.with_status(status)
        assert updated.status == status
        assert sample_device.status == DeviceStatus()
        assert updated != sample_device

    def test_equal_by_value(self, sample_spec):
        a = Device(namespace="ns", name="d", spec=sample_spec)
        b = Device(namespace="ns", name="d", spec=sample_spec)
        assert a == b

    def test_to_dict(self, active_device):
        data = active_device.to_dict()
        assert data["metadata"]["name"] == "worker-1"
        assert data["metadata"]["finalizers"] == ["finalizer.kkohtaka.org"]
        assert data["metadata"]["deletionTimestamp"] is None
        assert data["metadata"]["resourceVersion"] == 3
        assert data["spec"]["hostname"] == "h1"
        assert data["status"]["ready"] is True
        assert len(data["status"]["ipAddresses"]) == 2
