"""Pytest configuration and fixtures."""

import json
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from finalizer import FINALIZER_NAME
from models import Device, DeviceSpec, DeviceState, DeviceStatus, IPAddress, Secret


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def sample_spec():
    """Spec for a small Ubuntu device in Amsterdam."""
    return DeviceSpec(
        project_id="p1",
        facility="ams1",
        plan="baremetal_0",
        hostname="h1",
        os="ubuntu_20_04",
    )


@pytest.fixture
def sample_addresses():
    return (
        IPAddress(
            id="ip-1",
            address="147.75.1.10",
            gateway="147.75.1.9",
            network="147.75.1.8",
            address_family=4,
            netmask="255.255.255.254",
            public=True,
        ),
        IPAddress(
            id="ip-2",
            address="10.80.0.3",
            gateway="10.80.0.2",
            network="10.80.0.2",
            address_family=4,
            netmask="255.255.255.254",
            public=False,
        ),
    )


@pytest.fixture
def sample_device(sample_spec):
    """A freshly created device: no finalizer, no external id."""
    return Device(namespace="default", name="worker-1", spec=sample_spec)


@pytest.fixture
def active_device(sample_spec, sample_addresses):
    """A provisioned device carrying the finalizer."""
    return Device(
        namespace="default",
        name="worker-1",
        spec=sample_spec,
        status=DeviceStatus(
            id="dev-1", state=DeviceState.ACTIVE, ip_addresses=sample_addresses
        ),
        finalizers=(FINALIZER_NAME,),
        resource_version=3,
    )


@pytest.fixture
def sample_secret():
    return Secret(namespace="default", name="packet-secret", data={"apiKey": "k"})


@pytest.fixture
def device_row():
    """A devices table row as returned by asyncpg."""
    return {
        "id": 1,
        "namespace": "default",
        "name": "worker-1",
        "spec": json.dumps(
            {
                "projectID": "p1",
                "facility": "ams1",
                "plan": "baremetal_0",
                "hostname": "h1",
                "os": "ubuntu_20_04",
            }
        ),
        "status": json.dumps({"id": "dev-1", "state": "provisioning", "ready": False}),
        "finalizers": json.dumps([FINALIZER_NAME]),
        "generation": 1,
        "resource_version": 2,
        "deletion_timestamp": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "reconcile_requests": 0,
        "retry_count": 0,
    }
