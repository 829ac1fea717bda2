"""Unit tests for packet.py - Packet API client."""

import asyncio

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from config import PacketConfig
from errors import ConfigurationError, NotFoundError, ProvisioningError
from models import DeviceState, DeviceStatus, IPAddress, Secret
from packet import PacketAPIClient, new_client, new_status

DEVICE_PAYLOAD = {
    "id": "dev-1",
    "hostname": "h1",
    "state": "provisioning",
    "ip_addresses": [
        {
            "id": "ip-1",
            "address": "147.75.1.10",
            "gateway": "147.75.1.9",
            "network": "147.75.1.8",
            "address_family": 4,
            "netmask": "255.255.255.254",
            "public": True,
            "cidr": 31,
        },
        {
            "id": "ip-2",
            "address": "2604:1380::1",
            "gateway": "2604:1380::",
            "network": "2604:1380::",
            "address_family": 6,
            "netmask": "ffff:ffff:ffff:ffff:ffff:ffff:ffff:fffe",
            "public": True,
        },
    ],
}


def make_session(status=200, body=None, text=""):
    """Build a patched ClientSession returning a single canned response."""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body)
    response.text = AsyncMock(return_value=text)

    request_cm = MagicMock()
    request_cm.__aenter__ = AsyncMock(return_value=response)
    request_cm.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.request = MagicMock(return_value=request_cm)

    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    return session_cm, session


class TestNewStatus:
    """Tests for projecting API payloads onto DeviceStatus."""

    def test_copies_id_and_state(self):
        status = new_status(DEVICE_PAYLOAD)
        assert status.id == "dev-1"
        assert status.state == DeviceState.PROVISIONING
        assert status.ready is False

    def test_copies_addresses_in_order(self):
        status = new_status(DEVICE_PAYLOAD)
        assert status.ip_addresses == (
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
                address="2604:1380::1",
                gateway="2604:1380::",
                network="2604:1380::",
                address_family=6,
                netmask="ffff:ffff:ffff:ffff:ffff:ffff:ffff:fffe",
                public=True,
            ),
        )

    def test_active_is_ready(self):
        status = new_status({"id": "dev-1", "state": "active"})
        assert status.ready is True

    def test_unrecognized_state(self):
        status = new_status({"id": "dev-1", "state": "failed"})
        assert status.state == DeviceState.UNKNOWN
        assert status.ready is False

    def test_missing_addresses(self):
        assert new_status({"id": "dev-1"}).ip_addresses == ()


class TestNewClient:
    """Tests for building a client from a secret."""

    def test_missing_api_key(self):
        secret = Secret(namespace="default", name="packet-secret", data={})
        with pytest.raises(ConfigurationError) as exc_info:
            new_client(secret)
        assert "doesn't contain a key apiKey" in str(exc_info.value)
        assert exc_info.value.retryable is False

    def test_builds_client(self, sample_secret):
        client = new_client(
            sample_secret, PacketConfig(api_url="https://example.test/", request_timeout=5)
        )
        assert isinstance(client, PacketAPIClient)
        assert client.api_url == "https://example.test"
        assert client.request_timeout == 5
        assert client._get_headers()["X-Auth-Token"] == "k"

    def test_custom_secret_key(self):
        secret = Secret(namespace="ns", name="creds", data={"token": "t"})
        client = new_client(secret, PacketConfig(secret_key="token"))
        assert client._get_headers()["X-Auth-Token"] == "t"


@pytest.mark.asyncio
class TestPacketAPIClient:
    """Tests for PacketAPIClient."""

    @pytest.fixture
    def client(self):
        return PacketAPIClient(api_key="secret-key", api_url="https://api.test")

    async def test_create_device_defaults_billing_cycle(self, client, sample_spec):
        session_cm, session = make_session(status=201, body=DEVICE_PAYLOAD)

        with patch("packet.aiohttp.ClientSession", return_value=session_cm):
            status = await client.create_device(sample_spec)

        method, url = session.request.call_args[0]
        kwargs = session.request.call_args[1]
        assert method == "POST"
        assert url == "https://api.test/projects/p1/devices"
        assert kwargs["headers"]["X-Auth-Token"] == "secret-key"
        assert kwargs["json"] == {
            "facility": ["ams1"],
            "plan": "baremetal_0",
            "hostname": "h1",
            "operating_system": "ubuntu_20_04",
            "billing_cycle": "hourly",
            "userdata": "",
        }
        assert status.id == "dev-1"
        assert len(status.ip_addresses) == 2

    async def test_get_device(self, client):
        session_cm, session = make_session(
            body={"id": "dev-1", "state": "active", "ip_addresses": []}
        )

        with patch("packet.aiohttp.ClientSession", return_value=session_cm):
            status = await client.get_device("dev-1")

        assert session.request.call_args[0] == ("GET", "https://api.test/devices/dev-1")
        assert status == DeviceStatus(id="dev-1", state=DeviceState.ACTIVE)

    async def test_get_device_not_found(self, client):
        session_cm, _ = make_session(status=404)

        with patch("packet.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(NotFoundError) as exc_info:
                await client.get_device("dev-1")

        assert exc_info.value.status == 404

    async def test_update_device(self, client, sample_spec):
        session_cm, session = make_session(body={"id": "dev-1", "state": "active"})

        with patch("packet.aiohttp.ClientSession", return_value=session_cm):
            await client.update_device("dev-1", sample_spec)

        assert session.request.call_args[0][0] == "PUT"
        assert session.request.call_args[1]["json"]["billing_cycle"] == "hourly"

    async def test_delete_device(self, client):
        session_cm, session = make_session(status=204)

        with patch("packet.aiohttp.ClientSession", return_value=session_cm):
            result = await client.delete_device("dev-1")

        assert result is None
        assert session.request.call_args[0] == (
            "DELETE",
            "https://api.test/devices/dev-1",
        )

    async def test_delete_device_not_found(self, client):
        session_cm, _ = make_session(status=404)

        with patch("packet.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(NotFoundError):
                await client.delete_device("dev-1")

    async def test_server_error(self, client, sample_spec):
        session_cm, _ = make_session(status=422, text="plan not available")

        with patch("packet.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(ProvisioningError) as exc_info:
                await client.create_device(sample_spec)

        assert not isinstance(exc_info.value, NotFoundError)
        assert exc_info.value.status == 422
        assert "plan not available" in str(exc_info.value)
        assert exc_info.value.retryable is True

    async def test_transport_error(self, client):
        session_cm, session = make_session()
        session.request.side_effect = aiohttp.ClientConnectionError("refused")

        with patch("packet.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(ProvisioningError) as exc_info:
                await client.get_device("dev-1")

        assert "refused" in str(exc_info.value)

    async def test_timeout(self, client):
        session_cm, session = make_session()
        session.request.side_effect = asyncio.TimeoutError()

        with patch("packet.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(ProvisioningError):
                await client.get_device("dev-1")
