"""
Packet Client - Provisioning API client for Packet (Equinix Metal) devices.

Exposes create/get/update/delete of a single device in terms of DeviceSpec
and DeviceStatus only; raw API payloads never leave this module.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp

from config import PacketConfig
from errors import ConfigurationError, NotFoundError, ProvisioningError
from models import DeviceSpec, DeviceStatus, IPAddress, Secret, string_to_state

logger = logging.getLogger(__name__)


class PacketClient(ABC):
    """Interface to the Packet device API."""

    @abstractmethod
    async def create_device(self, spec: DeviceSpec) -> DeviceStatus:
        """Create a device on Packet."""
        pass

    @abstractmethod
    async def get_device(self, device_id: str) -> DeviceStatus:
        """
        Get a device on Packet.

        Raises:
            NotFoundError: If the device no longer exists.
        """
        pass

    @abstractmethod
    async def update_device(self, device_id: str, spec: DeviceSpec) -> DeviceStatus:
        """Update a device on Packet."""
        pass

    @abstractmethod
    async def delete_device(self, device_id: str) -> None:
        """
        Delete a device on Packet.

        Raises:
            NotFoundError: If the device no longer exists.
        """
        pass


def new_client(secret: Secret, config: Optional[PacketConfig] = None) -> PacketClient:
    """
    Build a client from the API key held in a secret.

    Raises:
        ConfigurationError: If the secret has no API key.
    """
    config = config or PacketConfig()
    api_key = secret.data.get(config.secret_key)
    if not api_key:
        raise ConfigurationError(
            f"secret {secret.namespace}/{secret.name} doesn't contain a key "
            f"{config.secret_key}"
        )
    return PacketAPIClient(
        api_key=api_key,
        api_url=config.api_url,
        request_timeout=config.request_timeout,
    )


def new_status(device: Dict[str, Any]) -> DeviceStatus:
    """Project a Packet device payload onto a DeviceStatus."""
    ip_addresses = tuple(
        IPAddress(
            id=ip.get("id", ""),
            address=ip.get("address", ""),
            gateway=ip.get("gateway", ""),
            network=ip.get("network", ""),
            address_family=int(ip.get("address_family") or 0),
            netmask=ip.get("netmask", ""),
            public=bool(ip.get("public", False)),
        )
        for ip in device.get("ip_addresses") or []
    )
    return DeviceStatus(
        id=device.get("id", ""),
        state=string_to_state(device.get("state")),
        ip_addresses=ip_addresses,
    )


class PacketAPIClient(PacketClient):
    """PacketClient backed by the Packet REST API over aiohttp."""

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.packet.net",
        request_timeout: int = 30,
    ):
        self._api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout

    def _get_headers(self) -> Dict[str, str]:
        return {
            "X-Auth-Token": self._api_key,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Send a request to the Packet API.

        Returns:
            The decoded JSON body, or None for empty responses.

        Raises:
            NotFoundError: On HTTP 404.
            ProvisioningError: On any other HTTP error or transport failure.
        """
        url = f"{self.api_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, headers=self._get_headers(), json=payload
                ) as response:
                    if response.status == 404:
                        raise NotFoundError(f"{method} {path}: not found", status=404)
                    if response.status >= 400:
                        body = await response.text()
                        raise ProvisioningError(
                            f"{method} {path} returned HTTP {response.status}: {body}",
                            status=response.status,
                        )
                    if response.status == 204:
                        return None
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProvisioningError(f"{method} {path} failed: {e}") from e

    async def create_device(self, spec: DeviceSpec) -> DeviceStatus:
        spec = spec.with_defaults()
        payload = {
            "facility": [spec.facility],
            "plan": spec.plan,
            "hostname": spec.hostname,
            "operating_system": spec.os,
            "billing_cycle": spec.billing_cycle,
            "userdata": spec.user_data,
        }
        device = await self._request(
            "POST", f"/projects/{spec.project_id}/devices", payload
        )
        logger.info(f"Created Packet device {device.get('id')} ({spec.hostname})")
        return new_status(device)

    async def get_device(self, device_id: str) -> DeviceStatus:
        device = await self._request("GET", f"/devices/{device_id}")
        return new_status(device)

    async def update_device(self, device_id: str, spec: DeviceSpec) -> DeviceStatus:
        spec = spec.with_defaults()
        payload = {
            "hostname": spec.hostname,
            "billing_cycle": spec.billing_cycle,
            "userdata": spec.user_data,
        }
        device = await self._request("PUT", f"/devices/{device_id}", payload)
        logger.info(f"Updated Packet device {device_id}")
        return new_status(device)

    async def delete_device(self, device_id: str) -> None:
        await self._request("DELETE", f"/devices/{device_id}")
        logger.info(f"Deleted Packet device {device_id}")
