"""
Device types - desired configuration, observed status and the tracked object.

All types are frozen dataclasses so that a fetched object can never be
mutated in place; changes are derived with ``dataclasses.replace`` and
compared by value.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

DEFAULT_BILLING_CYCLE = "hourly"


class DeviceState(Enum):
    """Lifecycle state of a Packet device."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    QUEUED = "queued"
    PROVISIONING = "provisioning"
    UNKNOWN = ""


def string_to_state(state: Any) -> DeviceState:
    """Map a provider state string to a DeviceState, defaulting to UNKNOWN."""
    if not isinstance(state, str):
        return DeviceState.UNKNOWN
    for member in DeviceState:
        if member.value == state:
            return member
    return DeviceState.UNKNOWN


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a tracked object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class DeviceSpec:
    """Desired state of a Device."""

    project_id: str
    facility: str
    plan: str
    hostname: str
    os: str
    billing_cycle: str = ""
    user_data: str = ""

    def with_defaults(self) -> "DeviceSpec":
        """Return a copy with the default billing cycle filled in."""
        if self.billing_cycle:
            return self
        return replace(self, billing_cycle=DEFAULT_BILLING_CYCLE)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "projectID": self.project_id,
            "facility": self.facility,
            "plan": self.plan,
            "hostname": self.hostname,
            "os": self.os,
        }
        if self.billing_cycle:
            data["billingCycle"] = self.billing_cycle
        if self.user_data:
            data["userData"] = self.user_data
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceSpec":
        return cls(
            project_id=data.get("projectID", ""),
            facility=data.get("facility", ""),
            plan=data.get("plan", ""),
            hostname=data.get("hostname", ""),
            os=data.get("os", ""),
            billing_cycle=data.get("billingCycle") or "",
            user_data=data.get("userData") or "",
        )


@dataclass(frozen=True)
class IPAddress:
    """A network address assigned to a device."""

    id: str = ""
    address: str = ""
    gateway: str = ""
    network: str = ""
    address_family: int = 0
    netmask: str = ""
    public: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "gateway": self.gateway,
            "network": self.network,
            "addressFamily": self.address_family,
            "netmask": self.netmask,
            "public": self.public,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IPAddress":
        return cls(
            id=data.get("id", ""),
            address=data.get("address", ""),
            gateway=data.get("gateway", ""),
            network=data.get("network", ""),
            address_family=int(data.get("addressFamily", 0)),
            netmask=data.get("netmask", ""),
            public=bool(data.get("public", False)),
        )


@dataclass(frozen=True)
class DeviceStatus:
    """Observed state of a Device."""

    id: str = ""
    state: DeviceState = DeviceState.UNKNOWN
    ip_addresses: Tuple[IPAddress, ...] = ()

    @property
    def ready(self) -> bool:
        return self.state == DeviceState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "id": self.id,
            "state": self.state.value,
            "ipAddresses": [ip.to_dict() for ip in self.ip_addresses],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeviceStatus":
        if not data:
            return cls()
        return cls(
            id=data.get("id", ""),
            state=string_to_state(data.get("state", "")),
            ip_addresses=tuple(
                IPAddress.from_dict(ip) for ip in data.get("ipAddresses") or []
            ),
        )


@dataclass(frozen=True)
class Secret:
    """A named set of credentials stored alongside devices."""

    namespace: str
    name: str
    data: Dict[str, str] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class Device:
    """
    The unit of reconciliation.

    Pairs a DeviceSpec with a DeviceStatus plus the deletion metadata the
    registry uses to hold removal open (deletion timestamp and finalizers).
    ``resource_version`` is the optimistic concurrency token checked on
    every persist.
    """

    namespace: str
    name: str
    spec: DeviceSpec
    status: DeviceStatus = field(default_factory=DeviceStatus)
    finalizers: Tuple[str, ...] = ()
    deletion_timestamp: Optional[datetime] = None
    generation: int = 1
    resource_version: int = 1
    created_at: Optional[datetime] = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)

    def with_finalizers(self, finalizers: Tuple[str, ...]) -> "Device":
        return replace(self, finalizers=tuple(finalizers))

    def with_status(self, status: DeviceStatus) -> "Device":
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "namespace": self.namespace,
                "name": self.name,
                "finalizers": list(self.finalizers),
                "deletionTimestamp": (
                    self.deletion_timestamp.isoformat()
                    if self.deletion_timestamp
                    else None
                ),
                "generation": self.generation,
                "resourceVersion": self.resource_version,
                "creationTimestamp": (
                    self.created_at.isoformat() if self.created_at else None
                ),
            },
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }
