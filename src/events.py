"""
Diagnostic Events - In-memory record of device events.

Events record what the controller did to a device (created, reconciled,
finalized, failed) in a form an operator can inspect, similar to
Kubernetes events.
"""

import asyncio
import json
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List

from models import ObjectKey

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of device events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RECONCILED = "RECONCILED"
    FINALIZED = "FINALIZED"
    FAILED = "FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


@dataclass
class DeviceEvent:
    """Event emitted for a device."""

    event_type: EventType
    namespace: str
    name: str
    reason: str
    message: str
    timestamp: str

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "namespace": self.namespace,
            "name": self.name,
            "reason": self.reason,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def for_device(
        cls,
        event_type: EventType,
        key: ObjectKey,
        reason: str,
        message: str = "",
    ) -> "DeviceEvent":
        """
        Create an event for a device.

        Args:
            event_type: The type of event.
            key: Namespace and name of the device.
            reason: Short machine-readable reason (e.g. 'ProvisioningFailed').
            message: Human-readable detail.

        Returns:
            A new DeviceEvent instance.
        """
        return cls(
            event_type=event_type,
            namespace=key.namespace,
            name=key.name,
            reason=reason,
            message=message,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class EventBus:
    """
    In-memory recorder of device events.

    The most recent events of each device are kept for inspection. Only the
    ``max_devices`` most recently active devices are tracked; publishing for
    a new device beyond that evicts the one that has been quiet longest.
    """

    def __init__(self, history_size: int = 20, max_devices: int = 1024):
        self._history_size = history_size
        self._max_devices = max_devices
        self._history: "OrderedDict[ObjectKey, Deque[DeviceEvent]]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def publish(self, event: DeviceEvent) -> None:
        """
        Record an event in its device's history.

        Args:
            event: The event to publish.
        """
        async with self._lock:
            history = self._history.get(event.key)
            if history is None:
                history = deque(maxlen=self._history_size)
                self._history[event.key] = history
            else:
                self._history.move_to_end(event.key)
            history.append(event)

            while len(self._history) > self._max_devices:
                evicted, _ = self._history.popitem(last=False)
                logger.debug(f"Dropped event history for device {evicted}")

    def recent(self, key: ObjectKey) -> List[DeviceEvent]:
        """Return the retained events for a device, oldest first."""
        return list(self._history.get(key, ()))
