"""
Updater - derive a new Device from a fetched one and persist only on change.
"""

import finalizer
from models import Device, DeviceStatus


class Updater:
    """
    Holds the fetched Device and the value derived from it.

    The fetched value is never touched; each step replaces ``new`` with a
    transformed copy, and ``update()`` writes ``new`` only if it differs
    from ``old`` by value.
    """

    def __init__(self, db, device: Device):
        self._db = db
        self.old = device
        self.new = device

    def set_finalizer(self) -> "Updater":
        self.new = finalizer.set_finalizer(self.new)
        return self

    def remove_finalizer(self) -> "Updater":
        self.new = finalizer.remove_finalizer(self.new)
        return self

    def set_status(self, status: DeviceStatus) -> "Updater":
        self.new = self.new.with_status(status)
        return self

    @property
    def changed(self) -> bool:
        return self.new != self.old

    async def update(self) -> Device:
        """
        Persist the derived Device if it changed.

        Returns:
            The stored Device (carrying the new resource version), or the
            original when nothing changed.

        Raises:
            ConflictError: If the stored object changed since it was fetched.
        """
        if not self.changed:
            return self.old
        return await self._db.update_device(self.new)
