"""
Database Manager - PostgreSQL-backed registry of devices and secrets.

Stores tracked devices, the credentials they reference, and reconciliation
history. Writes made by the controller are guarded by the device's
resource version (optimistic concurrency).
"""

import asyncpg
import json
import logging
from typing import Any, Dict, List, Optional

from errors import ConflictError
from migrate import run_migrations
from models import Device, DeviceSpec, DeviceStatus, ObjectKey, Secret

logger = logging.getLogger(__name__)


def _load_json(value: Any, default: Any) -> Any:
    """Decode a JSONB column that asyncpg may hand back as text."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class DatabaseManager:
    """Manages PostgreSQL database operations for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Device Methods ====================

    async def create_device(
        self,
        namespace: str,
        name: str,
        spec: DeviceSpec,
    ) -> Device:
        """
        Create a new device, scheduled for immediate reconciliation.

        Raises:
            asyncpg.UniqueViolationError: If the device already exists.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO devices (namespace, name, spec, next_reconcile_time)
                VALUES ($1, $2, $3, NOW())
                RETURNING *
                """,
                namespace,
                name,
                json.dumps(spec.to_dict()),
            )
            logger.info(f"Created device {namespace}/{name}")
            return self._parse_device_row(row)

    async def get_device(self, namespace: str, name: str) -> Optional[Device]:
        """Get a device, or None if it does not exist."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM devices WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_device_row(row)

    async def list_devices(
        self, namespace: Optional[str] = None, limit: int = 100
    ) -> List[Device]:
        """List devices, optionally restricted to a namespace."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    """
                    SELECT * FROM devices WHERE namespace = $1
                    ORDER BY name LIMIT $2
                    """,
                    namespace,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM devices ORDER BY namespace, name LIMIT $1",
                    limit,
                )
            return [self._parse_device_row(row) for row in rows]

    async def update_device_spec(
        self, namespace: str, name: str, spec: DeviceSpec
    ) -> Optional[Device]:
        """
        Replace a device's desired configuration.

        Returns:
            The updated device, or None if it does not exist or is being
            deleted.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE devices
                SET spec = $3,
                    generation = generation + 1,
                    resource_version = resource_version + 1,
                    reconcile_requests = reconcile_requests + 1,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2
                  AND deletion_timestamp IS NULL
                RETURNING *
                """,
                namespace,
                name,
                json.dumps(spec.to_dict()),
            )
            if not row:
                return None
            device = self._parse_device_row(row)
            logger.info(
                f"Updated device {namespace}/{name} to generation {device.generation}"
            )
            return device

    async def update_device(self, device: Device) -> Device:
        """
        Persist a device's status and finalizers.

        The write only succeeds if the stored resource version still matches
        the one the device was read with. A device that is being deleted and
        has no finalizers left is removed once written.

        Returns:
            The stored device with its new resource version.

        Raises:
            ConflictError: If the device changed or vanished since it was read.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE devices
                    SET status = $3,
                        finalizers = $4,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                      AND resource_version = $5
                    RETURNING *
                    """,
                    device.namespace,
                    device.name,
                    json.dumps(device.status.to_dict()),
                    json.dumps(list(device.finalizers)),
                    device.resource_version,
                )
                if not row:
                    raise ConflictError(
                        f"device {device.key} was modified since resource version "
                        f"{device.resource_version}"
                    )

                stored = self._parse_device_row(row)
                if stored.deletion_timestamp is not None and not stored.finalizers:
                    await conn.execute("DELETE FROM devices WHERE id = $1", row["id"])
                    logger.info(f"Removed device {device.key}")
                return stored

    async def request_deletion(self, namespace: str, name: str) -> bool:
        """
        Request removal of a device.

        A device without finalizers is removed immediately; otherwise its
        deletion timestamp is set and removal waits for the finalizers.

        Returns:
            True if the device existed.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                removed = await conn.fetchval(
                    """
                    DELETE FROM devices
                    WHERE namespace = $1 AND name = $2
                      AND finalizers = '[]'::jsonb
                    RETURNING id
                    """,
                    namespace,
                    name,
                )
                if removed:
                    logger.info(f"Removed device {namespace}/{name}")
                    return True

                marked = await conn.fetchval(
                    """
                    UPDATE devices
                    SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        resource_version = resource_version + 1,
                        reconcile_requests = reconcile_requests + 1,
                        next_reconcile_time = NOW(),
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                    RETURNING id
                    """,
                    namespace,
                    name,
                )
                if marked:
                    logger.info(f"Marked device {namespace}/{name} for deletion")
                return marked is not None

    # ==================== Secret Methods ====================

    async def put_secret(self, namespace: str, name: str, data: Dict[str, str]) -> Secret:
        """Create or replace a secret."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO secrets (namespace, name, data)
                VALUES ($1, $2, $3)
                ON CONFLICT (namespace, name)
                DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
                """,
                namespace,
                name,
                json.dumps(data),
            )
            logger.info(f"Stored secret {namespace}/{name}")
            return Secret(namespace=namespace, name=name, data=dict(data))

    async def get_secret(self, namespace: str, name: str) -> Optional[Secret]:
        """Get a secret, or None if it does not exist."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT data FROM secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return Secret(
                namespace=namespace, name=name, data=_load_json(row["data"], {})
            )

    async def delete_secret(self, namespace: str, name: str) -> bool:
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM secrets WHERE namespace = $1 AND name = $2 RETURNING id",
                namespace,
                name,
            )
            return deleted is not None

    # ==================== Scheduling Methods ====================

    async def get_devices_needing_reconciliation(
        self, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """
        Get devices whose next reconciliation is due.

        Devices being deleted come first, then the longest overdue.

        Returns:
            Dicts with ``namespace``, ``name`` and ``reconcile_requests``.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT namespace, name, reconcile_requests
                FROM devices
                WHERE next_reconcile_time IS NOT NULL
                  AND next_reconcile_time <= NOW()
                ORDER BY
                    CASE WHEN deletion_timestamp IS NOT NULL THEN 0 ELSE 1 END,
                    next_reconcile_time ASC
                LIMIT $1
                """,
                limit,
            )
            return [dict(row) for row in rows]

    async def schedule_reconciliation(
        self,
        key: ObjectKey,
        requeue_after: Optional[int],
        seen_requests: int = 0,
    ) -> None:
        """
        Record a successful pass and schedule the next one.

        ``requeue_after=None`` clears the schedule. Requests made while the
        pass was running (counter above ``seen_requests``) keep the device
        due immediately.
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE devices
                SET next_reconcile_time = CASE
                        WHEN reconcile_requests > $4 THEN NOW()
                        WHEN $3::int IS NULL THEN NULL
                        ELSE NOW() + INTERVAL '1 second' * $3::int
                    END,
                    last_reconcile_time = NOW(),
                    retry_count = 0,
                    last_error = NULL
                WHERE namespace = $1 AND name = $2
                """,
                key.namespace,
                key.name,
                requeue_after,
                seen_requests,
            )

    async def record_failure(
        self,
        key: ObjectKey,
        message: str,
        base_delay: int = 5,
        max_delay: int = 300,
        jitter_factor: float = 0.1,
        seen_requests: int = 0,
    ) -> None:
        """
        Record a failed pass and requeue with exponential backoff and jitter.

        Args:
            key: The device.
            message: Error message kept for inspection.
            base_delay: Base delay in seconds.
            max_delay: Maximum delay in seconds.
            jitter_factor: Jitter factor ±X (0.1 = ±10%).
            seen_requests: Request counter observed when the pass started.
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE devices
                SET next_reconcile_time = CASE
                        WHEN reconcile_requests > $7 THEN NOW()
                        ELSE NOW() + (
                            INTERVAL '1 second' * LEAST(
                                $4 * POWER(2, LEAST(retry_count, 10)),
                                $5
                            ) * (1 + (random() * 2 - 1) * $6)
                        )
                    END,
                    retry_count = retry_count + 1,
                    last_error = $3,
                    last_reconcile_time = NOW()
                WHERE namespace = $1 AND name = $2
                """,
                key.namespace,
                key.name,
                message,
                base_delay,
                max_delay,
                jitter_factor,
                seen_requests,
            )

    async def trigger_reconciliation(self, namespace: str, name: str) -> bool:
        """Make a device due for reconciliation now."""
        async with self.pool.acquire() as conn:
            updated = await conn.fetchval(
                """
                UPDATE devices
                SET next_reconcile_time = NOW(),
                    reconcile_requests = reconcile_requests + 1
                WHERE namespace = $1 AND name = $2
                RETURNING id
                """,
                namespace,
                name,
            )
            return updated is not None

    # ==================== History Methods ====================

    async def record_reconciliation(
        self,
        key: ObjectKey,
        success: bool,
        message: Optional[str] = None,
        error_kind: Optional[str] = None,
        requeue_after: Optional[int] = None,
        duration_seconds: Optional[float] = None,
    ):
        """Record a reconciliation pass in history."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reconciliation_history (
                    namespace, name, success, message, error_kind,
                    requeue_after, duration_seconds
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                key.namespace,
                key.name,
                success,
                message,
                error_kind,
                requeue_after,
                duration_seconds,
            )

    async def get_reconciliation_history(
        self, namespace: str, name: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get the most recent reconciliation passes for a device."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM reconciliation_history
                WHERE namespace = $1 AND name = $2
                ORDER BY reconcile_time DESC
                LIMIT $3
                """,
                namespace,
                name,
                limit,
            )
            return [dict(row) for row in rows]

    def _parse_device_row(self, row: asyncpg.Record) -> Device:
        """
        Build a Device from a devices row.

        Args:
            row: An asyncpg.Record from the devices table

        Returns:
            The Device, with JSON columns decoded
        """
        data = dict(row)
        return Device(
            namespace=data["namespace"],
            name=data["name"],
            spec=DeviceSpec.from_dict(_load_json(data.get("spec"), {})),
            status=DeviceStatus.from_dict(_load_json(data.get("status"), {})),
            finalizers=tuple(_load_json(data.get("finalizers"), [])),
            deletion_timestamp=data.get("deletion_timestamp"),
            generation=data.get("generation", 1),
            resource_version=data.get("resource_version", 1),
            created_at=data.get("created_at"),
        )
