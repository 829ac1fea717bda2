"""
HTTP API - REST endpoints for managing devices and their credentials.

Owners create, update and delete devices here; the controller picks up the
changes from the registry.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import asyncpg
import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, field_validator

from events import DeviceEvent, EventBus, EventType
from models import DeviceSpec, ObjectKey
from validation import validate_device_spec

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def _check_spec(spec: Dict[str, Any]) -> Dict[str, Any]:
    is_valid, error = validate_device_spec(spec)
    if not is_valid:
        raise ValueError(error)
    return spec


class DeviceCreate(BaseModel):
    """Request model for creating a device."""

    name: str = Field(..., description="Device name", examples=["worker-1"])
    spec: Dict[str, Any] = Field(..., description="Desired device configuration")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return _check_spec(v)


class DeviceUpdate(BaseModel):
    """Request model for replacing a device's spec."""

    spec: Dict[str, Any] = Field(..., description="Desired device configuration")

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return _check_spec(v)


class SecretPut(BaseModel):
    """Request model for storing a secret."""

    data: Dict[str, str] = Field(..., description="Secret key/value pairs")


class HistoryEntry(BaseModel):
    """Response model for reconciliation history."""

    id: int
    success: bool
    message: Optional[str] = None
    error_kind: Optional[str] = None
    requeue_after: Optional[int] = None
    duration_seconds: Optional[float] = None
    reconcile_time: Any


class APIServer:
    """FastAPI application serving the device API."""

    def __init__(
        self,
        db_manager,
        event_bus: Optional[EventBus] = None,
        host: str = "0.0.0.0",
        port: int = 8000,
    ):
        self._db_manager = db_manager
        self._event_bus = event_bus
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None
        self.app = FastAPI(
            title="Packet Launcher API",
            description="Declarative management of Packet devices",
            version="1.0.0",
        )
        self._setup_routes()

    async def _publish(self, event_type: EventType, key: ObjectKey, reason: str) -> None:
        if self._event_bus:
            await self._event_bus.publish(DeviceEvent.for_device(event_type, key, reason))

    def _setup_routes(self) -> None:
        """
        Set up the REST routes.

        - Health check: GET /
        - Devices CRUD: /api/v1/namespaces/{namespace}/devices
        - Reconcile, history, events: .../devices/{name}/...
        - Secrets: /api/v1/namespaces/{namespace}/secrets/{name}
        """

        def check_namespace(namespace: str) -> None:
            try:
                validate_name_format(namespace, "namespace")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "packet-launcher"}

        # ==================== Device Endpoints ====================

        @self.app.post("/api/v1/namespaces/{namespace}/devices", status_code=201)
        async def create_device(namespace: str, device: DeviceCreate):
            """Create a new device."""
            check_namespace(namespace)
            spec = DeviceSpec.from_dict(device.spec)
            try:
                created = await self._db_manager.create_device(
                    namespace, device.name, spec
                )
            except asyncpg.UniqueViolationError:
                raise HTTPException(
                    status_code=409,
                    detail=f"Device {namespace}/{device.name} already exists",
                )
            await self._publish(EventType.CREATED, created.key, "Created")
            return created.to_dict()

        @self.app.get("/api/v1/namespaces/{namespace}/devices")
        async def list_devices(namespace: str, limit: int = 100):
            """List devices in a namespace."""
            check_namespace(namespace)
            devices = await self._db_manager.list_devices(namespace, limit=limit)
            return [d.to_dict() for d in devices]

        @self.app.get("/api/v1/namespaces/{namespace}/devices/{name}")
        async def get_device(namespace: str, name: str):
            """Get a device."""
            device = await self._db_manager.get_device(namespace, name)
            if not device:
                raise HTTPException(status_code=404, detail="Device not found")
            return device.to_dict()

        @self.app.put("/api/v1/namespaces/{namespace}/devices/{name}")
        async def update_device(namespace: str, name: str, update: DeviceUpdate):
            """Replace a device's spec."""
            device = await self._db_manager.update_device_spec(
                namespace, name, DeviceSpec.from_dict(update.spec)
            )
            if not device:
                raise HTTPException(
                    status_code=404, detail="Device not found or being deleted"
                )
            await self._publish(EventType.MODIFIED, device.key, "SpecUpdated")
            return device.to_dict()

        @self.app.delete("/api/v1/namespaces/{namespace}/devices/{name}", status_code=202)
        async def delete_device(namespace: str, name: str):
            """Request deletion of a device."""
            if not await self._db_manager.request_deletion(namespace, name):
                raise HTTPException(status_code=404, detail="Device not found")
            await self._publish(
                EventType.DELETED, ObjectKey(namespace, name), "DeletionRequested"
            )
            return {"message": "Device marked for deletion"}

        @self.app.post(
            "/api/v1/namespaces/{namespace}/devices/{name}/reconcile", status_code=202
        )
        async def trigger_reconciliation(namespace: str, name: str):
            """Make a device due for reconciliation now."""
            if not await self._db_manager.trigger_reconciliation(namespace, name):
                raise HTTPException(status_code=404, detail="Device not found")
            return {"message": "Reconciliation triggered"}

        @self.app.get(
            "/api/v1/namespaces/{namespace}/devices/{name}/history",
            response_model=List[HistoryEntry],
        )
        async def get_reconciliation_history(namespace: str, name: str, limit: int = 10):
            """Get reconciliation history for a device."""
            return await self._db_manager.get_reconciliation_history(
                namespace, name, limit=limit
            )

        @self.app.get("/api/v1/namespaces/{namespace}/devices/{name}/events")
        async def get_device_events(namespace: str, name: str):
            """Get recent diagnostic events for a device."""
            if not self._event_bus:
                return []
            return [e.to_dict() for e in self._event_bus.recent(ObjectKey(namespace, name))]

        # ==================== Secret Endpoints ====================

        @self.app.put("/api/v1/namespaces/{namespace}/secrets/{name}")
        async def put_secret(namespace: str, name: str, secret: SecretPut):
            """Create or replace a secret. Values are never returned."""
            check_namespace(namespace)
            try:
                validate_name_format(name, "name")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            stored = await self._db_manager.put_secret(namespace, name, secret.data)
            return {
                "namespace": stored.namespace,
                "name": stored.name,
                "keys": sorted(stored.data),
            }

        @self.app.delete("/api/v1/namespaces/{namespace}/secrets/{name}", status_code=204)
        async def delete_secret(namespace: str, name: str):
            """Delete a secret."""
            if not await self._db_manager.delete_secret(namespace, name):
                raise HTTPException(status_code=404, detail="Secret not found")

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
