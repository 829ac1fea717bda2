"""
Device Controller - reconciliation loop for Packet devices.

DeviceReconciler drives one device per call towards its spec: it creates,
reads or deletes the Packet device, manages the finalizer that holds
deletion open, and reports when the device should be looked at again.
Controller dispatches due devices to the reconciler and owns retries.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Set, Union

import finalizer
from config import ControllerConfig, PacketConfig
from errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ReconcileError,
    ReconcileTimeoutError,
)
from events import DeviceEvent, EventBus, EventType
from models import Device, DeviceSpec, DeviceStatus, ObjectKey, Secret
from packet import PacketClient, new_client
from updater import Updater

logger = logging.getLogger(__name__)

Log = Union[logging.Logger, logging.LoggerAdapter]
ClientFactory = Callable[[Secret], PacketClient]
UpdatePolicy = Callable[[DeviceSpec, DeviceStatus], bool]


@dataclass
class ReconcileResult:
    """Result from a reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[int] = None


def should_update_device(spec: DeviceSpec, status: DeviceStatus) -> bool:
    """
    Decide whether a provisioned device needs an update call.

    DeviceStatus carries no spec-derived fields to compare against, so no
    drift is ever detected here. Pass a different policy to DeviceReconciler
    to correct drift after creation.
    """
    return False


class DeviceReconciler:
    """
    Reconciles a single Device against the Packet API.

    Holds no per-device state; concurrent calls for different devices are
    safe, and the caller guarantees calls for one device never overlap.
    """

    def __init__(
        self,
        db,
        controller_config: Optional[ControllerConfig] = None,
        packet_config: Optional[PacketConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        update_policy: UpdatePolicy = should_update_device,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db
        self.config = controller_config or ControllerConfig()
        self.packet_config = packet_config or PacketConfig()
        self.client_factory = client_factory or self._new_client
        self.update_policy = update_policy
        self._event_bus = event_bus

    def _new_client(self, secret: Secret) -> PacketClient:
        return new_client(secret, self.packet_config)

    async def reconcile(self, key: ObjectKey, log: Optional[Log] = None) -> ReconcileResult:
        """
        Reconcile the device identified by key.

        Returns:
            ReconcileResult whose ``requeue_after`` is None when the device
            needs no further attention.

        Raises:
            ConfigurationError: If credentials cannot be resolved.
            ProvisioningError: If a Packet API call fails.
            ConflictError: If the device changed while being reconciled.
        """
        log = log or logging.LoggerAdapter(logger, {"device": str(key)})

        device = await self.db.get_device(key.namespace, key.name)
        if device is None:
            log.debug(f"Device {key} not found, nothing to do")
            return ReconcileResult(success=True, message="Device not found")

        client = await self._get_client(device)

        if finalizer.is_deleting(device):
            await self._remove_external_dependency(device, client, log)
            await Updater(self.db, device).remove_finalizer().update()
            log.info(f"Device {key} was finalized")
            await self._publish(
                EventType.FINALIZED, key, "Finalized", "External device released"
            )
            return ReconcileResult(success=True, message="Device finalized")

        if not finalizer.has_finalizer(device):
            device = await Updater(self.db, device).set_finalizer().update()

        status = await self._prepare_external_dependency(device, client, log)
        if not device.status.id:
            device = await self._record_created(device, status, log)
            if device is None:
                return ReconcileResult(success=True, message="Device not found")
        else:
            updater = Updater(self.db, device).set_status(status)
            if updater.changed:
                device = await updater.update()
                log.info(
                    f"Device {key} is {status.state.value or 'unknown'} "
                    f"(id={status.id}, ready={status.ready})"
                )

        if not device.status.ready:
            return ReconcileResult(
                success=True,
                message=f"Device is {device.status.state.value or 'unknown'}",
                requeue_after=self.config.not_ready_requeue_after,
            )

        return ReconcileResult(
            success=True,
            message="Device is active",
            requeue_after=self.config.ready_requeue_after,
        )

    async def _get_client(self, device: Device) -> PacketClient:
        """
        Build a Packet client from the device namespace's secret.

        Raises:
            ConfigurationError: If the secret or its API key is missing.
        """
        secret_name = self.packet_config.secret_name
        secret = await self.db.get_secret(device.namespace, secret_name)
        if secret is None:
            raise ConfigurationError(
                f"secret {device.namespace}/{secret_name} not found"
            )
        return self.client_factory(secret)

    async def _prepare_external_dependency(
        self, device: Device, client: PacketClient, log: Log
    ) -> DeviceStatus:
        if not device.status.id:
            log.info(f"Creating Packet device for {device.key}")
            return await client.create_device(device.spec)

        status = await client.get_device(device.status.id)
        if self.update_policy(device.spec, status):
            log.info(f"Updating Packet device {device.status.id}")
            status = await client.update_device(device.status.id, device.spec)
        return status

    async def _record_created(
        self, device: Device, status: DeviceStatus, log: Log
    ) -> Optional[Device]:
        """
        Persist the status of a freshly created Packet device.

        A spec change or deletion request may land while the create call is
        in flight. The new external id must still reach the registry, so a
        conflicting write is re-applied to the latest copy until it succeeds.

        Returns:
            The stored device, or None if it disappeared from the registry.
        """
        while True:
            try:
                device = await Updater(self.db, device).set_status(status).update()
                log.info(
                    f"Device {device.key} is {status.state.value or 'unknown'} "
                    f"(id={status.id}, ready={status.ready})"
                )
                return device
            except ConflictError:
                log.info(f"Device {device.key} changed during create, retrying")
                latest = await self.db.get_device(device.namespace, device.name)
                if latest is None:
                    log.error(
                        f"Device {device.key} was removed before Packet device "
                        f"{status.id} could be recorded"
                    )
                    return None
                device = latest

    async def _remove_external_dependency(
        self, device: Device, client: PacketClient, log: Log
    ) -> None:
        if not device.status.id:
            return
        try:
            await client.delete_device(device.status.id)
        except NotFoundError:
            log.info(f"Packet device {device.status.id} is already gone")

    async def _publish(
        self, event_type: EventType, key: ObjectKey, reason: str, message: str
    ) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                DeviceEvent.for_device(event_type, key, reason, message)
            )


class Controller:
    """
    Dispatches due devices to the DeviceReconciler.

    A device is never reconciled twice at once; different devices run
    concurrently up to ``max_concurrent_reconciles``. Successful passes are
    rescheduled after the returned delay and failed passes are retried with
    exponential backoff.
    """

    def __init__(
        self,
        db_manager,
        reconciler: Optional[DeviceReconciler] = None,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db_manager
        self.config = config or ControllerConfig()
        self.reconciler = reconciler or DeviceReconciler(
            db_manager, controller_config=self.config, event_bus=event_bus
        )
        self.semaphore = asyncio.Semaphore(self.config.max_concurrent_reconciles)
        self.running = False
        self._event_bus = event_bus
        self._in_flight: Set[ObjectKey] = set()
        self._tasks: Set[asyncio.Task] = set()

    async def start(self):
        """Run the dispatch loop until stop() is called."""
        logger.info("Starting device controller")
        self.running = True
        await self._reconciliation_loop()

    async def stop(self):
        """Stop dispatching and cancel in-flight passes."""
        logger.info("Stopping device controller")
        self.running = False

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _reconciliation_loop(self):
        while self.running:
            try:
                await self._dispatch_due()
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
            await asyncio.sleep(self.config.poll_interval)

    async def _dispatch_due(self) -> int:
        """Start a pass for every due device not already in flight."""
        due = await self.db.get_devices_needing_reconciliation(
            limit=self.config.max_concurrent_reconciles * 2
        )

        dispatched = 0
        for row in due:
            key = ObjectKey(row["namespace"], row["name"])
            if key in self._in_flight:
                continue
            self._in_flight.add(key)
            task = asyncio.create_task(
                self._reconcile_device(key, row.get("reconcile_requests", 0))
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatched += 1

        if dispatched:
            logger.info(f"Dispatched {dispatched} device(s) for reconciliation")
        return dispatched

    async def _reconcile_device(
        self, key: ObjectKey, seen_requests: int = 0
    ) -> Optional[ReconcileResult]:
        """Run one pass for a device and schedule the next."""
        log = logging.LoggerAdapter(logger, {"device": str(key)})
        start_time = time.monotonic()

        try:
            async with self.semaphore:
                try:
                    result = await asyncio.wait_for(
                        self.reconciler.reconcile(key, log),
                        timeout=self.config.reconcile_timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise ReconcileTimeoutError(
                        f"reconciliation exceeded {self.config.reconcile_timeout}s"
                    ) from e

            duration_seconds = time.monotonic() - start_time
            await self.db.schedule_reconciliation(
                key, result.requeue_after, seen_requests
            )
            await self.db.record_reconciliation(
                key,
                success=True,
                message=result.message,
                requeue_after=result.requeue_after,
                duration_seconds=duration_seconds,
            )
            await self._publish(EventType.RECONCILED, key, "Reconciled", result.message)
            return result

        except Exception as e:
            await self._handle_failure(
                key, e, seen_requests, time.monotonic() - start_time, log
            )
            return None

        finally:
            self._in_flight.discard(key)

    async def _handle_failure(
        self,
        key: ObjectKey,
        error: Exception,
        seen_requests: int,
        duration_seconds: float,
        log: Log,
    ) -> None:
        message = error.message if isinstance(error, ReconcileError) else str(error)
        error_kind = type(error).__name__

        if isinstance(error, ReconcileError) and not error.retryable:
            # Retrying sooner cannot help until someone fixes the configuration
            log.error(f"Device {key}: {message} (operator action required)")
            base_delay = self.config.backoff_max_delay
            event_type = EventType.CONFIGURATION_ERROR
        elif isinstance(error, ReconcileError):
            log.warning(f"Device {key}: {message}, retrying with backoff")
            base_delay = self.config.backoff_base_delay
            event_type = EventType.FAILED
        else:
            log.error(f"Error reconciling device {key}: {error}", exc_info=True)
            base_delay = self.config.backoff_base_delay
            event_type = EventType.FAILED

        try:
            await self.db.record_failure(
                key,
                message,
                base_delay=base_delay,
                max_delay=self.config.backoff_max_delay,
                jitter_factor=self.config.backoff_jitter_factor,
                seen_requests=seen_requests,
            )
            await self.db.record_reconciliation(
                key,
                success=False,
                message=message,
                error_kind=error_kind,
                duration_seconds=duration_seconds,
            )
        except Exception as db_error:
            logger.error(f"Failed to record failure for {key}: {db_error}")

        await self._publish(event_type, key, error_kind, message)

    async def _publish(
        self, event_type: EventType, key: ObjectKey, reason: str, message: str
    ) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                DeviceEvent.for_device(event_type, key, reason, message)
            )

    async def trigger_reconciliation(self, key: ObjectKey) -> bool:
        """Manually trigger reconciliation for a device."""
        logger.info(f"Manually triggering reconciliation for device {key}")
        return await self.db.trigger_reconciliation(key.namespace, key.name)
