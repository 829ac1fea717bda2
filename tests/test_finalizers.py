"""Unit tests for finalizer helpers and the Updater."""

import dataclasses
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock

import finalizer
from finalizer import FINALIZER_NAME
from models import DeviceState, DeviceStatus
from updater import Updater


class TestFinalizerHelpers:
    """Tests for the finalizer module."""

    def test_finalizer_name(self):
        assert FINALIZER_NAME == "finalizer.kkohtaka.org"

    def test_is_deleting(self, sample_device):
        assert finalizer.is_deleting(sample_device) is False
        deleting = dataclasses.replace(
            sample_device, deletion_timestamp=datetime.now(timezone.utc)
        )
        assert finalizer.is_deleting(deleting) is True

    def test_set_finalizer_appends(self, sample_device):
        device = sample_device.with_finalizers(("other",))
        result = finalizer.set_finalizer(device)
        assert result.finalizers == ("other", FINALIZER_NAME)
        assert device.finalizers == ("other",)

    def test_set_finalizer_is_idempotent(self, sample_device):
        once = finalizer.set_finalizer(sample_device)
        twice = finalizer.set_finalizer(once)
        assert twice.finalizers == (FINALIZER_NAME,)
        assert twice is once

    def test_has_finalizer(self, sample_device):
        assert not finalizer.has_finalizer(sample_device)
        assert finalizer.has_finalizer(finalizer.set_finalizer(sample_device))
        assert finalizer.has_finalizer(
            sample_device.with_finalizers(("custom",)), "custom"
        )

    def test_remove_finalizer_preserves_others(self, sample_device):
        device = sample_device.with_finalizers(("a", FINALIZER_NAME, "b"))
        result = finalizer.remove_finalizer(device)
        assert result.finalizers == ("a", "b")

    def test_remove_finalizer_removes_first_occurrence_only(self, sample_device):
        device = sample_device.with_finalizers((FINALIZER_NAME, "a", FINALIZER_NAME))
        result = finalizer.remove_finalizer(device)
        assert result.finalizers == ("a", FINALIZER_NAME)

    def test_remove_absent_finalizer_is_noop(self, sample_device):
        device = sample_device.with_finalizers(("a",))
        assert finalizer.remove_finalizer(device) is device

    def test_add_then_remove_restores_list(self, sample_device):
        device = sample_device.with_finalizers(("a", "b"))
        restored = finalizer.remove_finalizer(finalizer.set_finalizer(device))
        assert restored == device


@pytest.mark.asyncio
class TestUpdater:
    """Tests for Updater."""

    async def test_no_change_skips_write(self, active_device):
        db = AsyncMock()
        result = await Updater(db, active_device).set_finalizer().update()

        assert result is active_device
        db.update_device.assert_not_called()

    async def test_same_status_skips_write(self, active_device):
        db = AsyncMock()
        status = DeviceStatus(
            id="dev-1",
            state=DeviceState.ACTIVE,
            ip_addresses=active_device.status.ip_addresses,
        )
        updater = Updater(db, active_device).set_status(status)

        assert updater.changed is False
        await updater.update()
        db.update_device.assert_not_called()

    async def test_change_is_written(self, sample_device):
        db = AsyncMock()
        db.update_device = AsyncMock(side_effect=lambda d: d)

        result = await Updater(db, sample_device).set_finalizer().update()

        db.update_device.assert_called_once()
        written = db.update_device.call_args[0][0]
        assert written.finalizers == (FINALIZER_NAME,)
        assert result == written
        assert sample_device.finalizers == ()

    async def test_changes_combine(self, sample_device):
        db = AsyncMock()
        status = DeviceStatus(id="dev-1", state=DeviceState.QUEUED)
        updater = Updater(db, sample_device).set_finalizer().set_status(status)

        assert updater.old is sample_device
        assert updater.new.finalizers == (FINALIZER_NAME,)
        assert updater.new.status == status
