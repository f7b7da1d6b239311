"""
Tests for the in-process migration driver.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from migration_driver import (
    FAILURE_BACKOFF_SECONDS,
    IDLE_POLL_INTERVAL,
    MAX_FAILURE_STREAK,
    MigrationDriver,
    get_migration_driver,
)
from migration_models import NotRunningError, StorageNotConfiguredError


def _controller(status="running"):
    controller = MagicMock()
    controller.status.return_value.status = status
    return controller


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_idle_when_not_running(self):
        controller = _controller("paused")
        driver = MigrationDriver(controller, interval=0.5)
        assert await driver.run_once() == IDLE_POLL_INTERVAL
        controller.process_batch.assert_not_called()

    @pytest.mark.asyncio
    async def test_runs_batch(self):
        controller = _controller()
        driver = MigrationDriver(controller, interval=0.5)
        assert await driver.run_once() == 0.5
        controller.process_batch.assert_called_once()
        status = driver.get_status()
        assert status["batches_run"] == 1
        assert status["last_batch_at"] is not None

    @pytest.mark.asyncio
    async def test_paused_between_check_and_batch(self):
        controller = _controller()
        controller.process_batch.side_effect = NotRunningError("paused")
        driver = MigrationDriver(controller, interval=0.5)
        assert await driver.run_once() == IDLE_POLL_INTERVAL
        assert driver.get_status()["batches_run"] == 0

    @pytest.mark.asyncio
    async def test_storage_not_configured_backs_off(self):
        controller = _controller()
        controller.process_batch.side_effect = StorageNotConfiguredError("no bucket")
        driver = MigrationDriver(controller, interval=0.5)
        assert await driver.run_once() == FAILURE_BACKOFF_SECONDS
        assert driver.get_status()["last_error"] == "no bucket"

    @pytest.mark.asyncio
    async def test_failure_streak_backs_off(self):
        controller = _controller()
        controller.process_batch.side_effect = RuntimeError("db down")
        driver = MigrationDriver(controller, interval=0.5)

        delays = [await driver.run_once() for _ in range(MAX_FAILURE_STREAK)]
        assert delays[:-1] == [0.5] * (MAX_FAILURE_STREAK - 1)
        assert delays[-1] == FAILURE_BACKOFF_SECONDS

    @pytest.mark.asyncio
    async def test_success_resets_streak(self):
        controller = _controller()
        controller.process_batch.side_effect = [RuntimeError("blip")] * 4 + [MagicMock(), RuntimeError("blip")]
        driver = MigrationDriver(controller, interval=0.5)
        for _ in range(5):
            await driver.run_once()
        assert driver.get_status()["last_error"] is None
        assert await driver.run_once() == 0.5


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_drives_real_controller_to_completion(self, controller):
        controller.start()
        driver = MigrationDriver(controller, interval=0.0)
        await driver.start()
        for _ in range(200):
            if controller.status().complete:
                break
            await asyncio.sleep(0.01)
        await driver.stop()

        assert controller.status().status == "finished"
        assert driver.get_status()["running"] is False
        assert driver.get_status()["batches_run"] == 3

    @pytest.mark.asyncio
    async def test_start_twice(self):
        driver = MigrationDriver(_controller("ready"), interval=0.5)
        await driver.start()
        first_task = driver._task
        await driver.start()
        assert driver._task is first_task
        await driver.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        driver = MigrationDriver(_controller(), interval=0.5)
        await driver.stop()
        assert driver.get_status()["running"] is False


class TestConfiguration:

    def test_disabled_by_default(self):
        assert MigrationDriver.is_enabled() is False

    def test_enabled_from_env(self, monkeypatch):
        import config
        monkeypatch.setenv("MIGRATION_DRIVER_ENABLED", "true")
        config.reload_config()
        assert MigrationDriver.is_enabled() is True

    def test_interval_from_config(self, monkeypatch):
        import config
        monkeypatch.setenv("MIGRATION_DRIVER_INTERVAL_SECONDS", "7.5")
        config.reload_config()
        assert MigrationDriver(_controller()).interval == 7.5

    def test_singleton(self):
        assert get_migration_driver() is get_migration_driver()
