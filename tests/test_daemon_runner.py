"""Tests for the daemon runner."""

from __future__ import annotations

import asyncio
import io
import logging
import tempfile
import unittest
from pathlib import Path

from stronghold_sync import config, events, types
from stronghold_sync.daemon.runner import DaemonRunner
from stronghold_sync.engine import SyncEngine, state_store
from stronghold_sync.engine.local_store import JsonFileLocalStore, MemoryLocalStore
from stronghold_sync.engine.network import ManualNetworkMonitor
from stronghold_sync.engine.remote import InMemoryRemoteStore
from stronghold_sync.logging import configure_logging


class StaticDeviceInfo:
    def display_name(self) -> str:
        return "Daemon host"

    def device_class(self) -> types.DeviceClass:
        return types.DeviceClass.DESKTOP

    def platform(self) -> str:
        return "test"


def _write_settings(base: Path, owner_id: str = "owner-1") -> None:
    settings = config.Settings(sync=config.SyncBlock(owner_id=owner_id, interval_seconds=3600))
    config.save_settings(settings, base)


class TestDaemonRunOnce(unittest.TestCase):
    def setUp(self) -> None:
        configure_logging(stream=io.StringIO())

    def tearDown(self) -> None:
        logging.getLogger().handlers.clear()

    def test_requires_configured_owner(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = DaemonRunner(config_dir=tmpdir)
            with self.assertRaises(config.ConfigError):
                runner.run_forever(run_once=True)

    def test_run_once_syncs_and_writes_owner_log(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            base = Path(tmpdir)
            _write_settings(base)
            state_store.DocumentCache(JsonFileLocalStore(base / "store")).put(
                types.SyncableDocument(id="w1", owner_id="owner-1", kind="will", title="Will", content="A")
            )
            summary = DaemonRunner(config_dir=tmpdir).run_forever(run_once=True)

            self.assertEqual((summary.documents_count, summary.synced, summary.failed), (1, 1, 0))
            self.assertTrue((base / "remote" / "documents" / "w1.json").exists())
            log_text = (base / "logs" / "owner-1.log").read_text()
        self.assertIn("Running initial sync for owner-1", log_text)
        self.assertIn("Daemon stopped for owner-1", log_text)


class TestDaemonLifecycle(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        _write_settings(self.base)
        self.remote = InMemoryRemoteStore()
        self.engine = None

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    def _factory(self, settings: config.Settings, base: Path) -> SyncEngine:
        self.engine = SyncEngine(
            MemoryLocalStore(),
            self.remote,
            network=ManualNetworkMonitor(),
            device_info=StaticDeviceInfo(),
            sync_interval=settings.sync.interval_seconds,
        )
        self.completed = []
        self.engine.on(events.SyncEvent.SYNC_COMPLETED, self.completed.append)
        return self.engine

    async def _wait_for(self, predicate) -> None:
        for _ in range(200):
            if predicate():
                return
            await asyncio.sleep(0.005)
        self.fail("condition not reached in time")

    async def test_request_stop_shuts_down_cleanly(self):
        runner = DaemonRunner(config_dir=self._tmp.name, engine_factory=self._factory)
        task = asyncio.create_task(runner.run(install_signals=False))
        await self._wait_for(lambda: self.engine is not None and len(self.completed) == 1)
        self.assertFalse(task.done())

        runner.request_stop()
        self.assertIsNone(await task)
        self.assertFalse(self.engine.initialized)
        self.assertTrue(self.remote.devices)

    async def test_request_sync_runs_another_pass(self):
        runner = DaemonRunner(config_dir=self._tmp.name, engine_factory=self._factory)
        task = asyncio.create_task(runner.run(install_signals=False))
        await self._wait_for(lambda: self.engine is not None and len(self.completed) == 1)

        self.engine.edit_document("w2", "owner-1", content="late edit")
        runner.request_sync(self.engine, "owner-1")
        await self._wait_for(lambda: len(self.completed) == 2)
        self.assertIn("w2", self.remote.documents)

        runner.request_stop()
        await task


if __name__ == "__main__":
    unittest.main()
