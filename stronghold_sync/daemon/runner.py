"""Daemon runner: keeps one owner's documents synced until stopped."""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from stronghold_sync import config, types
from stronghold_sync.engine import SyncEngine
from stronghold_sync.logging import attach_file_handler, detach_handler

logger = logging.getLogger(__name__)

EngineFactory = Callable[[config.Settings, Path], SyncEngine]


class DaemonRunner:
    """Run a full sync at start, then let the engine's timer take over.

    SIGINT and SIGTERM stop the daemon; SIGHUP asks for an immediate full sync.
    """

    def __init__(
        self,
        *,
        config_dir: Optional[str] = None,
        engine_factory: Optional[EngineFactory] = None,
    ):
        self._config_dir = Path(config_dir).expanduser() if config_dir else None
        self._base_dir = config.ensure_config_structure(self._config_dir)
        self._engine_factory = engine_factory
        self._stop: Optional[asyncio.Event] = None
        self._pending: set[asyncio.Task] = set()

    def run_forever(self, *, run_once: bool = False) -> Optional[types.SyncSummary]:
        return asyncio.run(self.run(run_once=run_once))

    async def run(self, *, run_once: bool = False, install_signals: bool = True) -> Optional[types.SyncSummary]:
        """Returns the summary of the initial sync when ``run_once`` is set."""
        settings = config.load_settings(self._base_dir)
        owner_id = settings.require_owner()
        engine = self._build_engine(settings)
        self._stop = asyncio.Event()

        with self._owner_logger(owner_id):
            await engine.initialize(owner_id)
            try:
                logger.info("Running initial sync for %s.", owner_id)
                summary = await engine.perform_full_sync(owner_id)
                if run_once:
                    return summary
                if install_signals:
                    self._install_signal_handlers(engine, owner_id)
                await self._stop.wait()
                return None
            finally:
                if install_signals and not run_once:
                    self._remove_signal_handlers()
                await engine.cleanup()
                logger.info("Daemon stopped for %s.", owner_id)

    def request_stop(self) -> None:
        logger.info("Shutting down daemon.")
        if self._stop is not None:
            self._stop.set()

    def request_sync(self, engine: SyncEngine, owner_id: str) -> None:
        logger.info("Received SIGHUP; running a full sync now.")
        task = asyncio.get_running_loop().create_task(self._sync_now(engine, owner_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _sync_now(self, engine: SyncEngine, owner_id: str) -> None:
        try:
            await engine.perform_full_sync(owner_id)
        except Exception as exc:
            logger.error("On-demand sync failed: %s", exc)

    def _build_engine(self, settings: config.Settings) -> SyncEngine:
        if self._engine_factory is not None:
            return self._engine_factory(settings, self._base_dir)
        from stronghold_sync.cli import build_engine

        return build_engine(settings, self._base_dir)

    def _install_signal_handlers(self, engine: SyncEngine, owner_id: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.request_stop)
            loop.add_signal_handler(signal.SIGTERM, self.request_stop)
            if hasattr(signal, "SIGHUP"):
                loop.add_signal_handler(signal.SIGHUP, self.request_sync, engine, owner_id)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            logger.debug("Signal handlers are not supported on this platform.")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for name in ("SIGINT", "SIGTERM", "SIGHUP"):
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                loop.remove_signal_handler(signum)
            except NotImplementedError:  # pragma: no cover - Windows event loops
                return

    @contextmanager
    def _owner_logger(self, owner_id: str) -> Iterator[Path]:
        safe_name = owner_id.replace("/", "_")
        file_path = self._base_dir / "logs" / f"{safe_name}.log"
        handler = attach_file_handler(file_path)
        try:
            yield file_path
        finally:
            detach_handler(handler)


__all__ = ["DaemonRunner"]
