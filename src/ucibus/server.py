"""ucibus server: config directory <-> bus, plus the command loop.

    python -m ucibus.server CONFIG_ROOT

Startup order:
    1. connect the bus
    2. engine.initialize()   (registry + every file in config_dir)
    3. subscribe commands/+  (edit, reload, validate; one task per command)
    4. publish every section, then system/startup
    5. start the directory watcher

SIGINT/SIGTERM stop the server; SIGHUP reloads and republishes every file.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ucibus.bus import LocalBus
from ucibus.config import load_config
from ucibus.engine import SyncEngine
from ucibus.errors import UciBusError
from ucibus.watcher import DirectoryWatcher

if TYPE_CHECKING:
    from ucibus.bus import Message, Subscription
    from ucibus.config import UciBusConfig

logger = logging.getLogger("ucibus.server")

COMMAND_PATTERN = "commands/+"
STARTUP_TOPIC = "system/startup"


class UciBusServer:
    def __init__(self, cfg: UciBusConfig, bus: LocalBus | None = None) -> None:
        self.cfg = cfg
        self.bus = bus if bus is not None else LocalBus(acl=cfg.access_control())
        self.engine = SyncEngine(
            cfg.config_dir,
            cfg.backup_dir,
            cfg.registry_path,
            self.bus,
            write_uuids=cfg.write_uuids,
            wrap_metadata=cfg.wrap_metadata,
            debounce=cfg.debounce,
        )
        self.watcher: DirectoryWatcher | None = None
        self._commands: Subscription | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._stop = asyncio.Event()

    async def start(self) -> None:
        if not self.bus.connected:
            await self.bus.connect()
        await self.engine.initialize()
        self._commands = await self.bus.subscribe(COMMAND_PATTERN, self._dispatch)
        await self.engine.publish_all()
        await self.bus.publish(STARTUP_TOPIC, self._startup_message(), retain=True)

        if self.cfg.watch:
            self.watcher = DirectoryWatcher(
                self.cfg.config_dir,
                asyncio.get_running_loop(),
                self.engine.notify_changed,
                self.engine.notify_removed,
            )
            self.watcher.start()
        logger.info("server started: %s", self.engine.status())

    async def _dispatch(self, message: Message) -> None:
        # one task per command; the engine serializes work per file
        task = asyncio.create_task(self._run_command(message), name=f"cmd:{message.topic}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_command(self, message: Message) -> None:
        try:
            await self.engine.handle_message(message)
        except Exception:
            logger.exception("command on %s failed", message.topic)

    def _startup_message(self) -> dict[str, Any]:
        return {
            "event": "server_startup",
            "timestamp": datetime.now(UTC).isoformat(),
            **self.engine.status(),
        }

    async def reload_all(self) -> None:
        for name in list(self.engine.files):
            try:
                await self.engine.reload_file(name)
            except UciBusError:
                logger.exception("reload of %s failed", name)

    async def stop(self) -> None:
        if self.watcher is not None:
            await asyncio.to_thread(self.watcher.stop)
            self.watcher = None
        if self._commands is not None:
            await self.bus.unsubscribe(self._commands)
            self._commands = None
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        await self.engine.shutdown()
        await self.bus.close()
        logger.info("server stopped")

    def request_stop(self) -> None:
        self._stop.set()

    async def serve_forever(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)
        if hasattr(signal, "SIGHUP"):
            loop.add_signal_handler(signal.SIGHUP, lambda: asyncio.ensure_future(self.reload_all()))

        await self.start()
        try:
            await self._stop.wait()
        finally:
            await self.stop()


def run(cfg: UciBusConfig) -> None:
    logging.basicConfig(level=cfg.log.level, format="%(asctime)s %(name)s %(message)s")
    cfg.ensure_dirs()
    asyncio.run(UciBusServer(cfg).serve_forever())


def run_from_config(config_root: Path | None = None) -> None:
    """Load ucibus.toml and run the server until interrupted."""
    run(load_config(config_root))


if __name__ == "__main__":
    # Accept optional config root as argument
    root = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    run_from_config(root)
