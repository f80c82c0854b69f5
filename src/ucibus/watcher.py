"""Config directory watcher: inotify with a polling fallback.

Runs in a daemon thread and hands every event to the asyncio loop with
call_soon_threadsafe:

    IN_CLOSE_WRITE / IN_MOVED_TO / IN_CREATE   -> on_changed(name)
    IN_DELETE / IN_MOVED_FROM                  -> on_removed(name)

Hidden files (including the engine's own `.name.tmp` staging files) are
ignored. Debouncing is the engine's job; the watcher reports every event.

Falls back to mtime polling if inotify_simple is unavailable (macOS, some
container filesystems).
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable

logger = logging.getLogger("ucibus.watcher")

_INOTIFY_TIMEOUT_MS = 500
_POLL_INTERVAL = 1.0


def _visible(name: str) -> bool:
    return bool(name) and not name.startswith(".")


# ---------------------------------------------------------------------------
# Polling helpers
# ---------------------------------------------------------------------------

def snapshot(directory: Path) -> dict[str, float]:
    """mtime of every visible regular file in directory."""
    out: dict[str, float] = {}
    try:
        entries = list(directory.iterdir())
    except OSError:
        return out
    for p in entries:
        if not _visible(p.name):
            continue
        try:
            if p.is_file():
                out[p.name] = p.stat().st_mtime
        except OSError:
            continue
    return out


def diff_snapshots(old: dict[str, float], new: dict[str, float]) -> tuple[list[str], list[str]]:
    """Return (changed_or_added, removed) file names between two snapshots."""
    changed = sorted(name for name, mtime in new.items() if old.get(name) != mtime)
    removed = sorted(name for name in old if name not in new)
    return changed, removed


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------

class DirectoryWatcher:
    """Watch one directory and forward events to loop callbacks."""

    def __init__(
        self,
        directory: Path | str,
        loop: asyncio.AbstractEventLoop,
        on_changed: Callable[[str], None],
        on_removed: Callable[[str], None],
        *,
        poll_interval: float = _POLL_INTERVAL,
        force_polling: bool = False,
    ) -> None:
        self.directory = Path(directory)
        self.loop = loop
        self.on_changed = on_changed
        self.on_removed = on_removed
        self.poll_interval = poll_interval
        self.force_polling = force_polling
        self.mode: str | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="ucibus-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout)
        self._thread = None

    def _emit_changed(self, name: str) -> None:
        if _visible(name):
            self.loop.call_soon_threadsafe(self.on_changed, name)

    def _emit_removed(self, name: str) -> None:
        if _visible(name):
            self.loop.call_soon_threadsafe(self.on_removed, name)

    def _run(self) -> None:
        try:
            if self.force_polling:
                self.watch_poll()
            else:
                try:
                    self.watch_inotify()
                except ImportError:
                    logger.warning("inotify_simple not available, falling back to polling")
                    self.watch_poll()
        except Exception:
            logger.exception("watcher for %s stopped", self.directory)

    def watch_inotify(self) -> None:
        """Watch using inotify_simple (Linux). Blocks until stop()."""
        import inotify_simple  # type: ignore[import]

        inotify = inotify_simple.INotify()
        flags = inotify_simple.flags  # type: ignore[attr-defined]
        mask = flags.CLOSE_WRITE | flags.MOVED_TO | flags.CREATE | flags.DELETE | flags.MOVED_FROM
        inotify.add_watch(str(self.directory), mask)
        self.mode = "inotify"
        logger.info("inotify watching %s", self.directory)

        try:
            while not self._stop.is_set():
                for event in inotify.read(timeout=_INOTIFY_TIMEOUT_MS):
                    name = event.name
                    if event.mask & flags.ISDIR:
                        continue
                    if event.mask & (flags.DELETE | flags.MOVED_FROM):
                        self._emit_removed(name)
                    else:
                        self._emit_changed(name)
        finally:
            inotify.close()

    def watch_poll(self) -> None:
        """Polling fallback: compare mtimes every poll_interval seconds."""
        seen = snapshot(self.directory)
        self.mode = "poll"
        logger.info("polling %s interval=%.1fs", self.directory, self.poll_interval)
        while not self._stop.wait(self.poll_interval):
            current = snapshot(self.directory)
            changed, removed = diff_snapshots(seen, current)
            for name in changed:
                self._emit_changed(name)
            for name in removed:
                self._emit_removed(name)
            seen = current
