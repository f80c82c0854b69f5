"""Synchronization engine: config directory <-> memory <-> bus.

Owns the in-memory store (file name -> ConfigFile) and the identity
registry. Nothing else writes either of them.

Bus addresses:
    config/{file}/{sectionType}/{uuid}     retained section state
    system/status                          retained lifecycle/status events
    commands/edit|reload|validate          inbound commands
    commands/response/{requestId}          acknowledgements

Every structural change to a file (initial load, watch reload, reload
command, create/update/delete) runs under that file's asyncio.Lock.
Edits are staged on a copy of the section set and committed to memory only
after the new text has replaced the file on disk:

    stage copy -> serialize -> backup old file -> write tmp + rename
        -> refresh mtime -> commit in memory -> publish -> acknowledge

A failed write therefore leaves memory and disk in agreement.

File-delete events only drop the in-memory entry; sections already
published from that file keep their retained messages.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ucibus import codec
from ucibus.errors import (
    CommandError,
    NotFoundError,
    StorageError,
    TransportUnavailable,
    UciBusError,
)
from ucibus.models import ConfigFile, Section, check_identifier, new_section_uuid, section_key
from ucibus.registry import IdentityRegistry

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ucibus.bus import Bus, Message
    from ucibus.codec import ValidationResult

logger = logging.getLogger("ucibus.engine")

STATUS_TOPIC = "system/status"
EDIT_ACTIONS = ("create", "update", "delete")


def section_topic(file_name: str, section_type: str, section_uuid: str) -> str:
    return f"config/{file_name}/{section_type}/{section_uuid}"


def response_topic(request_id: str) -> str:
    return f"commands/response/{request_id}"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _check_file_name(name: Any) -> str:
    """Reject names that could escape the config directory or break topics."""
    if not isinstance(name, str) or not name:
        msg = "fileName is required"
        raise CommandError(msg)
    if name.startswith(".") or any(c in name for c in "/\\+#\0"):
        msg = f"invalid fileName {name!r}"
        raise CommandError(msg)
    return name


# ---------------------------------------------------------------------------
# Blocking file helpers (run via asyncio.to_thread)
# ---------------------------------------------------------------------------

def _read_text(path: Path) -> tuple[str, datetime]:
    content = path.read_text(encoding="utf-8")
    mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
    return content, mtime


def _backup_path(backup_dir: Path, name: str) -> Path:
    stamp = time.time_ns() // 1_000_000
    candidate = backup_dir / f"{name}.{stamp}.backup"
    while candidate.exists():
        stamp += 1
        candidate = backup_dir / f"{name}.{stamp}.backup"
    return candidate


def _replace_file(path: Path, backup_dir: Path, text: str) -> datetime:
    """Back up path (if present), then atomically replace it with text."""
    if path.exists():
        backup_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, _backup_path(backup_dir, path.name))
    # hidden tmp name: ignored by the directory scan and the watcher
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)
    return datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)


def _scan(config_dir: Path) -> list[str]:
    return sorted(
        p.name for p in config_dir.iterdir()
        if p.is_file() and not p.name.startswith(".")
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class SyncEngine:
    """Keeps the config directory, the in-memory store and the bus in step."""

    def __init__(
        self,
        config_dir: Path | str,
        backup_dir: Path | str,
        registry_path: Path | str,
        bus: Bus | None = None,
        *,
        write_uuids: bool = True,
        wrap_metadata: bool = True,
        debounce: float = 0.1,
    ) -> None:
        self.config_dir = Path(config_dir)
        self.backup_dir = Path(backup_dir)
        self.registry = IdentityRegistry(registry_path)
        self.bus = bus
        self.write_uuids = write_uuids
        self.wrap_metadata = wrap_metadata
        self.debounce = debounce
        self.files: dict[str, ConfigFile] = {}
        self.initialized = False
        self._locks: dict[str, asyncio.Lock] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _path(self, name: str) -> Path:
        return self.config_dir / name

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_file(self, name: str) -> ConfigFile:
        cf = self.files.get(name)
        if cf is None:
            msg = f"config file {name} not found"
            raise NotFoundError(msg, file_name=name)
        return cf

    def get_section(self, name: str, section_uuid: str) -> Section:
        section = self.get_file(name).get(section_uuid)
        if section is None:
            msg = f"section {section_uuid} not found in {name}"
            raise NotFoundError(msg, file_name=name, uuid=section_uuid)
        return section

    def status(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "filesLoaded": len(self.files),
            "totalSections": sum(len(cf) for cf in self.files.values()),
            "uuidMappings": len(self.registry),
            "writeUuidsToFiles": self.write_uuids,
        }

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create directories, load the registry and every config file."""
        logger.info("initializing from %s", self.config_dir)
        try:
            await asyncio.to_thread(self.config_dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(self.backup_dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(self.registry.load)
            names = await asyncio.to_thread(_scan, self.config_dir)
        except OSError as exc:
            msg = f"cannot prepare config directory {self.config_dir}: {exc}"
            raise StorageError(msg, path=str(self.config_dir)) from exc

        for name in names:
            try:
                await self.load_file(name)
            except UciBusError:
                # one bad file must not keep the rest from loading
                logger.exception("failed to load %s", name)

        await asyncio.to_thread(self.registry.save)
        self.initialized = True
        logger.info("loaded %d files, %d identity mappings", len(self.files), len(self.registry))

    async def shutdown(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await asyncio.to_thread(self.registry.save)
        logger.info("engine shut down")

    # ------------------------------------------------------------------
    # Load / persist
    # ------------------------------------------------------------------

    async def load_file(self, name: str) -> ConfigFile:
        async with self._lock(name):
            return await self._load_file(name)

    async def _load_file(self, name: str) -> ConfigFile:
        path = self._path(name)
        try:
            content, mtime = await asyncio.to_thread(_read_text, path)
        except FileNotFoundError as exc:
            msg = f"config file {name} not found"
            raise NotFoundError(msg, file_name=name) from exc
        except (OSError, UnicodeDecodeError) as exc:
            msg = f"cannot read {path}: {exc}"
            raise StorageError(msg, path=str(path)) from exc

        parsed = codec.parse(content)

        sections: dict[str, Section] = {}
        dirty = False
        for section in parsed:
            key = section_key(name, section.section_type, section.section_name, section.line_number)
            section.section_key = key
            if not section.uuid:
                dirty = True
            resolved = await asyncio.to_thread(self.registry.get_or_assign, key, section.uuid)
            if resolved in sections:
                # duplicated embedded uuid (copy-pasted section): re-identify the later one
                logger.warning("%s: duplicate uuid %s at line %s, assigning a new one", name, resolved, section.line_number)
                resolved = new_section_uuid()
                await asyncio.to_thread(self.registry.assign, key, resolved)
                dirty = True
            section.uuid = resolved
            sections[resolved] = section

        if dirty and self.write_uuids:
            try:
                content, mtime = await self._persist(name, sections.values())
                logger.info("wrote uuids back to %s", name)
            except StorageError:
                # identities are already in the registry, so they stay stable without the write-back
                logger.warning("could not write uuids back to %s", name, exc_info=True)

        cf = ConfigFile(name=name, sections=sections, content=content, last_modified=mtime)
        self.files[name] = cf
        logger.info("loaded %s (%d sections)", name, len(cf))
        return cf

    async def _persist(self, name: str, sections: Iterable[Section]) -> tuple[str, datetime]:
        """Serialize sections, back up the current file and replace it."""
        text = codec.serialize(sections)
        path = self._path(name)
        try:
            mtime = await asyncio.to_thread(_replace_file, path, self.backup_dir, text)
        except OSError as exc:
            msg = f"failed to write {name}: {exc}"
            raise StorageError(msg, path=str(path)) from exc
        logger.debug("saved %s", name)
        return text, mtime

    async def _commit(self, cf: ConfigFile, staged: dict[str, Section]) -> None:
        content, mtime = await self._persist(cf.name, staged.values())
        cf.sections = staged
        cf.content = content
        cf.last_modified = mtime

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def _require_bus(self) -> Bus:
        if self.bus is None or not self.bus.connected:
            msg = "bus not connected"
            raise TransportUnavailable(msg)
        return self.bus

    async def publish_section(self, cf: ConfigFile, section: Section) -> None:
        bus = self._require_bus()
        assert section.uuid is not None
        topic = section_topic(cf.name, section.section_type, section.uuid)
        await bus.publish(topic, section.to_payload(cf.name, cf.last_modified, wrap=self.wrap_metadata), retain=True)
        logger.debug("published %s", topic)

    async def publish_file(self, name: str) -> int:
        """Publish every section of a file, then a status message."""
        cf = self.get_file(name)
        sections = list(cf.sections.values())
        for section in sections:
            await self.publish_section(cf, section)
        await self.publish_status(name, "loaded", f"{name} loaded with {len(sections)} sections")
        logger.info("published %d sections from %s", len(sections), name)
        return len(sections)

    async def publish_status(self, name: str | None, status: str, message: str, **extra: Any) -> None:
        bus = self._require_bus()
        cf = self.files.get(name) if name else None
        payload = {
            "fileName": name,
            "status": status,
            "message": message,
            "timestamp": _now_iso(),
            "totalSections": len(cf) if cf is not None else 0,
            **extra,
        }
        await bus.publish(STATUS_TOPIC, payload, retain=True)

    async def publish_all(self) -> None:
        for name in list(self.files):
            try:
                await self.publish_file(name)
            except NotFoundError:
                logger.warning("%s vanished before it could be published", name)

    # ------------------------------------------------------------------
    # Watch events
    # ------------------------------------------------------------------

    def notify_changed(self, name: str) -> None:
        """A file was written or created: (re)arm its debounce timer."""
        if name.startswith("."):
            return
        loop = asyncio.get_running_loop()
        handle = self._timers.pop(name, None)
        if handle is not None:
            handle.cancel()
        self._timers[name] = loop.call_later(self.debounce, self._fire_reload, name)

    def notify_removed(self, name: str) -> None:
        """A file was deleted: drop it from memory. Published state is left as is."""
        handle = self._timers.pop(name, None)
        if handle is not None:
            handle.cancel()
        if self.files.pop(name, None) is not None:
            logger.info("config file removed: %s", name)

    def _fire_reload(self, name: str) -> None:
        self._timers.pop(name, None)
        task = asyncio.create_task(self._watch_reload(name), name=f"reload:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _watch_reload(self, name: str) -> None:
        try:
            async with self._lock(name):
                cf = self.files.get(name)
                if cf is not None:
                    try:
                        current, _ = await asyncio.to_thread(_read_text, self._path(name))
                    except FileNotFoundError:
                        return
                    if current == cf.content:
                        # our own write, or a touch without changes
                        logger.debug("%s unchanged, skipping reload", name)
                        return
                logger.info("config file changed: %s", name)
                await self._load_file(name)
                if self.bus is not None and self.bus.connected:
                    await self.publish_file(name)
        except NotFoundError:
            logger.debug("%s disappeared before reload", name)
        except Exception:
            logger.exception("failed to reload changed file %s", name)

    async def wait_idle(self) -> None:
        """Wait for pending debounce timers and reloads (used by tests and shutdown)."""
        while self._timers or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(self.debounce / 2 or 0.01)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_section(self, name: str, section_type: str, values: dict[str, Any]) -> Section:
        async with self._lock(name):
            cf = self.get_file(name)
            try:
                check_identifier("section type", section_type)
            except ValueError as exc:
                raise CommandError(str(exc)) from exc
            section_uuid = new_section_uuid()
            # keyed on creation time, not content
            key = section_key(name, section_type, None, time.time_ns() // 1_000_000)
            section = Section(section_type=section_type, uuid=section_uuid, section_key=key)
            try:
                section.merge(values)
            except (TypeError, ValueError) as exc:
                raise CommandError(str(exc)) from exc

            staged = cf.staged()
            staged[section_uuid] = section
            await self._commit(cf, staged)
            await asyncio.to_thread(self.registry.assign, key, section_uuid)

            if self.bus is not None:
                await self.publish_section(cf, section)
                await self.publish_status(name, "section_created", f"section {section_uuid} created")
        logger.info("created section %s in %s", section_uuid, name)
        return section

    async def update_section(self, name: str, section_uuid: str, values: dict[str, Any]) -> Section:
        async with self._lock(name):
            cf = self.get_file(name)
            if section_uuid not in cf.sections:
                msg = f"section {section_uuid} not found in {name}"
                raise NotFoundError(msg, file_name=name, uuid=section_uuid)

            staged = cf.staged()
            section = staged[section_uuid]
            try:
                section.merge(values)
            except (TypeError, ValueError) as exc:
                raise CommandError(str(exc)) from exc
            await self._commit(cf, staged)

            if self.bus is not None:
                await self.publish_section(cf, section)
                await self.publish_status(name, "section_updated", f"section {section_uuid} updated")
        logger.info("updated section %s in %s", section_uuid, name)
        return section

    async def delete_section(self, name: str, section_uuid: str) -> Section:
        async with self._lock(name):
            cf = self.get_file(name)
            if section_uuid not in cf.sections:
                msg = f"section {section_uuid} not found in {name}"
                raise NotFoundError(msg, file_name=name, uuid=section_uuid)

            staged = cf.staged()
            removed = staged.pop(section_uuid)
            await self._commit(cf, staged)

            if self.bus is not None:
                bus = self._require_bus()
                await bus.publish(section_topic(name, removed.section_type, section_uuid), b"", retain=True)
                await self.publish_status(name, "section_deleted", f"section {section_uuid} deleted")
        logger.info("deleted section %s from %s", section_uuid, name)
        return removed

    async def reload_file(self, name: str) -> ConfigFile:
        async with self._lock(name):
            cf = await self._load_file(name)
            if self.bus is not None:
                await self.publish_file(name)
        return cf

    def validate(self, content: str) -> ValidationResult:
        return codec.validate(content)

    # ------------------------------------------------------------------
    # Command handling
    # ------------------------------------------------------------------

    async def handle_message(self, message: Message) -> None:
        """Route a commands/{edit,reload,validate} message."""
        command = message.topic.rsplit("/", 1)[-1]
        try:
            payload = message.json()
        except ValueError:
            logger.warning("ignoring non-JSON command on %s", message.topic)
            return
        if not isinstance(payload, dict):
            logger.warning("ignoring non-object command on %s", message.topic)
            return

        if command == "edit":
            await self.handle_edit(payload)
        elif command == "reload":
            await self.handle_reload(payload)
        elif command == "validate":
            await self.handle_validate(payload)
        else:
            logger.warning("unknown command %s", command)

    async def _respond(self, request_id: str | None, status: str, message: str, data: dict[str, Any], **extra: Any) -> dict[str, Any]:
        response = {
            "requestId": request_id,
            "status": status,
            "message": message,
            "data": data,
            "timestamp": _now_iso(),
            **extra,
        }
        if request_id:
            await self._require_bus().publish(response_topic(request_id), response)
        return response

    async def handle_edit(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Run a create/update/delete command and acknowledge it."""
        action = payload.get("action")
        request_id = payload.get("requestId")
        file_name = payload.get("fileName")
        section_name = payload.get("sectionName")
        section_uuid = payload.get("uuid")
        values = payload.get("values")
        data = {"fileName": file_name, "sectionName": section_name, "uuid": section_uuid}
        logger.info("%s command for %s/%s%s (request %s)", action, file_name, section_name,
                    f"/{section_uuid}" if section_uuid else "", request_id)

        try:
            if not request_id or not isinstance(request_id, str):
                msg = "requestId is required"
                raise CommandError(msg)
            if action not in EDIT_ACTIONS:
                msg = f"unknown edit action: {action}"
                raise CommandError(msg)
            name = _check_file_name(file_name)
            if action in ("create", "update") and not isinstance(values, dict):
                msg = f"values must be an object for {action}"
                raise CommandError(msg)
            if action in ("update", "delete") and not section_uuid:
                msg = f"uuid is required for {action}"
                raise CommandError(msg)

            if action == "create":
                if not section_name or not isinstance(section_name, str):
                    msg = "sectionName is required for create"
                    raise CommandError(msg)
                section = await self.create_section(name, section_name, values)
                data["uuid"] = section.uuid
                return await self._respond(request_id, "success", "Section created successfully", data)
            if action == "update":
                await self.update_section(name, section_uuid, values)
                return await self._respond(request_id, "success", "Section updated successfully", data)
            await self.delete_section(name, section_uuid)
            return await self._respond(request_id, "success", "Section deleted successfully", data)

        except UciBusError as exc:
            if isinstance(exc, TransportUnavailable):
                raise
            logger.warning("%s command failed: %s", action, exc)
            if not request_id:
                await self.publish_status(file_name if isinstance(file_name, str) else None, "error", str(exc))
            return await self._respond(request_id, "error", str(exc), data, error=type(exc).__name__)
        except Exception:
            logger.exception("%s command crashed", action)
            return await self._respond(request_id, "error", "internal error", data, error="InternalError")

    async def handle_reload(self, payload: dict[str, Any]) -> dict[str, Any]:
        request_id = payload.get("requestId")
        file_name = payload.get("fileName")
        data = {"fileName": file_name}
        try:
            name = _check_file_name(file_name)
            cf = await self.reload_file(name)
        except UciBusError as exc:
            if isinstance(exc, TransportUnavailable):
                raise
            logger.warning("reload of %s failed: %s", file_name, exc)
            await self.publish_status(file_name if isinstance(file_name, str) else None, "error",
                                      f"Failed to reload {file_name}: {exc}")
            return await self._respond(request_id, "error", str(exc), data, error=type(exc).__name__)
        await self.publish_status(name, "reloaded", f"File {name} reloaded successfully")
        return await self._respond(request_id, "success", f"File {name} reloaded", {**data, "sections": len(cf)})

    async def handle_validate(self, payload: dict[str, Any]) -> dict[str, Any]:
        request_id = payload.get("requestId")
        file_name = payload.get("fileName")
        if not isinstance(file_name, str):
            file_name = None
        content = payload.get("content") or ""
        if not isinstance(content, str):
            content = ""
        result = self.validate(content)
        data = {"fileName": file_name, "valid": result.valid, "sections": result.sections, "errors": result.errors}
        if result.valid:
            await self.publish_status(file_name, "valid", f"syntax is valid ({result.sections} sections)")
            return await self._respond(request_id, "success", "syntax is valid", data)
        await self.publish_status(file_name, "invalid", f"syntax error: {result.errors[0]}")
        return await self._respond(request_id, "error", result.errors[0], data, error="ParseError")
