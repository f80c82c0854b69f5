"""Persistent section identity registry.

Maps a structural section key to a durable uuid:

    {
      "network:interface:lan": "5b0c2f3e-...",
      "firewall:defaults:line1": "0d9a41c7-..."
    }

Precedence in get_or_assign():
    1. a uuid embedded in the file wins and overwrites the mapping
    2. an existing mapping is reused
    3. otherwise a fresh uuid is minted

The document is rewritten (tmp + rename, under flock) after every change.
Entries are never removed.
"""

from __future__ import annotations

import fcntl
import json
import logging
import threading
from pathlib import Path

from ucibus.errors import StorageError
from ucibus.models import new_section_uuid

logger = logging.getLogger("ucibus.registry")


class IdentityRegistry:
    """section_key -> uuid mapping backed by a JSON file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._mapping: dict[str, str] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._mapping)

    def __contains__(self, key: object) -> bool:
        return key in self._mapping

    def get(self, section_key: str) -> str | None:
        return self._mapping.get(section_key)

    def as_dict(self) -> dict[str, str]:
        return dict(self._mapping)

    # ------------------------------------------------------------------
    # Lookup / assignment
    # ------------------------------------------------------------------

    def get_or_assign(self, section_key: str, file_uuid: str | None = None) -> str:
        """Resolve the uuid for section_key, persisting any change."""
        with self._lock:
            return self._get_or_assign(section_key, file_uuid)

    def _get_or_assign(self, section_key: str, file_uuid: str | None) -> str:
        if file_uuid:
            if self._mapping.get(section_key) != file_uuid:
                self._mapping[section_key] = file_uuid
                self.save()
            return file_uuid

        existing = self._mapping.get(section_key)
        if existing is not None:
            return existing

        new_uuid = new_section_uuid()
        self._mapping[section_key] = new_uuid
        logger.debug("assigned %s to %s", new_uuid, section_key)
        self.save()
        return new_uuid

    def assign(self, section_key: str, section_uuid: str) -> None:
        """Record an externally minted uuid (command-created sections)."""
        with self._lock:
            if self._mapping.get(section_key) == section_uuid:
                return
            self._mapping[section_key] = section_uuid
            self.save()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Read the mapping. A missing or unreadable file starts empty."""
        if not self.path.exists():
            logger.info("no identity registry at %s, starting empty", self.path)
            self._mapping = {}
            return
        try:
            with self.path.open() as f:
                fcntl.flock(f, fcntl.LOCK_SH)
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            logger.warning("identity registry %s unreadable, starting empty", self.path, exc_info=True)
            self._mapping = {}
            return
        if not isinstance(data, dict):
            logger.warning("identity registry %s is not an object, starting empty", self.path)
            self._mapping = {}
            return
        self._mapping = {str(k): str(v) for k, v in data.items()}
        logger.info("loaded %d identity mappings", len(self._mapping))

    def save(self) -> None:
        """Atomically rewrite the mapping under exclusive flock."""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tmp.open("w") as f:
                    fcntl.flock(f, fcntl.LOCK_EX)
                    json.dump(self._mapping, f, indent=2)
                tmp.replace(self.path)
        except OSError as exc:
            msg = f"failed to save identity registry {self.path}: {exc}"
            raise StorageError(msg, path=str(self.path)) from exc
        logger.debug("saved %d identity mappings", len(self._mapping))
