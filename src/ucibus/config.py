"""UciBusConfig: project-local settings for a ucibus server.

Default layout (all relative to the directory holding ucibus.toml):

    ucibus.toml                 # settings
    .env                        # optional UCIBUS_* overrides (the process env wins)
    uci/                        # configuration files, one per domain
        network
        firewall
    uci_backup/                 # <file>.<epoch-ms>.backup, never pruned
    uci_uuid_mapping.json       # section key -> uuid

ucibus.toml example:

    [ucibus]
    config_dir = "uci"
    backup_dir = "uci_backup"
    registry_file = "uci_uuid_mapping.json"
    watch = true
    write_uuids = true          # embed generated uuids into the files
    wrap_metadata = true        # publish {uuid, sectionType, ..., values}
    debounce_ms = 100

    [log]
    level = "INFO"

    [users.client]
    roles = ["client"]
    allow_all = false

    [[acl]]
    role = "client"
    allow = [{ topic = "config/+/+/+", actions = ["subscribe"] }]
    deny = [{ topic = "system/startup", actions = ["publish"] }]

Without [users] / [[acl]] the built-in defaults from ucibus.acl apply.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ucibus.acl import AccessControl, load_acl

_CONFIG_FILENAME = "ucibus.toml"
_ENV_PREFIX = "UCIBUS_"
_DEFAULT_CONFIG_DIR = "uci"
_DEFAULT_BACKUP_DIR = "uci_backup"
_DEFAULT_REGISTRY_FILE = "uci_uuid_mapping.json"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class LogConfig:
    level: str = "INFO"


@dataclass
class UciBusConfig:
    """Resolved configuration for a ucibus server."""

    root: Path                      # directory that contains ucibus.toml
    config_dir: Path = field(default_factory=Path)
    backup_dir: Path = field(default_factory=Path)
    registry_path: Path = field(default_factory=Path)
    watch: bool = True
    write_uuids: bool = True
    wrap_metadata: bool = True
    debounce_ms: int = 100
    log: LogConfig = field(default_factory=LogConfig)
    acl: list[dict[str, Any]] | None = None      # None -> built-in defaults
    users: dict[str, dict[str, Any]] | None = None

    @property
    def debounce(self) -> float:
        return self.debounce_ms / 1000.0

    def access_control(self) -> AccessControl:
        return load_acl(self.acl, self.users)

    def ensure_dirs(self) -> None:
        """Create config_dir and backup_dir if they don't exist."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)


def _load_env(root: Path) -> dict[str, str]:
    """UCIBUS_* settings from root/.env, overridden by the process environment.

    Lines may be prefixed with `export`; values may be quoted. Variables
    without the UCIBUS_ prefix are ignored.
    """
    env: dict[str, str] = {}
    env_file = root / ".env"
    if env_file.is_file():
        for raw in env_file.read_text().splitlines():
            line = raw.strip()
            if line.startswith("export "):
                line = line.removeprefix("export ").lstrip()
            key, sep, value = line.partition("=")
            key = key.strip()
            if not sep or not key.startswith(_ENV_PREFIX):
                continue
            env[key] = value.strip().strip("'\"")
    env.update({k: v for k, v in os.environ.items() if k.startswith(_ENV_PREFIX)})
    return env



def _log_level(value: str) -> str:
    level = value.upper()
    if level not in _LOG_LEVELS:
        msg = f"invalid log level {value!r} (expected one of {', '.join(_LOG_LEVELS)})"
        raise ValueError(msg)
    return level


def load_config(root: Path | str | None = None) -> UciBusConfig:
    """Load ucibus.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    env = _load_env(root_path)

    section = raw.get("ucibus", {})
    log_section = raw.get("log", {})

    acl = raw.get("acl")
    if acl is not None and not isinstance(acl, list):
        msg = "[[acl]] must be an array of tables"
        raise ValueError(msg)
    users = raw.get("users")
    if users is not None and not isinstance(users, dict):
        msg = "[users] must be a table"
        raise ValueError(msg)

    return UciBusConfig(
        root=root_path,
        config_dir=root_path / section.get("config_dir", _DEFAULT_CONFIG_DIR),
        backup_dir=root_path / section.get("backup_dir", _DEFAULT_BACKUP_DIR),
        registry_path=root_path / section.get("registry_file", _DEFAULT_REGISTRY_FILE),
        watch=bool(section.get("watch", True)),
        write_uuids=bool(section.get("write_uuids", True)),
        wrap_metadata=bool(section.get("wrap_metadata", True)),
        debounce_ms=int(section.get("debounce_ms", 100)),
        log=LogConfig(
            # UCIBUS_LOG_LEVEL (.env or environment) overrides ucibus.toml
            level=_log_level(env.get("UCIBUS_LOG_LEVEL") or str(log_section.get("level", "INFO"))),
        ),
        acl=acl,
        users=users,
    )


def _find_root(start: Path) -> Path:
    """Directory holding ucibus.toml.

    start may be the ucibus.toml file itself, a directory that holds it, or
    any directory below one. Without a match, start is the root.
    """
    if start.name == _CONFIG_FILENAME and start.is_file():
        return start.parent
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).is_file():
            return directory
    return start



def init_config(root: Path) -> Path:
    """Write a default ucibus.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"ucibus.toml already exists at {config_path}"
        raise FileExistsError(msg)

    content = """\
[ucibus]
# config_dir = "uci"                         # default
# backup_dir = "uci_backup"                  # default
# registry_file = "uci_uuid_mapping.json"    # default
# watch = true
# write_uuids = true        # embed generated uuids into the config files
# wrap_metadata = true      # publish {uuid, sectionType, sectionName, fileName, values, lastModified}
# debounce_ms = 100         # settle time before reloading a changed file

[log]
level = "INFO"              # or set UCIBUS_LOG_LEVEL in .env

# Callers and their roles (no credentials are stored here)
# [users.client]
# roles = ["client"]
# allow_all = false

# Topic rules per role; deny beats allow within a role
# [[acl]]
# role = "client"
# allow = [
#     { topic = "config/+/+/+", actions = ["subscribe"] },
#     { topic = "commands/edit", actions = ["publish"] },
# ]
# deny = [{ topic = "system/startup", actions = ["publish"] }]
"""
    config_path.write_text(content)
    return config_path
