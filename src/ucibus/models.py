"""Data models for the in-memory configuration store."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Union

# A value is one of: str | int | bool | non-empty list of those scalars.
# bool subclasses int, so every type check below tests bool first.
Scalar = Union[str, int, bool]
Value = Union[Scalar, list[Scalar]]

# Keys and section types share the file format's identifier grammar.
_IDENT_RE = re.compile(r"\w+")
# Everything str.splitlines() treats as a line boundary.
_LINE_BREAK_RE = re.compile("[\n\r\v\f\x1c\x1d\x1e\x85\u2028\u2029]")
RESERVED_KEYS = frozenset({"uuid"})


def new_section_uuid() -> str:
    """Mint a fresh random section identifier."""
    return str(uuid.uuid4())


def is_scalar(value: object) -> bool:
    return isinstance(value, (bool, int, str))


def has_line_break(text: str) -> bool:
    return _LINE_BREAK_RE.search(text) is not None


def check_identifier(kind: str, name: object) -> str:
    """Return name if it can be written as a section type or option key."""
    if not isinstance(name, str) or not _IDENT_RE.fullmatch(name):
        msg = f"invalid {kind} {name!r}: letters, digits and underscores only"
        raise ValueError(msg)
    return name


def check_key(key: object) -> str:
    check_identifier("option key", key)
    if key in RESERVED_KEYS:
        msg = f"option key {key!r} is reserved"
        raise ValueError(msg)
    return key  # type: ignore[return-value]


def _check_scalar(what: str, value: object) -> Scalar:
    if not is_scalar(value):
        msg = f"{what} has unsupported value {value!r}"
        raise TypeError(msg)
    if isinstance(value, str) and has_line_break(value):
        msg = f"{what} must not contain line breaks"
        raise ValueError(msg)
    return value  # type: ignore[return-value]


def check_value(key: str, value: object) -> Value:
    """Return value if key and value can be written to a file and read back unchanged.

    Raises TypeError for unsupported types and ValueError for keys, strings
    or lists the file format cannot represent.
    """
    check_key(key)
    if isinstance(value, (list, tuple)):
        if not value:
            msg = f"list {key!r} is empty"
            raise ValueError(msg)
        return [_check_scalar(f"list {key!r}", item) for item in value]
    return _check_scalar(f"option {key!r}", value)


def section_key(file_name: str, section_type: str, section_name: str | None, line_number: int | None) -> str:
    """Derive the structural identity key of a section.

    Named sections key on their name; anonymous ones (or ones whose name is
    just their type) key on their header line, so reordering them changes
    their identity.
    """
    if section_name and section_name != section_type:
        return f"{file_name}:{section_type}:{section_name}"
    return f"{file_name}:{section_type}:line{line_number}"


@dataclass
class Section:
    """One `config` block of a file."""

    section_type: str
    section_name: str | None = None
    values: dict[str, Value] = field(default_factory=dict)
    uuid: str | None = None
    section_key: str = ""
    line_number: int | None = None      # header line, used for anonymous keys

    @property
    def display_name(self) -> str:
        return self.section_name or self.section_type

    def copy(self) -> Section:
        return Section(
            section_type=self.section_type,
            section_name=self.section_name,
            values={k: list(v) if isinstance(v, list) else v for k, v in self.values.items()},
            uuid=self.uuid,
            section_key=self.section_key,
            line_number=self.line_number,
        )

    def merge(self, updates: dict[str, Any]) -> None:
        """Shallow-merge updates into values; supplied keys replace old ones."""
        for key, value in updates.items():
            self.values[key] = check_value(key, value)

    def to_payload(self, file_name: str, last_modified: datetime | None, *, wrap: bool = True) -> dict[str, Any]:
        values = {k: list(v) if isinstance(v, list) else v for k, v in self.values.items()}
        if not wrap:
            return values
        return {
            "uuid": self.uuid,
            "sectionType": self.section_type,
            "sectionName": self.section_name,
            "fileName": file_name,
            "values": values,
            "lastModified": (last_modified or datetime.now(UTC)).isoformat(),
        }


@dataclass
class ConfigFile:
    """A loaded configuration file: sections keyed by uuid, in file order."""

    name: str
    sections: dict[str, Section] = field(default_factory=dict)
    content: str = ""                   # last-known-good raw text
    last_modified: datetime | None = None

    def __len__(self) -> int:
        return len(self.sections)

    def get(self, section_uuid: str) -> Section | None:
        return self.sections.get(section_uuid)

    def staged(self) -> dict[str, Section]:
        """Deep-enough copy of the section set for validate-then-apply edits."""
        return {u: s.copy() for u, s in self.sections.items()}
