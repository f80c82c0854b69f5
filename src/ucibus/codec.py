"""Text codec for UCI-style configuration files.

Format:

    # comment
    package network                 # ignored

    config interface 'lan'
        option uuid '5b0c...'       # identity, never part of values
        option proto static
        option ipaddr '192.168.1.1'
        list dns 1.1.1.1
        list dns 8.8.8.8

    config defaults                 # anonymous section
        option syn_flood 1

Value coercion (unquoted tokens only):
    ^-?\\d+$         -> int
    true / false    -> bool
    anything else   -> str

An unquoted 1 or 0 matches the digit rule first and decodes as int, and
booleans are written back as 1 / 0, so a boolean comes back as the int
that compares equal to it. Quoted values are never coerced.

Values holding line breaks cannot be written; serialize_value() rejects
them and so does models.check_value() for edits. Empty lists have no
representation either.

parse() is all-or-nothing: the first malformed line raises ParseError with
its 1-based line number and raw text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ucibus.errors import ParseError
from ucibus.models import Scalar, Section, Value, has_line_break

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger("ucibus.codec")

_HEADER_RE = re.compile(r"""^config\s+(\w+)(?:\s+(?:'([^']*)'|"([^"]*)"|([^\s'"]+)))?\s*$""")
_OPTION_RE = re.compile(r"^option\s+(\w+)\s+(.+)$")
_LIST_RE = re.compile(r"^list\s+(\w+)\s+(.+)$")
_INT_RE = re.compile(r"^-?\d+$")
_ESCAPE_RE = re.compile(r"\\(.)")
_NEEDS_QUOTES_RE = re.compile(r"""[\s'"\\]""")


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------

def parse_value(raw: str) -> Scalar:
    """Decode one option/list value token."""
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "'\"":
        return _ESCAPE_RE.sub(r"\1", raw[1:-1])
    if _INT_RE.match(raw):
        return int(raw)
    if raw == "true":
        return True
    if raw == "false":
        return False
    return raw


def serialize_value(value: Scalar) -> str:
    """Encode one scalar so that parse_value() gives it back."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    text = str(value)
    if has_line_break(text):
        msg = f"cannot write a value containing a line break: {text!r}"
        raise ValueError(msg)
    if (
        not text
        or _NEEDS_QUOTES_RE.search(text)
        or _INT_RE.match(text)
        or text in ("true", "false")
    ):
        escaped = text.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"
    return text


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------

def parse(content: str) -> list[Section]:
    """Parse file text into sections, in file order."""
    sections: list[Section] = []
    current: Section | None = None

    for line_number, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        directive = line.split(None, 1)[0]

        if directive == "config":
            m = _HEADER_RE.match(line)
            if not m:
                raise ParseError(line_number, line, "invalid section header")
            if current is not None:
                sections.append(current)
            section_type = m.group(1)
            name = next((g for g in m.group(2, 3, 4) if g is not None), None)
            current = Section(section_type=section_type, section_name=name or None, line_number=line_number)

        elif directive == "option":
            m = _OPTION_RE.match(line)
            if not m:
                raise ParseError(line_number, line, "invalid option line")
            if current is None:
                raise ParseError(line_number, line, "option outside of a section")
            key, value = m.group(1), parse_value(m.group(2))
            if key == "uuid":
                current.uuid = str(value)
            else:
                current.values[key] = value

        elif directive == "list":
            m = _LIST_RE.match(line)
            if not m:
                raise ParseError(line_number, line, "invalid list line")
            if current is None:
                raise ParseError(line_number, line, "list outside of a section")
            key = m.group(1)
            if key == "uuid":
                raise ParseError(line_number, line, "uuid cannot be a list")
            existing = current.values.get(key)
            if existing is None:
                current.values[key] = [parse_value(m.group(2))]
            elif isinstance(existing, list):
                existing.append(parse_value(m.group(2)))
            else:
                current.values[key] = [existing, parse_value(m.group(2))]

        elif directive == "package":
            continue

        else:
            raise ParseError(line_number, line, f"unknown directive {directive!r}")

    if current is not None:
        sections.append(current)

    logger.debug("parsed %d sections", len(sections))
    return sections


# ---------------------------------------------------------------------------
# Serialize
# ---------------------------------------------------------------------------

def _header(section: Section) -> str:
    name = section.section_name
    if not name or name == section.section_type:
        return f"config {section.section_type}"
    quote = '"' if "'" in name else "'"
    return f"config {section.section_type} {quote}{name}{quote}"


def _value_lines(key: str, value: Value) -> list[str]:
    if isinstance(value, list):
        if not value:
            msg = f"cannot write empty list {key!r}"
            raise ValueError(msg)
        return [f"\tlist {key} {serialize_value(item)}" for item in value]
    return [f"\toption {key} {serialize_value(value)}"]


def serialize(sections: Iterable[Section]) -> str:
    """Render sections as canonical file text (uuid first, one blank line after each)."""
    lines: list[str] = []
    for section in sections:
        lines.append(_header(section))
        if section.uuid:
            lines.append(f"\toption uuid {serialize_value(section.uuid)}")
        for key, value in section.values.items():
            lines.extend(_value_lines(key, value))
        lines.append("")
    return "\n".join(lines) + ("\n" if lines else "")


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------

@dataclass
class ValidationResult:
    valid: bool
    sections: int = 0
    errors: list[str] = field(default_factory=list)


def validate(content: str) -> ValidationResult:
    """Check syntax without touching any state; never raises ParseError."""
    try:
        sections = parse(content)
    except ParseError as exc:
        return ValidationResult(valid=False, errors=[str(exc)])
    return ValidationResult(valid=True, sections=len(sections))
