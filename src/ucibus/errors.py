"""Exception hierarchy shared by every ucibus component.

Errors are raised where they arise and converted to status/acknowledgement
messages only at the command boundary (see ucibus.engine).
"""

from __future__ import annotations


class UciBusError(Exception):
    """Base class for all ucibus errors."""


class ParseError(UciBusError):
    """A malformed line aborted parsing of a whole file."""

    def __init__(self, line_number: int, line: str, reason: str = "") -> None:
        self.line_number = line_number
        self.line = line
        self.reason = reason
        msg = f"Parse error at line {line_number}: {line!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class NotFoundError(UciBusError):
    """A referenced file, section or uuid does not exist."""

    def __init__(self, message: str, *, file_name: str | None = None, uuid: str | None = None) -> None:
        self.file_name = file_name
        self.uuid = uuid
        super().__init__(message)


class AuthorizationError(UciBusError):
    """The caller's roles do not permit the action on the topic."""

    def __init__(self, username: str, topic: str, action: str) -> None:
        self.username = username
        self.topic = topic
        self.action = action
        super().__init__(f"{username!r} may not {action} to {topic!r}")


class StorageError(UciBusError):
    """Disk read, write or backup failed; the mutation was not applied."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class TransportUnavailable(UciBusError):
    """The bus is not connected; nothing was published."""


class CommandError(UciBusError):
    """A command payload is malformed (missing fields, unknown action)."""
