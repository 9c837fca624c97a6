"""
Error kinds raised by the KeySync core.

Tree-level errors (ParseError, WriteError, PathError) come from the
structured editor; the others are raised by the reconciler for one update.
"""

from __future__ import annotations

from typing import Optional


class KeySyncError(Exception):
    """Base error for everything raised by keysync."""


class MissingAttribute(KeySyncError):
    """Raised when a required attribute is absent on a `set` update."""

    def __init__(self, name: str, attribute: str) -> None:
        self.name = name
        self.attribute = attribute
        super().__init__(f"{name}: required attribute '{attribute}' is not set")


class InvalidValue(KeySyncError):
    """Raised when an attribute value cannot be written to a key line as given."""

    def __init__(self, name: str, attribute: str, reason: str) -> None:
        self.name = name
        self.attribute = attribute
        self.reason = reason
        super().__init__(f"{name!r}: invalid {attribute}: {reason}")


class MultipleMatches(KeySyncError):
    """Raised when more than one entry in a file carries the same name."""

    def __init__(self, name: str, target: str, count: int) -> None:
        self.name = name
        self.target = target
        self.count = count
        super().__init__(f"{name}: {count} entries share this name in {target}")


class UnknownEnsureValue(KeySyncError):
    """Raised for an ensure value other than present/absent."""

    def __init__(self, name: str, value: object) -> None:
        self.name = name
        self.value = value
        super().__init__(f"{name}: unknown ensure value {value!r}")


class ParseError(KeySyncError):
    """Raised when a file does not conform to the lens grammar."""

    def __init__(self, path: str, lineno: int, line: str, message: str = "") -> None:
        self.path = path
        self.lineno = lineno
        self.line = line
        self.message = message or "line does not match the grammar"
        super().__init__(f"{path}:{lineno}: {self.message}: {line[:80]!r}")


class WriteError(KeySyncError):
    """Raised when a tree cannot be committed back to disk."""

    def __init__(self, path: str, cause: Optional[BaseException] = None) -> None:
        self.path = path
        self.cause = cause
        msg = f"cannot write {path}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class PathError(KeySyncError):
    """Raised on tree misuse (missing path, ambiguous destination, bad handle)."""
