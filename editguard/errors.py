"""Exceptions raised by the snapshot engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from editguard.schemas import UnknownChange


class EditGuardError(Exception):
    """Base class for every error raised by editguard."""


class SnapshotError(EditGuardError):
    """An operation could not be recorded or a snapshot could not be found."""


class ContinuityViolationError(EditGuardError):
    """Tracked files changed outside the recorded chain under strict mode."""

    def __init__(self, message: str, unknown_changes: list[UnknownChange]):
        super().__init__(message)
        self.unknown_changes = unknown_changes


class ChainIntegrityError(EditGuardError):
    """Sequence numbers or parent links of stored snapshots are broken."""

    def __init__(self, message: str, issues: list[str] | None = None):
        super().__init__(message)
        self.issues = issues or [message]


class MilestoneContinuityError(ChainIntegrityError):
    """A milestone would not start right after the previous one or has gaps."""


class DiffParseError(EditGuardError):
    """Text could not be read as a unified diff."""


class DiffApplyError(EditGuardError):
    """A hunk's context did not match the content it was applied to."""
