"""Error taxonomy for safepoint.

Every error carries the operation that failed, the offending field or
resource, and a hint for what to do next. Callers branch on the class;
the CLI maps each class to an exit code.
"""

from __future__ import annotations


class SafepointError(Exception):
    """Base class for all safepoint failures."""

    exit_code = 1
    default_hint: str | None = None

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        resource: str | None = None,
        hint: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.resource = resource
        self.hint = hint or self.default_hint

    def __str__(self) -> str:
        parts = []
        if self.operation:
            parts.append(f"{self.operation}: ")
        parts.append(self.message)
        if self.resource:
            parts.append(f" [{self.resource}]")
        if self.hint:
            parts.append(f"; {self.hint}")
        return "".join(parts)


class ValidationError(SafepointError):
    """Bad caller input. Raised before any backend call."""

    exit_code = 2

    def __init__(self, field: str, message: str, *, operation: str | None = None, hint: str | None = None):
        super().__init__(
            message,
            operation=operation,
            resource=field,
            hint=hint or f"fix the '{field}' value and retry",
        )
        self.field = field


class StorageError(SafepointError):
    """The storage backend failed (unreachable, command error, I/O)."""

    default_hint = "check the repository and the backup directory, then retry"


class NotFound(SafepointError):
    """A snapshot does not exist. A normal outcome for optimistic probes."""

    exit_code = 3


class ApprovalRequired(SafepointError):
    """A destructive operation was requested without a change-control token."""

    exit_code = 4


class ConsistencyError(SafepointError):
    """State after a mutation does not match what was requested. Always fatal."""

    exit_code = 5


class CapacityError(SafepointError):
    """Not enough free space to write an archive."""


class UncommittedChangesError(SafepointError):
    """The working tree is dirty and the policy says to stop."""


class AuditLogError(SafepointError):
    """An audit record could not be written or attributed."""

    default_hint = "check that the snapshot log is writable and retry"


class OperationCancelled(SafepointError):
    """A long-running step observed the caller's cancellation flag."""
