"""Core modules for safepoint.

Only the error taxonomy and the data model are re-exported here; the
components are imported from their modules (or used through
``safepoint.core.controller``).
"""

from .errors import (
    ApprovalRequired,
    AuditLogError,
    CapacityError,
    ConsistencyError,
    NotFound,
    OperationCancelled,
    SafepointError,
    StorageError,
    UncommittedChangesError,
    ValidationError,
)
from .models import (
    ApprovalToken,
    AuditLogEntry,
    DataSensitivity,
    RestoreMode,
    Snapshot,
    SnapshotKind,
    SnapshotSummary,
    UncommittedPolicy,
)

__all__ = [
    "ApprovalRequired",
    "ApprovalToken",
    "AuditLogEntry",
    "AuditLogError",
    "CapacityError",
    "ConsistencyError",
    "DataSensitivity",
    "NotFound",
    "OperationCancelled",
    "RestoreMode",
    "SafepointError",
    "Snapshot",
    "SnapshotKind",
    "SnapshotSummary",
    "StorageError",
    "UncommittedChangesError",
    "UncommittedPolicy",
    "ValidationError",
]
