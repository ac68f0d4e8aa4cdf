"""Data model for snapshots, audit entries and operation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class SnapshotKind(str, Enum):
    """How a snapshot is represented in storage."""
    MARKER = "marker"    # annotated tag
    BRANCH = "branch"    # continuable line of history
    ARCHIVE = "archive"  # exported tar.gz, optionally encrypted


class DataSensitivity(str, Enum):
    UNCLASSIFIED = "unclassified"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    REGULATED = "regulated"

    @property
    def requires_encryption(self) -> bool:
        return self in (DataSensitivity.CONFIDENTIAL, DataSensitivity.REGULATED)


class UncommittedPolicy(str, Enum):
    """What the creator does when the working tree has uncommitted changes."""
    AUTO_COMMIT = "auto-commit"
    ABORT = "abort"
    INCLUDE = "include"


class RestoreMode(str, Enum):
    PRESERVING = "preserving"
    DESTRUCTIVE = "destructive"


class AuditOperation(str, Enum):
    CREATED = "created"
    RESTORED = "restored"
    PRUNED = "pruned"
    APPROVAL_GRANTED = "approval-granted"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass
class Snapshot:
    """A named checkpoint of repository state."""
    name: str
    kind: SnapshotKind
    commit_ref: str
    source_line: str | None
    created_at: datetime
    creator: str
    requested_by: str
    reason: str
    data_sensitivity: DataSensitivity | None = None
    archive_path: Path | None = None
    encrypted: bool = False
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "commitRef": self.commit_ref,
            "sourceLine": self.source_line,
            "createdAt": _iso(self.created_at),
            "creator": self.creator,
            "requestedBy": self.requested_by,
            "reason": self.reason,
            "dataSensitivity": self.data_sensitivity.value if self.data_sensitivity else None,
            "encrypted": self.encrypted,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], archive_path: Path | None = None) -> Snapshot:
        """Create from dictionary."""
        sensitivity = data.get("dataSensitivity")
        return cls(
            name=data.get("name", ""),
            kind=SnapshotKind(data.get("kind", SnapshotKind.ARCHIVE.value)),
            commit_ref=data.get("commitRef", ""),
            source_line=data.get("sourceLine"),
            created_at=_parse_iso(data.get("createdAt")) or datetime.min,
            creator=data.get("creator", ""),
            requested_by=data.get("requestedBy", ""),
            reason=data.get("reason", ""),
            data_sensitivity=DataSensitivity(sensitivity) if sensitivity else None,
            archive_path=archive_path,
            encrypted=bool(data.get("encrypted", False)),
            size=int(data.get("size", 0) or 0),
        )


@dataclass
class SnapshotSummary:
    """Catalog view of a snapshot as reported by storage.

    ``created_at`` is None when neither the backend nor the name says when
    the snapshot was taken.
    """
    name: str
    kind: SnapshotKind
    commit_ref: str
    created_at: datetime | None
    location: str
    name_timestamp: datetime | None = None
    data_sensitivity: DataSensitivity | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "commitRef": self.commit_ref,
            "createdAt": _iso(self.created_at),
            "location": self.location,
            "dataSensitivity": self.data_sensitivity.value if self.data_sensitivity else None,
        }


@dataclass(frozen=True)
class ApprovalToken:
    """Change-control authorization for a destructive operation."""
    change_id: str
    approver: str


@dataclass(frozen=True)
class DiffStats:
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0


@dataclass(frozen=True)
class AuditLogEntry:
    """One immutable record of a snapshot lifecycle event.

    ``principal`` and ``previous_log_checksum`` are filled in by the logger
    at write time; callers leave them empty.
    """
    operation: AuditOperation
    status: AuditStatus
    snapshot_name: str
    timestamp: datetime
    kind: SnapshotKind | None = None
    commit_ref: str | None = None
    source_line: str | None = None
    requested_by: str | None = None
    reason: str | None = None
    data_sensitivity: DataSensitivity | None = None
    approver: str | None = None
    change_id: str | None = None
    details: dict[str, str] = field(default_factory=dict)
    principal: str | None = None
    previous_log_checksum: str | None = None

    @classmethod
    def for_snapshot(
        cls,
        snapshot: Snapshot,
        operation: AuditOperation,
        status: AuditStatus,
        timestamp: datetime,
        **extra: Any,
    ) -> AuditLogEntry:
        return cls(
            operation=operation,
            status=status,
            snapshot_name=snapshot.name,
            timestamp=timestamp,
            kind=snapshot.kind,
            commit_ref=snapshot.commit_ref,
            source_line=snapshot.source_line,
            requested_by=snapshot.requested_by,
            reason=snapshot.reason,
            data_sensitivity=snapshot.data_sensitivity,
            **extra,
        )


@dataclass
class CreateResult:
    """Outcome of a snapshot creation.

    The snapshot exists in storage whenever a CreateResult is returned; a
    missing audit record is reported as ``degraded`` instead of rolled back.
    """
    snapshot: Snapshot
    entry: AuditLogEntry
    audit_logged: bool = True
    audit_error: str | None = None

    @property
    def name(self) -> str:
        return self.snapshot.name

    @property
    def degraded(self) -> bool:
        return not self.audit_logged


@dataclass
class RestoreResult:
    name: str
    mode: RestoreMode
    resolved_ref: str
    backup_name: str | None
    diff: DiffStats = field(default_factory=DiffStats)
    audit_logged: bool = True
    audit_error: str | None = None
    backup_degraded: bool = False

    @property
    def degraded(self) -> bool:
        return not self.audit_logged or self.backup_degraded


@dataclass
class PruneReport:
    retention_days: int
    dry_run: bool
    candidates: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    exempt: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    audit_failures: list[str] = field(default_factory=list)
    unclassified_retained: list[str] = field(default_factory=list)


@dataclass
class FreshnessResult:
    """Answer to "is there a recent-enough snapshot?".

    ``found`` is True only for a fresh snapshot. When the newest snapshot is
    stale, ``name`` and ``age_minutes`` still describe it.
    """
    found: bool
    name: str | None = None
    age_minutes: int | None = None
