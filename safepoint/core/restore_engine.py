"""Restore the working tree to a snapshot.

The snapshot is resolved at the moment of use and the checkout targets the
resolved commit id, so a retention sweep that deletes the name mid-flight
cannot redirect the restore. Every restore first snapshots the current
state, so a restore can itself be undone.
"""

from __future__ import annotations

import logging
from datetime import datetime

from .audit_log import AuditLogger
from .catalog import Clock, SnapshotCatalog, SystemClock
from .errors import (
    ApprovalRequired,
    AuditLogError,
    ConsistencyError,
    NotFound,
    SafepointError,
    ValidationError,
)
from .models import (
    ApprovalToken,
    AuditLogEntry,
    AuditOperation,
    AuditStatus,
    RestoreMode,
    RestoreResult,
    SnapshotKind,
    SnapshotSummary,
    UncommittedPolicy,
)
from .snapshot_creator import SnapshotCreator
from .storage import VersionedStorage
from .validation import validate_approval_token, validate_snapshot_name

logger = logging.getLogger(__name__)

BACKUP_CREATOR_ID = "pre-restore"
BACKUP_REASON = "automatic backup before restore"


def coerce_mode(mode: RestoreMode | str) -> RestoreMode:
    if isinstance(mode, RestoreMode):
        return mode
    try:
        return RestoreMode(str(mode).strip().lower())
    except ValueError:
        raise ValidationError("mode", f"unknown restore mode {mode!r}", hint="use preserving or destructive") from None


class RestoreEngine:
    """Rolls the working tree back to a named snapshot."""

    def __init__(
        self,
        repo: VersionedStorage,
        catalog: SnapshotCatalog,
        creator: SnapshotCreator,
        audit: AuditLogger,
        *,
        clock: Clock | None = None,
        backup_kind: SnapshotKind = SnapshotKind.MARKER,
    ):
        self.repo = repo
        self.catalog = catalog
        self.creator = creator
        self.audit = audit
        self.clock = clock or SystemClock()
        self.backup_kind = backup_kind

    def restore(
        self,
        name: str,
        mode: RestoreMode | str = RestoreMode.PRESERVING,
        approval: ApprovalToken | None = None,
    ) -> RestoreResult:
        """Restore to snapshot ``name``.

        Preserving mode detaches HEAD at the snapshot and leaves every branch
        where it is. Destructive mode hard-resets the current line and
        requires a change-control token.

        Raises:
            ValidationError: bad name, mode or token format
            ApprovalRequired: destructive mode without a token
            NotFound: the snapshot does not exist at use time
            StorageError: the backend failed
            ConsistencyError: HEAD does not match the snapshot afterwards
            AuditLogError: the approval could not be recorded (nothing changed)
        """
        name = validate_snapshot_name(name)
        mode = coerce_mode(mode)
        destructive = mode == RestoreMode.DESTRUCTIVE

        if destructive and approval is None:
            raise ApprovalRequired(
                f"destructive restore of {name} needs a change-control token",
                operation="restore",
                resource=name,
                hint="supply a change id and approver, or restore in preserving mode",
            )

        target = self.catalog.find(name)
        if target is None:
            raise NotFound(
                f"snapshot {name} not found",
                operation="restore",
                resource=name,
                hint="list available snapshots with `safepoint list`",
            )
        if target.kind == SnapshotKind.ARCHIVE:
            raise ValidationError(
                "name",
                f"{name} is an archive and cannot be checked out",
                operation="restore",
                hint="extract it with `safepoint unpack`",
            )

        commit = target.commit_ref
        token: ApprovalToken | None = None
        if destructive:
            token = validate_approval_token(approval)
            # Must be on record before anything changes; AuditLogError aborts.
            self.audit.record(AuditLogEntry(
                operation=AuditOperation.APPROVAL_GRANTED,
                status=AuditStatus.SUCCESS,
                snapshot_name=name,
                timestamp=self.clock.now(),
                kind=target.kind,
                commit_ref=commit,
                approver=token.approver,
                change_id=token.change_id,
                details={"mode": mode.value},
            ))

        backup_name: str | None = None
        try:
            backup = self.creator.create(
                BACKUP_CREATOR_ID,
                self.backup_kind,
                BACKUP_REASON,
                uncommitted_policy=UncommittedPolicy.AUTO_COMMIT if destructive else UncommittedPolicy.INCLUDE,
                extra_details={"restore-target": name},
            )
            backup_name = backup.name
            diff = self.repo.diff_since(commit)
            if destructive:
                self.repo.reset_to(commit)
            else:
                self.repo.checkout(commit)
            current = self.repo.current_state()
            if current != commit:
                raise ConsistencyError(
                    f"HEAD is {current[:12]} after restore, expected {commit[:12]}",
                    operation="restore",
                    resource=name,
                    hint=f"inspect the repository by hand; pre-restore backup is {backup_name}",
                )
        except SafepointError as e:
            self._log_outcome(target, mode, token, AuditStatus.FAILURE, backup_name, {"error": str(e)})
            raise

        self.catalog.invalidate()
        details = {
            "files-changed": str(diff.files_changed),
            "insertions": str(diff.insertions),
            "deletions": str(diff.deletions),
        }
        audit_error = self._log_outcome(target, mode, token, AuditStatus.SUCCESS, backup_name, details)
        logger.info("restored %s (%s), backup %s", name, mode.value, backup_name)
        return RestoreResult(
            name=name,
            mode=mode,
            resolved_ref=commit,
            backup_name=backup_name,
            diff=diff,
            audit_logged=audit_error is None,
            audit_error=audit_error,
            backup_degraded=backup.degraded,
        )

    def _log_outcome(
        self,
        target: SnapshotSummary,
        mode: RestoreMode,
        token: ApprovalToken | None,
        status: AuditStatus,
        backup_name: str | None,
        details: dict[str, str],
    ) -> str | None:
        """Record the outcome. Returns the logging error, if any."""
        details = {"mode": mode.value, **details}
        if backup_name:
            details["pre-restore-backup"] = backup_name
        entry = AuditLogEntry(
            operation=AuditOperation.RESTORED,
            status=status,
            snapshot_name=target.name,
            timestamp=self._now(),
            kind=target.kind,
            commit_ref=target.commit_ref,
            approver=token.approver if token else None,
            change_id=token.change_id if token else None,
            details=details,
        )
        try:
            self.audit.record(entry)
        except AuditLogError as e:
            logger.error("restore of %s (%s) not logged: %s", target.name, status.value, e)
            return str(e)
        return None

    def _now(self) -> datetime:
        return self.clock.now()
