"""Snapshot creation.

Validates the request, deals with uncommitted work according to policy,
creates the marker, branch or archive, and hands the result to the audit
logger. Creation and logging are not one transaction: if the log write
fails the snapshot still exists and the result is marked degraded.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from .archive_store import ArchiveStore
from .audit_log import AuditLogger
from .catalog import Clock, SnapshotCatalog, SystemClock, format_timestamp
from .errors import AuditLogError, StorageError, UncommittedChangesError, ValidationError
from .models import (
    AuditLogEntry,
    AuditOperation,
    AuditStatus,
    CreateResult,
    DataSensitivity,
    Snapshot,
    SnapshotKind,
    UncommittedPolicy,
)
from .storage import VersionedStorage, as_cancel_check
from .validation import validate_request, validate_snapshot_name

logger = logging.getLogger(__name__)

MAX_NAME_ATTEMPTS = 50


def coerce_sensitivity(value: Any) -> DataSensitivity | None:
    if value is None or isinstance(value, DataSensitivity):
        return value
    try:
        return DataSensitivity(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            "data_sensitivity",
            f"unknown classification {value!r}",
            hint="use unclassified, internal, confidential or regulated",
        ) from None


def coerce_policy(value: Any, default: UncommittedPolicy) -> UncommittedPolicy:
    if value is None:
        return default
    if isinstance(value, UncommittedPolicy):
        return value
    try:
        return UncommittedPolicy(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            "uncommitted_policy",
            f"unknown policy {value!r}",
            hint="use auto-commit, abort or include",
        ) from None


class SnapshotCreator:
    """Creates snapshots of the working tree."""

    def __init__(
        self,
        repo: VersionedStorage,
        catalog: SnapshotCatalog,
        archives: ArchiveStore,
        audit: AuditLogger,
        *,
        prefix: str = "before-",
        clock: Clock | None = None,
        default_policy: UncommittedPolicy = UncommittedPolicy.ABORT,
    ):
        self.repo = repo
        self.catalog = catalog
        self.archives = archives
        self.audit = audit
        self.prefix = prefix
        self.clock = clock or SystemClock()
        self.default_policy = default_policy

    def create(
        self,
        creator_id: str,
        kind: SnapshotKind | str,
        reason: str,
        *,
        data_sensitivity: DataSensitivity | str | None = None,
        uncommitted_policy: UncommittedPolicy | str | None = None,
        cancel: Any = None,
        extra_details: dict[str, str] | None = None,
    ) -> CreateResult:
        """Create a snapshot.

        Args:
            creator_id: Caller identifier embedded in the name (e.g. agent name)
            kind: marker, branch or archive
            reason: Why the snapshot is being taken
            data_sensitivity: Classification; confidential/regulated archives
                are always encrypted
            uncommitted_policy: Override for the default policy
            cancel: Callable or Event checked between archive chunks
            extra_details: Internal fields added to the audit record as-is

        Returns:
            CreateResult; ``degraded`` when the audit record is missing

        Raises:
            ValidationError: bad input; nothing was touched
            UncommittedChangesError: dirty tree under the abort policy
            StorageError, CapacityError, OperationCancelled: storage failures
            AuditLogError: the invoking principal cannot be determined
        """
        request = validate_request(creator_id, kind, reason)
        sensitivity = coerce_sensitivity(data_sensitivity)
        policy = coerce_policy(uncommitted_policy, self.default_policy)
        cancel_check = as_cancel_check(cancel)

        encryption_required = bool(sensitivity and sensitivity.requires_encryption)
        if request.kind == SnapshotKind.ARCHIVE:
            # Fails on a missing key before anything is written.
            self.archives.will_encrypt(encryption_required)

        principal = self.audit.identity.resolve()
        details: dict[str, str] = dict(extra_details or {})

        if self.repo.has_uncommitted_changes():
            if policy == UncommittedPolicy.ABORT:
                raise UncommittedChangesError(
                    "working tree has uncommitted changes",
                    operation="create snapshot",
                    resource=str(self.repo.root),
                    hint="commit or stash them, or choose the auto-commit or include policy",
                )
            if policy == UncommittedPolicy.AUTO_COMMIT:
                commit = self.repo.commit_all([
                    f"safepoint: checkpoint uncommitted work for {request.creator_id}",
                    f"Requested-By: {request.creator_id}",
                    f"Creator: {principal}",
                    f"Reason: {request.reason}",
                ])
                details["uncommitted"] = "auto-committed"
                details["auto-commit"] = commit
            elif request.kind == SnapshotKind.ARCHIVE:
                details["uncommitted"] = "included in archive"
            else:
                details["uncommitted"] = "left in working tree, not captured"

        now = self.clock.now()
        name = self._unique_name(request.creator_id, now)
        source_line = self.repo.current_line()

        archive_path = None
        encrypted = False
        size = 0
        if request.kind == SnapshotKind.MARKER:
            fields = [
                f"safepoint snapshot {name}",
                f"Requested-By: {request.creator_id}",
                f"Creator: {principal}",
                f"Reason: {request.reason}",
            ]
            if sensitivity:
                fields.append(f"Sensitivity: {sensitivity.value}")
            commit_ref = self.repo.create_marker(name, fields)
        elif request.kind == SnapshotKind.BRANCH:
            commit_ref = self.repo.create_branch(name)
            self._return_to_line(source_line, name)
        else:
            self.archives.ensure_capacity(self.repo.estimate_size())
            commit_ref = self.repo.current_state()
            archive_path, size, encrypted = self.archives.write(
                name,
                self.repo,
                encryption_required=encryption_required,
                cancel=cancel_check,
            )

        snapshot = Snapshot(
            name=name,
            kind=request.kind,
            commit_ref=commit_ref,
            source_line=source_line,
            created_at=now,
            creator=principal,
            requested_by=request.creator_id,
            reason=request.reason,
            data_sensitivity=sensitivity,
            archive_path=archive_path,
            encrypted=encrypted,
            size=size,
        )
        if archive_path is not None:
            details["archive"] = archive_path.name
            details["encrypted"] = "yes" if encrypted else "no"
            try:
                self.archives.write_metadata(snapshot)
            except StorageError as e:
                logger.warning("archive metadata for %s not written: %s", name, e)
                details["metadata"] = "not written"

        self.catalog.invalidate()
        logger.info("created %s snapshot %s at %s", request.kind.value, name, commit_ref[:12])

        entry = AuditLogEntry.for_snapshot(
            snapshot, AuditOperation.CREATED, AuditStatus.SUCCESS, now, details=details
        )
        try:
            written = self.audit.record(entry)
        except AuditLogError as e:
            logger.warning("snapshot %s created but not logged: %s", name, e)
            return CreateResult(snapshot=snapshot, entry=entry, audit_logged=False, audit_error=str(e))
        return CreateResult(snapshot=snapshot, entry=written)

    def retry_audit(self, result: CreateResult) -> CreateResult:
        """Write the missing audit record of a degraded result.

        Storage is not touched. Raises AuditLogError if the write fails again.
        """
        if not result.degraded:
            return result
        written = self.audit.record(result.entry)
        return replace(result, entry=written, audit_logged=True, audit_error=None)

    def _unique_name(self, creator_id: str, now) -> str:
        base = validate_snapshot_name(f"{self.prefix}{creator_id}-{format_timestamp(now)}")
        candidate = base
        for attempt in range(2, MAX_NAME_ATTEMPTS + 2):
            if not self.repo.ref_exists(candidate) and self.archives.find(candidate) is None:
                return candidate
            candidate = validate_snapshot_name(f"{base}-{attempt}")
        raise StorageError(
            f"no free snapshot name after {MAX_NAME_ATTEMPTS} attempts",
            operation="create snapshot",
            resource=base,
            hint="wait a second and retry",
        )

    def _return_to_line(self, original: str | None, created: str) -> None:
        """Make sure creating a branch did not move the caller off their line."""
        if original is None or self.repo.current_line() == original:
            return
        try:
            self.repo.switch_line(original)
        except StorageError as e:
            raise StorageError(
                f"branch {created} was created but returning to {original} failed: {e.message}",
                operation="create snapshot",
                resource=original,
                hint=f"run `git checkout {original}` manually",
            ) from e
        if self.repo.current_line() != original:
            raise StorageError(
                f"still not on {original} after creating {created}",
                operation="create snapshot",
                resource=original,
                hint=f"run `git checkout {original}` manually",
            )
