"""Retention policy: prune snapshots older than a cutoff."""

from __future__ import annotations

import fnmatch
import logging
from datetime import timedelta
from typing import Iterable

from .archive_store import ArchiveStore
from .audit_log import AuditLogger
from .catalog import Clock, SnapshotCatalog, SystemClock
from .errors import AuditLogError, NotFound, StorageError, ValidationError
from .models import AuditLogEntry, AuditOperation, AuditStatus, PruneReport, SnapshotKind, SnapshotSummary
from .storage import VersionedStorage

logger = logging.getLogger(__name__)


def is_exempt(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


class RetentionManager:
    """Deletes snapshots past their retention period, with an audit trail."""

    def __init__(
        self,
        repo: VersionedStorage,
        catalog: SnapshotCatalog,
        archives: ArchiveStore,
        audit: AuditLogger,
        *,
        clock: Clock | None = None,
        exempt_patterns: Iterable[str] = ("*release*", "*prod*"),
    ):
        self.repo = repo
        self.catalog = catalog
        self.archives = archives
        self.audit = audit
        self.clock = clock or SystemClock()
        self.exempt_patterns = list(exempt_patterns)

    def prune(
        self,
        retention_days: int,
        exempt_patterns: Iterable[str] | None = None,
        dry_run: bool = False,
    ) -> PruneReport:
        """Delete snapshots at least ``retention_days`` old.

        Args:
            retention_days: Age cutoff; 0 selects every snapshot
            exempt_patterns: fnmatch globs for names that are never pruned
            dry_run: Report candidates without deleting

        Returns:
            PruneReport; per-snapshot failures are collected, not raised
        """
        if not isinstance(retention_days, int) or isinstance(retention_days, bool) or retention_days < 0:
            raise ValidationError("retention_days", "must be a non-negative integer", operation="prune")

        patterns = list(exempt_patterns) if exempt_patterns is not None else self.exempt_patterns
        cutoff = timedelta(days=retention_days)
        report = PruneReport(retention_days=retention_days, dry_run=dry_run)
        current_line = self.repo.current_line()

        for summary in self.catalog.list():
            if is_exempt(summary.name, patterns):
                report.exempt.append(summary.name)
                if summary.data_sensitivity is None:
                    report.unclassified_retained.append(summary.name)
                continue

            age = self.catalog.age_of(summary)
            if age is None:
                logger.debug("skipping %s: age unknown", summary.name)
                continue
            if age < cutoff:
                continue

            report.candidates.append(summary.name)
            if dry_run:
                continue

            if summary.kind == SnapshotKind.BRANCH and summary.name == current_line:
                report.failed[summary.name] = "branch is currently checked out"
                continue

            try:
                self._delete(summary)
            except (StorageError, NotFound) as e:
                report.failed[summary.name] = str(e)
                continue
            report.deleted.append(summary.name)

            entry = AuditLogEntry(
                operation=AuditOperation.PRUNED,
                status=AuditStatus.SUCCESS,
                snapshot_name=summary.name,
                timestamp=self.clock.now(),
                kind=summary.kind,
                commit_ref=summary.commit_ref or None,
                data_sensitivity=summary.data_sensitivity,
                details={"age-days": str(age.days), "retention-days": str(retention_days)},
            )
            try:
                self.audit.record(entry)
            except AuditLogError as e:
                logger.warning("pruned %s but could not log it: %s", summary.name, e)
                report.audit_failures.append(summary.name)

        if report.deleted:
            self.catalog.invalidate()
        logger.info(
            "prune: %d candidates, %d deleted, %d exempt (dry_run=%s)",
            len(report.candidates), len(report.deleted), len(report.exempt), dry_run,
        )
        return report

    def _delete(self, summary: SnapshotSummary) -> None:
        if summary.kind == SnapshotKind.MARKER:
            self.repo.delete_marker(summary.name)
        elif summary.kind == SnapshotKind.BRANCH:
            self.repo.delete_branch(summary.name)
        else:
            self.archives.delete(summary.name)
