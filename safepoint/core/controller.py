"""Safepoint controller - main orchestrator.

Wires storage, catalog, creator, restore engine, retention manager and
audit log together from configuration, and exposes the caller-facing
operations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..config import ConfigLoader, SafepointConfig
from .archive_store import ArchiveStore, EnvKeySource
from .audit_log import AuditLogger, IdentityResolver
from .catalog import Clock, FreshnessCache, SnapshotCatalog, SystemClock
from .errors import ValidationError
from .git_backend import GitRepository
from .models import (
    ApprovalToken,
    CreateResult,
    FreshnessResult,
    PruneReport,
    RestoreMode,
    RestoreResult,
    SnapshotKind,
    SnapshotSummary,
)
from .restore_engine import RestoreEngine
from .retention import RetentionManager
from .snapshot_creator import SnapshotCreator
from .storage import VersionedStorage
from .validation import validate_kind, validate_snapshot_name

logger = logging.getLogger(__name__)


@dataclass
class SafepointStatus:
    """Status of safepoint for one project."""
    project_root: str
    state_dir: str
    log_path: str
    snapshot_count: int
    latest_snapshot: str | None
    latest_age_minutes: int | None
    fresh: bool
    current_line: str | None
    broken_log_entries: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectRoot": self.project_root,
            "stateDir": self.state_dir,
            "logPath": self.log_path,
            "snapshotCount": self.snapshot_count,
            "latestSnapshot": self.latest_snapshot,
            "latestAgeMinutes": self.latest_age_minutes,
            "fresh": self.fresh,
            "currentLine": self.current_line,
            "brokenLogEntries": self.broken_log_entries,
        }


def _non_negative(field_name: str, value: Any) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError(field_name, f"must be a non-negative integer, got {value!r}")
    return value


class SafepointController:
    """Main controller for safepoint operations."""

    def __init__(
        self,
        project_root: Path | str | None = None,
        *,
        repo: VersionedStorage | None = None,
        identity: IdentityResolver | None = None,
        clock: Clock | None = None,
        config: SafepointConfig | None = None,
    ):
        """Initialize controller.

        Args:
            project_root: Repository root (defaults to cwd)
            repo: Storage backend; a GitRepository on the root by default
            identity: Principal resolver for audit records
            clock: Time source shared by every component
            config: Explicit configuration instead of the loaded layers
        """
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self._config_loader = ConfigLoader(project_root=self.project_root)
        self._config = config
        self._repo = repo
        self._identity = identity
        self.clock = clock or SystemClock()

        self._archives: ArchiveStore | None = None
        self._catalog: SnapshotCatalog | None = None
        self._audit: AuditLogger | None = None
        self._creator: SnapshotCreator | None = None
        self._restorer: RestoreEngine | None = None
        self._retention: RetentionManager | None = None

    @property
    def config(self) -> SafepointConfig:
        """Get current configuration."""
        if self._config is not None:
            return self._config
        return self._config_loader.config

    def get_state_dir(self) -> Path:
        return self.project_root / self.config.state_dir

    def get_log_path(self) -> Path:
        return self.get_state_dir() / self.config.log_file

    def get_backup_dir(self) -> Path:
        return self.get_state_dir() / self.config.backup_dir

    @property
    def repo(self) -> VersionedStorage:
        """Get storage backend (lazy init, validated on first use)."""
        if self._repo is None:
            repo = GitRepository(self.project_root, exclude_paths=[self.config.state_dir])
            repo.validate()
            self._repo = repo
        return self._repo

    @property
    def archives(self) -> ArchiveStore:
        if self._archives is None:
            self._archives = ArchiveStore(
                self.get_backup_dir(),
                prefix=self.config.snapshot_prefix,
                key_source=EnvKeySource(self.config.encryption_key_env),
            )
        return self._archives

    @property
    def catalog(self) -> SnapshotCatalog:
        if self._catalog is None:
            self._catalog = SnapshotCatalog(
                self.repo,
                self.archives,
                prefix=self.config.snapshot_prefix,
                clock=self.clock,
                cache=FreshnessCache(self.config.cache_ttl_seconds, self.clock),
            )
        return self._catalog

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = AuditLogger(self.get_log_path(), identity=self._identity)
        return self._audit

    @property
    def creator(self) -> SnapshotCreator:
        if self._creator is None:
            self._creator = SnapshotCreator(
                self.repo,
                self.catalog,
                self.archives,
                self.audit,
                prefix=self.config.snapshot_prefix,
                clock=self.clock,
                default_policy=self.config.uncommitted_policy,
            )
        return self._creator

    @property
    def restorer(self) -> RestoreEngine:
        if self._restorer is None:
            self._restorer = RestoreEngine(
                self.repo,
                self.catalog,
                self.creator,
                self.audit,
                clock=self.clock,
                backup_kind=self.config.backup_kind,
            )
        return self._restorer

    @property
    def retention(self) -> RetentionManager:
        if self._retention is None:
            self._retention = RetentionManager(
                self.repo,
                self.catalog,
                self.archives,
                self.audit,
                clock=self.clock,
                exempt_patterns=self.config.exempt_patterns,
            )
        return self._retention

    def create_snapshot(
        self,
        creator_id: str,
        kind: SnapshotKind | str | None = None,
        reason: str = "",
        *,
        data_sensitivity: Any = None,
        uncommitted_policy: Any = None,
        cancel: Any = None,
    ) -> CreateResult:
        """Create a snapshot of the current repository state.

        Args:
            creator_id: Who is asking (e.g. the agent name)
            kind: marker, branch or archive (configured default when None)
            reason: Why the snapshot is taken
            data_sensitivity: Optional classification
            uncommitted_policy: Overrides the configured policy
            cancel: Cancellation flag for archive creation

        Returns:
            CreateResult for the new snapshot
        """
        return self.creator.create(
            creator_id,
            kind if kind is not None else self.config.default_kind,
            reason,
            data_sensitivity=data_sensitivity,
            uncommitted_policy=uncommitted_policy,
            cancel=cancel,
        )

    def check_fresh_snapshot(self, threshold_minutes: int | None = None) -> FreshnessResult:
        """Is there a snapshot younger than ``threshold_minutes``?

        Returns:
            FreshnessResult; ``found`` is False when there is none or the
            newest one is too old
        """
        threshold = self.config.freshness_threshold_minutes if threshold_minutes is None else threshold_minutes
        threshold = _non_negative("threshold_minutes", threshold)

        newest = self.catalog.most_recent()
        if newest is None:
            return FreshnessResult(found=False)
        summary, age = newest
        age_minutes = int(age.total_seconds() // 60)
        return FreshnessResult(
            found=self.catalog.is_fresh(summary, threshold),
            name=summary.name,
            age_minutes=age_minutes,
        )

    def ensure_snapshot(
        self,
        creator_id: str,
        kind: SnapshotKind | str | None = None,
        reason: str = "",
        *,
        threshold_minutes: int | None = None,
        **create_options: Any,
    ) -> tuple[FreshnessResult, CreateResult | None]:
        """Create a snapshot unless a fresh one already exists.

        Returns:
            (freshness before the call, CreateResult or None when reused)
        """
        freshness = self.check_fresh_snapshot(threshold_minutes)
        if freshness.found:
            logger.info("reusing fresh snapshot %s (%s min old)", freshness.name, freshness.age_minutes)
            return freshness, None
        return freshness, self.create_snapshot(creator_id, kind, reason, **create_options)

    def restore_snapshot(
        self,
        name: str,
        mode: RestoreMode | str = RestoreMode.PRESERVING,
        approval: ApprovalToken | None = None,
    ) -> RestoreResult:
        return self.restorer.restore(name, mode, approval)

    def prune_snapshots(
        self,
        retention_days: int | None = None,
        *,
        dry_run: bool = False,
        exempt_patterns: list[str] | None = None,
    ) -> PruneReport:
        """Delete snapshots older than the retention period.

        Args:
            retention_days: Overrides the configured retention
            dry_run: Only report what would be deleted
            exempt_patterns: Overrides the configured exemption globs
        """
        days = self.config.retention_days if retention_days is None else retention_days
        return self.retention.prune(days, exempt_patterns=exempt_patterns, dry_run=dry_run)

    def list_snapshots(self, kind: SnapshotKind | str | None = None) -> list[SnapshotSummary]:
        """List snapshots, newest first."""
        return self.catalog.list(validate_kind(kind) if kind is not None else None)

    def retry_audit(self, result: CreateResult) -> CreateResult:
        return self.creator.retry_audit(result)

    def verify_audit_log(self) -> list[str]:
        """Headings of audit records whose checksum chain is broken."""
        return self.audit.verify()

    def unpack_archive(self, name: str, destination: Path | str) -> int:
        """Extract archive snapshot ``name`` into ``destination``.

        The destination must lie outside the working tree; archives are
        never unpacked over live files.

        Returns:
            Number of files extracted
        """
        name = validate_snapshot_name(name)
        dest = Path(destination).expanduser().resolve()
        root = self.project_root.resolve()
        if dest == root or root in dest.parents:
            raise ValidationError(
                "destination",
                "refusing to unpack inside the working tree",
                operation="unpack",
                hint="choose a directory outside the repository",
            )
        dest.mkdir(parents=True, exist_ok=True)
        count = self.archives.extract(name, dest)
        logger.info("unpacked %s into %s (%d files)", name, dest, count)
        return count

    def get_status(self) -> SafepointStatus:
        """Get system status.

        Returns:
            SafepointStatus with current state
        """
        snapshots = self.list_snapshots()
        freshness = self.check_fresh_snapshot()
        return SafepointStatus(
            project_root=str(self.project_root),
            state_dir=str(self.get_state_dir()),
            log_path=str(self.get_log_path()),
            snapshot_count=len(snapshots),
            latest_snapshot=freshness.name,
            latest_age_minutes=freshness.age_minutes,
            fresh=freshness.found,
            current_line=self.repo.current_line(),
            broken_log_entries=len(self.verify_audit_log()),
        )
