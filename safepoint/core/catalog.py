"""Snapshot catalog and freshness checks.

The catalog lists snapshots from storage and answers "is there a recent
enough one?". A short-lived cache avoids rescanning storage when several
automation stages ask in quick succession; it is advisory only and is
never consulted by restore or retention.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from .archive_store import ArchiveRecord, ArchiveStore
from .models import DataSensitivity, SnapshotKind, SnapshotSummary
from .storage import RefInfo, VersionedStorage

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"
_NAME_TS_RE = re.compile(r"(?P<ts>\d{8}T\d{6}Z|\d{8}-\d{6})(?:-\d+)?$")
_SENSITIVITY_RE = re.compile(r"^Sensitivity: (?P<value>[a-z]+)\s*$", re.MULTILINE)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO 8601 basic format in UTC, e.g. ``20251123T143022Z``."""
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_name_timestamp(name: str) -> datetime | None:
    """Extract the embedded timestamp from a snapshot name, if any."""
    match = _NAME_TS_RE.search(name)
    if not match:
        return None
    raw = match.group("ts")
    fmt = TIMESTAMP_FORMAT if "T" in raw else "%Y%m%d-%H%M%S"
    try:
        return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_sensitivity(message: str) -> DataSensitivity | None:
    match = _SENSITIVITY_RE.search(message or "")
    if not match:
        return None
    try:
        return DataSensitivity(match.group("value"))
    except ValueError:
        return None


_MISSING = object()


class FreshnessCache:
    """Holds one value for ``ttl_seconds`` of clock time.

    Entries expire only by elapsed time (or an explicit ``clear``). The
    clock is injected so tests can move time without sleeping.
    """

    def __init__(self, ttl_seconds: float, clock: Clock):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._value: Any = _MISSING
        self._stored_at: datetime | None = None

    def get(self) -> Any:
        """Return the cached value, or the ``MISSING`` sentinel."""
        if self._value is _MISSING or self._stored_at is None:
            return _MISSING
        if self.clock.now() - self._stored_at >= self.ttl:
            self.clear()
            return _MISSING
        return self._value

    def put(self, value: Any) -> None:
        self._value = value
        self._stored_at = self.clock.now()

    def clear(self) -> None:
        self._value = _MISSING
        self._stored_at = None

    MISSING = _MISSING


class SnapshotCatalog:
    """Lists snapshots and checks their age."""

    def __init__(
        self,
        repo: VersionedStorage,
        archives: ArchiveStore,
        *,
        prefix: str = "before-",
        clock: Clock | None = None,
        cache: FreshnessCache | None = None,
    ):
        self.repo = repo
        self.archives = archives
        self.prefix = prefix
        self.clock = clock or SystemClock()
        self.cache = cache if cache is not None else FreshnessCache(5, self.clock)

    def _from_ref(self, ref: RefInfo) -> SnapshotSummary:
        name_ts = parse_name_timestamp(ref.name)
        return SnapshotSummary(
            name=ref.name,
            kind=ref.kind,
            commit_ref=ref.commit,
            # Backend metadata wins over the (informational) name.
            created_at=ref.created_at or name_ts,
            location=f"{'refs/tags' if ref.kind == SnapshotKind.MARKER else 'refs/heads'}/{ref.name}",
            name_timestamp=name_ts,
            data_sensitivity=_parse_sensitivity(ref.message),
        )

    def _from_archive(self, record: ArchiveRecord) -> SnapshotSummary:
        meta = record.metadata
        # Sidecar creation time wins over the file's mtime.
        created_at = record.modified_at
        if meta is not None and meta.created_at.tzinfo is not None:
            created_at = meta.created_at
        return SnapshotSummary(
            name=record.name,
            kind=SnapshotKind.ARCHIVE,
            commit_ref=meta.commit_ref if meta else "",
            created_at=created_at,
            location=str(record.path),
            name_timestamp=parse_name_timestamp(record.name),
            data_sensitivity=meta.data_sensitivity if meta else None,
        )

    def list(self, kind: SnapshotKind | None = None) -> list[SnapshotSummary]:
        """List snapshots, newest first.

        Raises:
            StorageError: storage could not be read (as opposed to being empty)
        """
        summaries: list[SnapshotSummary] = []
        for ref_kind in (SnapshotKind.MARKER, SnapshotKind.BRANCH):
            if kind is None or kind == ref_kind:
                summaries.extend(self._from_ref(r) for r in self.repo.list_refs(ref_kind, f"{self.prefix}*"))
        if kind is None or kind == SnapshotKind.ARCHIVE:
            summaries.extend(self._from_archive(r) for r in self.archives.list())

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        summaries.sort(key=lambda s: (s.created_at or epoch, s.name), reverse=True)
        return summaries

    def most_recent(self) -> tuple[SnapshotSummary, timedelta] | None:
        """Newest snapshot and its age, or None when there are none.

        Served from the freshness cache when it is still warm.
        """
        cached = self.cache.get()
        if cached is FreshnessCache.MISSING:
            snapshots = [s for s in self.list() if s.created_at is not None]
            cached = snapshots[0] if snapshots else None
            self.cache.put(cached)
        else:
            logger.debug("most recent snapshot served from cache")

        if cached is None:
            return None
        age = self.age_of(cached)
        return cached, age if age is not None else timedelta(0)

    def age_of(self, summary: SnapshotSummary) -> timedelta | None:
        if summary.created_at is None:
            return None
        return max(self.clock.now() - summary.created_at, timedelta(0))

    def is_fresh(self, summary: SnapshotSummary, threshold_minutes: int) -> bool:
        age = self.age_of(summary)
        return age is not None and age <= timedelta(minutes=threshold_minutes)

    def find(self, name: str) -> SnapshotSummary | None:
        """Resolve ``name`` against storage now. Never cached."""
        ref = self.repo.resolve(name)
        if ref is not None:
            return self._from_ref(ref)
        record = self.archives.find(name)
        if record is not None:
            return self._from_archive(record)
        return None

    def invalidate(self) -> None:
        self.cache.clear()
