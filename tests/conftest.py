from __future__ import annotations

import fnmatch
import logging
import tarfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from safepoint.config import SafepointConfig
from safepoint.core.archive_store import ArchiveStore, EnvKeySource
from safepoint.core.audit_log import AuditLogger, StaticIdentityResolver
from safepoint.core.catalog import FreshnessCache, SnapshotCatalog
from safepoint.core.controller import SafepointController
from safepoint.core.errors import OperationCancelled, StorageError
from safepoint.core.models import DiffStats, SnapshotKind
from safepoint.core.snapshot_creator import SnapshotCreator
from safepoint.core.storage import RefInfo

KEY_ENV = "SAFEPOINT_TEST_ARCHIVE_KEY"
START = datetime(2025, 11, 23, 14, 30, 22, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, moment: datetime = START):
        self.moment = moment

    def now(self) -> datetime:
        return self.moment

    def advance(self, **kwargs) -> None:
        self.moment += timedelta(**kwargs)


class FakeRepository:
    """In-memory stand-in for GitRepository.

    Working files live on disk under ``root`` so archives have something to
    pack; refs and commits are plain dictionaries.
    """

    STATE_DIR = ".safepoint"

    def __init__(self, root: Path, clock: FrozenClock):
        self.root = Path(root)
        self.clock = clock
        self._counter = 0
        self.head = self._new_commit()
        self.line: str | None = "main"
        self.branches: dict[str, str] = {"main": self.head}
        self.tags: dict[str, RefInfo] = {}
        self.dirty = False
        self.mutations: list[tuple] = []
        self.fail: set[str] = set()
        self.state_after_restore: str | None = None

    def _new_commit(self) -> str:
        self._counter += 1
        return f"{self._counter:040x}"

    def _check(self, op: str) -> None:
        if op in self.fail:
            raise StorageError(f"{op} failed", operation=op, resource=str(self.root))

    def advance(self) -> str:
        """Simulate a new commit on the current line."""
        self.head = self._new_commit()
        if self.line:
            self.branches[self.line] = self.head
        return self.head

    def add_marker(self, name: str, created_at: datetime | None = None, message: str = "") -> str:
        self.tags[name] = RefInfo(
            name=name,
            kind=SnapshotKind.MARKER,
            commit=self.head,
            created_at=created_at or self.clock.now(),
            message=message,
        )
        return self.head

    def validate(self) -> None:
        self._check("validate")

    def current_state(self) -> str:
        self._check("current_state")
        return self.head

    def current_line(self) -> str | None:
        self._check("current_line")
        return self.line

    def has_uncommitted_changes(self) -> bool:
        self._check("has_uncommitted_changes")
        return self.dirty

    def commit_all(self, message_fields) -> str:
        self._check("commit_all")
        self.mutations.append(("commit_all", list(message_fields)))
        self.dirty = False
        return self.advance()

    def create_marker(self, name: str, message_fields) -> str:
        self._check("create_marker")
        if name in self.tags:
            raise StorageError(f"tag {name} already exists", operation="git tag")
        self.mutations.append(("create_marker", name, list(message_fields)))
        return self.add_marker(name, message="\n".join(message_fields))

    def create_branch(self, name: str) -> str:
        self._check("create_branch")
        if name in self.branches:
            raise StorageError(f"branch {name} already exists", operation="git branch")
        self.mutations.append(("create_branch", name))
        self.branches[name] = self.head
        return self.head

    def _files(self) -> list[Path]:
        return sorted(
            p for p in self.root.rglob("*")
            if p.is_file() and self.STATE_DIR not in p.relative_to(self.root).parts
        )

    def estimate_size(self) -> int:
        return sum(p.stat().st_size for p in self._files())

    def create_archive(self, path: Path, cancel=None) -> int:
        self._check("create_archive")
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(path, "w:gz") as tar:
            for file in self._files():
                if cancel is not None and cancel():
                    tar.close()
                    path.unlink(missing_ok=True)
                    raise OperationCancelled("archive creation cancelled", operation="create_archive")
                tar.add(file, arcname=str(file.relative_to(self.root)))
        self.mutations.append(("create_archive", str(path)))
        return path.stat().st_size

    def resolve(self, name: str, kind: SnapshotKind | None = None) -> RefInfo | None:
        self._check("resolve")
        if kind in (None, SnapshotKind.MARKER) and name in self.tags:
            tag = self.tags[name]
            return RefInfo(name=name, kind=SnapshotKind.MARKER, commit=tag.commit)
        if kind in (None, SnapshotKind.BRANCH) and name in self.branches:
            return RefInfo(name=name, kind=SnapshotKind.BRANCH, commit=self.branches[name])
        return None

    def ref_exists(self, name: str) -> bool:
        return self.resolve(name) is not None

    def list_refs(self, kind: SnapshotKind, pattern: str) -> list[RefInfo]:
        self._check("list_refs")
        if kind == SnapshotKind.MARKER:
            return [t for n, t in self.tags.items() if fnmatch.fnmatchcase(n, pattern)]
        return [
            RefInfo(name=n, kind=SnapshotKind.BRANCH, commit=c)
            for n, c in self.branches.items()
            if fnmatch.fnmatchcase(n, pattern)
        ]

    def checkout(self, ref: str) -> None:
        self._check("checkout")
        self.mutations.append(("checkout", ref))
        self.head = self.state_after_restore or ref
        self.line = None

    def switch_line(self, line: str) -> None:
        self._check("switch_line")
        self.line = line
        self.head = self.branches[line]

    def reset_to(self, ref: str) -> None:
        self._check("reset_to")
        self.mutations.append(("reset_to", ref))
        self.head = self.state_after_restore or ref
        if self.line:
            self.branches[self.line] = ref
        self.dirty = False

    def diff_since(self, ref: str) -> DiffStats:
        self._check("diff_since")
        if ref == self.head:
            return DiffStats()
        return DiffStats(files_changed=2, insertions=5, deletions=1)

    def delete_marker(self, name: str) -> None:
        self._check("delete_marker")
        if name not in self.tags:
            raise StorageError(f"tag '{name}' not found", operation="git tag")
        self.mutations.append(("delete_marker", name))
        del self.tags[name]

    def delete_branch(self, name: str) -> None:
        self._check("delete_branch")
        if name not in self.branches:
            raise StorageError(f"branch '{name}' not found", operation="git branch")
        self.mutations.append(("delete_branch", name))
        del self.branches[name]


@pytest.fixture(autouse=True)
def _isolate_home(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Prevent developer machine `~/.safepoint/config.json` and SAFEPOINT_* vars from influencing tests."""

    monkeypatch.setenv("HOME", str(tmp_path))
    for var in (
        "SAFEPOINT_FRESHNESS_MINUTES",
        "SAFEPOINT_RETENTION_DAYS",
        "SAFEPOINT_DEFAULT_KIND",
        "SAFEPOINT_KEY_ENV",
        "SAFEPOINT_CACHE_TTL",
        "SAFEPOINT_UNCOMMITTED_POLICY",
        "SAFEPOINT_EXEMPT_PATTERNS",
        "SAFEPOINT_PROJECT_ROOT",
        "SAFEPOINT_DEBUG",
        "SUDO_USER",
        KEY_ENV,
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def _reset_cli_logging():
    """Drop the CLI stderr handler so it never outlives the captured stream."""
    yield
    logger = logging.getLogger("safepoint")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def work_dir(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    (work / "app.py").write_text("print('hello')\n")
    (work / "README.md").write_text("# Test\n")
    (work / "pkg").mkdir()
    (work / "pkg" / "mod.py").write_text("VALUE = 1\n")
    return work


@pytest.fixture
def repo(work_dir, clock):
    return FakeRepository(work_dir, clock)


@pytest.fixture
def identity():
    return StaticIdentityResolver("alice")


@pytest.fixture
def state_dir(work_dir):
    return work_dir / ".safepoint"


@pytest.fixture
def archives(state_dir):
    return ArchiveStore(state_dir / "backups", key_source=EnvKeySource(KEY_ENV))


@pytest.fixture
def audit(state_dir, identity):
    return AuditLogger(state_dir / "snapshot-log.md", identity=identity)


@pytest.fixture
def catalog(repo, archives, clock):
    return SnapshotCatalog(repo, archives, clock=clock, cache=FreshnessCache(5, clock))


@pytest.fixture
def creator(repo, catalog, archives, audit, clock):
    return SnapshotCreator(repo, catalog, archives, audit, clock=clock)


@pytest.fixture
def controller(repo, identity, clock):
    return SafepointController(
        project_root=repo.root,
        repo=repo,
        identity=identity,
        clock=clock,
        config=SafepointConfig(),
    )
