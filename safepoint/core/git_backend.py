"""Git implementation of the versioned-storage interface.

Every command is built as an argument list and run without a shell.
Free text only ever reaches git as a separate ``-m`` argument, one per
logical field, so it cannot be interpreted as an option or a command.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import tarfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, Sequence

from .errors import OperationCancelled, StorageError
from .models import DiffStats, SnapshotKind
from .storage import CancelCheck, RefInfo

logger = logging.getLogger(__name__)

_REF_NAMESPACES = {
    SnapshotKind.MARKER: "refs/tags",
    SnapshotKind.BRANCH: "refs/heads",
}

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"

_SHORTSTAT_RE = re.compile(
    r"(?P<files>\d+) files? changed"
    r"(?:, (?P<ins>\d+) insertions?\(\+\))?"
    r"(?:, (?P<dels>\d+) deletions?\(-\))?"
)


def _parse_git_date(value: str) -> datetime | None:
    value = value.strip()
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class GitRepository:
    """Versioned storage backed by a git working tree."""

    def __init__(
        self,
        root: Path | str,
        *,
        git_executable: str = "git",
        exclude_paths: Iterable[str] = (),
    ):
        """Initialize the adapter.

        Args:
            root: Working tree root
            git_executable: git binary to invoke
            exclude_paths: Paths (relative to root) that never count as
                uncommitted work and are never archived, e.g. the state dir
        """
        self.root = Path(root)
        self.git_executable = git_executable
        self.exclude_paths = [p.strip("/") for p in exclude_paths if p.strip("/")]

    def _pathspec(self) -> list[str]:
        return ["--", "."] + [f":(exclude){p}" for p in self.exclude_paths]

    def _git(self, *args: str, ok_codes: tuple[int, ...] = (0,)) -> subprocess.CompletedProcess[str]:
        cmd = [self.git_executable, "-C", str(self.root), *args]
        env = {**os.environ, "LC_ALL": "C", "GIT_TERMINAL_PROMPT": "0"}
        logger.debug("running git %s", args[0] if args else "")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, env=env)
        except FileNotFoundError as e:
            raise StorageError(
                f"git executable not found: {self.git_executable}",
                operation=f"git {args[0]}" if args else "git",
                hint="install git or put it on PATH",
            ) from e
        except OSError as e:
            raise StorageError(str(e), operation=f"git {args[0]}" if args else "git") from e

        if proc.returncode not in ok_codes:
            detail = proc.stderr.strip() or f"exited with status {proc.returncode}"
            raise StorageError(detail, operation=f"git {args[0]}", resource=str(self.root))
        return proc

    def validate(self) -> None:
        """Ensure the root is a git work tree."""
        proc = self._git("rev-parse", "--is-inside-work-tree", ok_codes=(0, 128))
        if proc.returncode != 0 or proc.stdout.strip() != "true":
            raise StorageError(
                "not a git working tree",
                operation="validate",
                resource=str(self.root),
                hint="run inside a git repository or pass --project-root",
            )

    def current_state(self) -> str:
        return self._git("rev-parse", "--verify", "HEAD").stdout.strip()

    def current_line(self) -> str | None:
        """Name of the checked-out branch, or None when HEAD is detached."""
        proc = self._git("symbolic-ref", "--quiet", "--short", "HEAD", ok_codes=(0, 1))
        if proc.returncode == 1:
            return None
        return proc.stdout.strip() or None

    def has_uncommitted_changes(self) -> bool:
        proc = self._git("status", "--porcelain", "--untracked-files=all", *self._pathspec())
        return bool(proc.stdout.strip())

    def commit_all(self, message_fields: Sequence[str]) -> str:
        """Stage everything (minus excluded paths) and commit it."""
        self._git("add", "-A", *self._pathspec())
        args = ["commit", "--quiet"]
        for field in message_fields:
            if field:
                args.extend(["-m", field])
        self._git(*args)
        return self.current_state()

    def create_marker(self, name: str, message_fields: Sequence[str]) -> str:
        args = ["tag", "-a"]
        for field in message_fields:
            if field:
                args.extend(["-m", field])
        args.append(name)
        self._git(*args)
        return self._git("rev-parse", "--verify", f"refs/tags/{name}^{{commit}}").stdout.strip()

    def create_branch(self, name: str) -> str:
        """Create a branch at HEAD without switching to it."""
        self._git("branch", name)
        return self._git("rev-parse", "--verify", f"refs/heads/{name}").stdout.strip()

    def _archive_members(self) -> list[str]:
        proc = self._git(
            "ls-files", "-z", "--cached", "--others", "--exclude-standard", *self._pathspec()
        )
        seen: set[str] = set()
        members: list[str] = []
        for rel in proc.stdout.split("\0"):
            if not rel or rel in seen:
                continue
            seen.add(rel)
            # Tracked files deleted in the working tree are still listed.
            if os.path.lexists(self.root / rel):
                members.append(rel)
        return members

    def estimate_size(self) -> int:
        total = 0
        for rel in self._archive_members():
            try:
                total += (self.root / rel).lstat().st_size
            except OSError:
                continue
        return total

    def create_archive(self, path: Path, cancel: CancelCheck | None = None) -> int:
        """Write the working tree (tracked + untracked, not ignored) as tar.gz.

        Returns:
            Size of the written archive in bytes
        """
        members = self._archive_members()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(path, "w:gz") as tar:
                for rel in members:
                    if cancel is not None and cancel():
                        raise OperationCancelled(
                            "archive creation cancelled",
                            operation="create_archive",
                            resource=str(path),
                            hint="no archive was kept; retry when ready",
                        )
                    tar.add(self.root / rel, arcname=rel, recursive=False)
        except OperationCancelled:
            path.unlink(missing_ok=True)
            raise
        except (OSError, tarfile.TarError) as e:
            path.unlink(missing_ok=True)
            raise StorageError(str(e), operation="create_archive", resource=str(path)) from e
        return path.stat().st_size

    def resolve(self, name: str, kind: SnapshotKind | None = None) -> RefInfo | None:
        """Resolve a snapshot name to the commit it points at, right now."""
        kinds = [kind] if kind is not None else [SnapshotKind.MARKER, SnapshotKind.BRANCH]
        for k in kinds:
            namespace = _REF_NAMESPACES.get(k)
            if namespace is None:
                continue
            proc = self._git(
                "rev-parse", "--verify", "--quiet", f"{namespace}/{name}^{{commit}}", ok_codes=(0, 1)
            )
            if proc.returncode == 0:
                return RefInfo(name=name, kind=k, commit=proc.stdout.strip())
        return None

    def ref_exists(self, name: str) -> bool:
        return self.resolve(name) is not None

    def list_refs(self, kind: SnapshotKind, pattern: str) -> list[RefInfo]:
        """List refs of ``kind`` whose short name matches the glob ``pattern``.

        Markers report their tagger date. Git keeps no creation time for
        branches, so branch entries carry ``created_at=None``.
        """
        namespace = _REF_NAMESPACES[kind]
        fmt = _FIELD_SEP.join([
            "%(refname:short)",
            "%(objectname)",
            "%(*objectname)",
            "%(taggerdate:iso-strict)",
            "%(contents)",
        ]) + _RECORD_SEP
        proc = self._git("for-each-ref", f"--format={fmt}", f"{namespace}/{pattern}")

        refs: list[RefInfo] = []
        for record in proc.stdout.split(_RECORD_SEP):
            record = record.lstrip("\n")
            if not record:
                continue
            fields = record.split(_FIELD_SEP)
            if len(fields) < 5:
                continue
            name, obj, peeled, tagger_date, contents = fields[:5]
            if kind == SnapshotKind.MARKER:
                refs.append(RefInfo(
                    name=name,
                    kind=kind,
                    commit=peeled or obj,
                    created_at=_parse_git_date(tagger_date),
                    message=contents,
                ))
            else:
                refs.append(RefInfo(name=name, kind=kind, commit=obj))
        return refs

    def checkout(self, ref: str) -> None:
        """Move HEAD (detached) to ``ref``, keeping the current branch intact."""
        self._git("checkout", "--quiet", "--detach", ref)

    def switch_line(self, line: str) -> None:
        """Check out the branch `line` (attached HEAD)."""
        self._git("checkout", "--quiet", line)

    def reset_to(self, ref: str) -> None:
        """Hard-reset the current line to ``ref``. Discards uncommitted work."""
        self._git("reset", "--hard", "--quiet", ref)

    def diff_since(self, ref: str) -> DiffStats:
        proc = self._git("diff", "--shortstat", ref, *self._pathspec())
        match = _SHORTSTAT_RE.search(proc.stdout)
        if not match:
            return DiffStats()
        return DiffStats(
            files_changed=int(match.group("files")),
            insertions=int(match.group("ins") or 0),
            deletions=int(match.group("dels") or 0),
        )

    def delete_marker(self, name: str) -> None:
        self._git("tag", "-d", name)

    def delete_branch(self, name: str) -> None:
        self._git("branch", "-D", name)
