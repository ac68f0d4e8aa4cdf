"""Versioned-storage interface.

The creator, catalog, restore engine and retention manager only talk to
storage through this protocol. ``GitRepository`` is the production
implementation; tests use an in-memory double.

Contract shared by every implementation: a failed backend call raises
``StorageError``; a legitimate empty answer is ``None``, ``False`` or ``[]``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol, Sequence

from .models import DiffStats, SnapshotKind

CancelCheck = Callable[[], bool]


@dataclass(frozen=True)
class RefInfo:
    """A named reference as reported by the backend."""
    name: str
    kind: SnapshotKind
    commit: str
    created_at: datetime | None = None
    message: str = ""


class VersionedStorage(Protocol):
    root: Path

    def validate(self) -> None: ...

    def current_state(self) -> str: ...

    def current_line(self) -> str | None: ...

    def has_uncommitted_changes(self) -> bool: ...

    def commit_all(self, message_fields: Sequence[str]) -> str: ...

    def create_marker(self, name: str, message_fields: Sequence[str]) -> str: ...

    def create_branch(self, name: str) -> str: ...

    def estimate_size(self) -> int: ...

    def create_archive(self, path: Path, cancel: CancelCheck | None = None) -> int: ...

    def resolve(self, name: str, kind: SnapshotKind | None = None) -> RefInfo | None: ...

    def ref_exists(self, name: str) -> bool: ...

    def list_refs(self, kind: SnapshotKind, pattern: str) -> list[RefInfo]: ...

    def checkout(self, ref: str) -> None: ...

    def switch_line(self, line: str) -> None: ...

    def reset_to(self, ref: str) -> None: ...

    def diff_since(self, ref: str) -> DiffStats: ...

    def delete_marker(self, name: str) -> None: ...

    def delete_branch(self, name: str) -> None: ...


def as_cancel_check(cancel: object) -> CancelCheck | None:
    """Accept a callable or an Event-like object with ``is_set``."""
    if cancel is None:
        return None
    is_set = getattr(cancel, "is_set", None)
    if callable(is_set):
        return is_set
    if callable(cancel):
        return cancel
    raise TypeError("cancel must be callable or provide is_set()")
