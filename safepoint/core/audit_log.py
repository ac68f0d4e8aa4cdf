"""Append-only audit log for snapshot lifecycle events.

The log is a markdown file meant to be read by humans. Every free-text
value is escaped before it is written so a record can never render as a
different header, a link, or inline code. Each record also carries the
sha256 of the file content that preceded it, so rewriting history is
detectable with ``verify()``.
"""

from __future__ import annotations

import getpass
import hashlib
import logging
import os
import re
from dataclasses import replace
from pathlib import Path
from typing import Protocol

try:
    import pwd
except ImportError:  # Windows
    pwd = None  # type: ignore[assignment]

from ..utils.fs import locked_append
from .errors import AuditLogError
from .models import AuditLogEntry, AuditOperation
from .validation import NAME_RE

logger = logging.getLogger(__name__)

LOG_TITLE = "# Snapshot Audit Log"
SECTION_SNAPSHOTS = "Snapshots"
SECTION_RECOVERY = "Recovery Actions"
SECTIONS = (SECTION_SNAPSHOTS, SECTION_RECOVERY)
CHECKSUM_KEY = "Previous-Log-SHA256"
LAYOUT_NOTE = (
    "Records are appended in time order at the end of the file, below the last "
    "heading. The Section field of each record names the section it belongs to."
)
SECTION_NOTES = {
    SECTION_SNAPSHOTS: "Snapshot creations are the records with Section: Snapshots.",
    SECTION_RECOVERY: "Restores, approvals and prunes follow, interleaved with creations.",
}

_MARKDOWN_SPECIAL = set("\\`*_[]()#<>|!~")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_UNESCAPE_RE = re.compile(r"\\([\\`*_\[\]()#<>|!~])")
_FIELD_RE = re.compile(r"^- \*\*(?P<key>[A-Za-z0-9-]+)\*\*: (?P<value>.*)$")


def sanitize_markdown(text: object) -> str:
    """Make ``text`` inert inside a markdown document.

    Line breaks and other control characters become spaces; characters with
    markdown meaning are backslash-escaped.
    """
    cleaned = _CONTROL_RE.sub(" ", str(text))
    return "".join("\\" + ch if ch in _MARKDOWN_SPECIAL else ch for ch in cleaned)


def unescape_markdown(text: str) -> str:
    return _UNESCAPE_RE.sub(r"\1", text)


class IdentityResolver(Protocol):
    def resolve(self) -> str: ...


class SystemIdentityResolver:
    """Resolves the real invoking user from the operating system.

    Order: the user behind ``sudo`` (only trusted when running as root),
    the account of the real uid, then ``getpass.getuser()``.
    """

    def resolve(self) -> str:
        name: str | None = None
        if hasattr(os, "getuid"):
            uid = os.getuid()
            sudo_user = os.environ.get("SUDO_USER", "")
            if uid == 0 and sudo_user and NAME_RE.match(sudo_user):
                return sudo_user
            if pwd is not None:
                try:
                    name = pwd.getpwuid(uid).pw_name
                except KeyError:
                    name = None
        if not name:
            try:
                name = getpass.getuser()
            except (OSError, KeyError):
                name = None
        if not name or name == "unknown":
            raise AuditLogError(
                "cannot determine the invoking user",
                operation="audit log",
                hint="run as a named OS account",
            )
        return name


class StaticIdentityResolver:
    """Fixed identity, for tests and embedding."""

    def __init__(self, name: str):
        self.name = name

    def resolve(self) -> str:
        return self.name


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _section_for(entry: AuditLogEntry) -> str:
    return SECTION_SNAPSHOTS if entry.operation == AuditOperation.CREATED else SECTION_RECOVERY


class AuditLogger:
    """Writes AuditLogEntry records to the markdown log."""

    def __init__(self, path: Path, identity: IdentityResolver | None = None):
        self.path = Path(path)
        self.identity = identity or SystemIdentityResolver()

    def record(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append ``entry`` to the log.

        Returns:
            The entry as written, with principal and checksum filled in

        Raises:
            AuditLogError: the principal is unknown or the write failed
        """
        principal = self.identity.resolve()
        try:
            with locked_append(self.path) as f:
                scaffold = self._missing_structure()
                if scaffold:
                    f.write(scaffold)
                    f.flush()
                written = replace(
                    entry,
                    principal=principal,
                    previous_log_checksum=_sha256(self.path.read_bytes()),
                )
                f.write(self._render(written))
        except OSError as e:
            raise AuditLogError(
                str(e),
                operation="audit log",
                resource=str(self.path),
                hint="retry logging; the storage change itself already happened",
            ) from e

        logger.debug("audit: %s %s %s", entry.operation.value, entry.status.value, entry.snapshot_name)
        return written

    def _missing_structure(self) -> str:
        """Header lines that still need to be appended (empty when complete)."""
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            content = ""

        if not content.strip():
            lines = [
                LOG_TITLE,
                "",
                "Append-only record of snapshot lifecycle events. Do not edit.",
                "",
                LAYOUT_NOTE,
                "",
            ]
            for section in SECTIONS:
                lines.extend([f"## {section}", "", SECTION_NOTES[section], ""])
            return "\n".join(lines) + "\n"

        present = {line.strip() for line in content.splitlines()}
        missing = [s for s in SECTIONS if f"## {s}" not in present]
        if not missing:
            return ""
        prefix = "" if content.endswith("\n") else "\n"
        return prefix + "".join(f"\n## {s}\n\n" for s in missing)

    @staticmethod
    def _render(entry: AuditLogEntry) -> str:
        fields: list[tuple[str, object]] = [
            ("Section", _section_for(entry)),
            ("Operation", entry.operation.value),
            ("Status", entry.status.value),
            ("Snapshot", entry.snapshot_name),
            ("Kind", entry.kind.value if entry.kind else None),
            ("Commit", entry.commit_ref),
            ("Source-Line", entry.source_line),
            ("Principal", entry.principal),
            ("Requested-By", entry.requested_by),
            ("Reason", entry.reason),
            ("Sensitivity", entry.data_sensitivity.value if entry.data_sensitivity else None),
            ("Change-Id", entry.change_id),
            ("Approver", entry.approver),
        ]
        for key, value in sorted(entry.details.items()):
            fields.append((f"Detail-{re.sub(r'[^A-Za-z0-9-]', '-', key)}", value))
        fields.append((CHECKSUM_KEY, entry.previous_log_checksum))

        heading = sanitize_markdown(
            f"{entry.timestamp.isoformat()} {entry.operation.value} {entry.snapshot_name}"
        )
        lines = [f"### {heading}"]
        for key, value in fields:
            if value is None or value == "":
                continue
            lines.append(f"- **{key}**: {sanitize_markdown(value)}")
        return "\n".join(lines) + "\n\n"

    def entries(self) -> list[dict[str, str]]:
        """Parse the log back into one dict per record, oldest first."""
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []

        records: list[dict[str, str]] = []
        current: dict[str, str] | None = None
        for line in content.splitlines():
            if line.startswith("### "):
                current = {"heading": unescape_markdown(line[4:])}
                records.append(current)
                continue
            if line.startswith("#"):
                current = None
                continue
            if current is None:
                continue
            match = _FIELD_RE.match(line)
            if match:
                current[match.group("key")] = unescape_markdown(match.group("value"))
        return records

    def verify(self) -> list[str]:
        """Check the checksum chain.

        Returns:
            Headings of records whose recorded checksum does not match the
            content preceding them (empty when the log is intact)
        """
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return []

        starts = [m.start() for m in re.finditer(rb"(?m)^### ", data)]
        broken: list[str] = []
        for i, start in enumerate(starts):
            end = starts[i + 1] if i + 1 < len(starts) else len(data)
            block = data[start:end].decode("utf-8", errors="replace")
            heading = unescape_markdown(block.splitlines()[0][4:])
            recorded = None
            for line in block.splitlines():
                match = _FIELD_RE.match(line)
                if match and match.group("key") == CHECKSUM_KEY:
                    recorded = match.group("value").strip()
            if recorded != _sha256(data[:start]):
                broken.append(heading)
        return broken
