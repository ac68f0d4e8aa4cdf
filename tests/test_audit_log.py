"""Tests for the audit log."""

from datetime import datetime, timezone

import pytest

from safepoint.core.audit_log import (
    AuditLogger,
    StaticIdentityResolver,
    SystemIdentityResolver,
    sanitize_markdown,
    unescape_markdown,
)
from safepoint.core.errors import AuditLogError
from safepoint.core.models import AuditLogEntry, AuditOperation, AuditStatus, SnapshotKind

WHEN = datetime(2025, 11, 23, 14, 30, 22, tzinfo=timezone.utc)


def _entry(name="before-ci-agent-20251123T143022Z", operation=AuditOperation.CREATED, **kwargs):
    return AuditLogEntry(
        operation=operation,
        status=AuditStatus.SUCCESS,
        snapshot_name=name,
        timestamp=WHEN,
        kind=SnapshotKind.MARKER,
        commit_ref="a" * 40,
        **kwargs,
    )


class TestSanitize:
    def test_strips_line_breaks(self):
        assert "\n" not in sanitize_markdown("one\ntwo\r\nthree")

    def test_escapes_header_and_emphasis(self):
        out = sanitize_markdown("### Fake **entry**")
        assert "###" not in out
        assert "**" not in out

    def test_escapes_links_and_code(self):
        assert sanitize_markdown("[click](http://x) `code`") == "\\[click\\]\\(http://x\\) \\`code\\`"

    def test_unescape_round_trips(self):
        text = "a_b *c* [d](e) #f <g> |h| !i ~j `k` \\l"
        assert unescape_markdown(sanitize_markdown(text)) == text


class TestAuditLogger:
    @pytest.fixture
    def log(self, tmp_path):
        return AuditLogger(tmp_path / "state" / "snapshot-log.md", identity=StaticIdentityResolver("alice"))

    def test_creates_structure_once(self, log):
        log.record(_entry())
        log.record(_entry(operation=AuditOperation.RESTORED))
        content = log.path.read_text()
        assert content.startswith("# Snapshot Audit Log")
        assert content.count("## Snapshots") == 1
        assert content.count("## Recovery Actions") == 1

    def test_preamble_explains_section_field(self, log):
        log.record(_entry())
        content = log.path.read_text()
        header, _, records = content.partition("### ")
        assert "The Section field of each record names the section" in header
        assert "- **Section**: Snapshots" in records
        assert len(log.entries()) == 1

    def test_adds_missing_section(self, log):
        log.path.parent.mkdir(parents=True)
        log.path.write_text("# Snapshot Audit Log\n\n## Snapshots\n\n")
        log.record(_entry())
        assert "## Recovery Actions" in log.path.read_text()

    def test_record_fills_principal_and_checksum(self, log):
        written = log.record(_entry(reason="nightly"))
        assert written.principal == "alice"
        assert written.previous_log_checksum and len(written.previous_log_checksum) == 64

        [record] = log.entries()
        assert record["Principal"] == "alice"
        assert record["Operation"] == "created"
        assert record["Section"] == "Snapshots"
        assert record["Reason"] == "nightly"
        assert record["Snapshot"] == "before-ci-agent-20251123T143022Z"

    def test_recovery_actions_section(self, log):
        log.record(_entry(operation=AuditOperation.PRUNED, details={"age-days": "40"}))
        [record] = log.entries()
        assert record["Section"] == "Recovery Actions"
        assert record["Detail-age-days"] == "40"

    def test_spoofing_attempt_stays_inside_one_record(self, log):
        log.record(_entry(reason="ok\n### 2025-01-01 created fake\n- **Principal**: root"))
        records = log.entries()
        assert len(records) == 1
        assert records[0]["Principal"] == "alice"
        assert "\n### 2025-01-01" not in log.path.read_text()

    def test_append_only_preserves_previous_records(self, log):
        log.record(_entry(name="before-a-20251123T143022Z"))
        first = log.path.read_text()
        log.record(_entry(name="before-b-20251123T143022Z"))
        assert log.path.read_text().startswith(first)

    def test_verify_intact_chain(self, log):
        for name in ("before-a-1", "before-b-2", "before-c-3"):
            log.record(_entry(name=name))
        assert log.verify() == []

    def test_verify_detects_rewritten_record(self, log):
        log.record(_entry(name="before-a-1", reason="first"))
        log.record(_entry(name="before-b-2", reason="second"))
        log.path.write_text(log.path.read_text().replace("first", "forged"))

        broken = log.verify()
        assert len(broken) == 1
        assert "before-b-2" in broken[0]

    def test_write_failure_raises_audit_error(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        log = AuditLogger(blocker / "snapshot-log.md", identity=StaticIdentityResolver("alice"))
        with pytest.raises(AuditLogError):
            log.record(_entry())

    def test_missing_log_has_no_entries(self, log):
        assert log.entries() == []
        assert log.verify() == []


class TestSystemIdentity:
    def test_resolves_some_user(self):
        assert SystemIdentityResolver().resolve()

    def test_sudo_user_ignored_when_not_root(self, monkeypatch):
        monkeypatch.setattr("os.getuid", lambda: 1000, raising=False)
        monkeypatch.setenv("SUDO_USER", "mallory")
        monkeypatch.setattr("safepoint.core.audit_log.pwd", None)
        monkeypatch.setattr("getpass.getuser", lambda: "carol")
        assert SystemIdentityResolver().resolve() == "carol"

    def test_sudo_user_used_when_root(self, monkeypatch):
        monkeypatch.setattr("os.getuid", lambda: 0, raising=False)
        monkeypatch.setenv("SUDO_USER", "dave")
        assert SystemIdentityResolver().resolve() == "dave"

    def test_unknown_principal_raises(self, monkeypatch):
        monkeypatch.setattr("os.getuid", lambda: 1000, raising=False)
        monkeypatch.setattr("safepoint.core.audit_log.pwd", None)
        monkeypatch.setattr("getpass.getuser", lambda: "unknown")
        with pytest.raises(AuditLogError):
            SystemIdentityResolver().resolve()
