"""Tests for the safepoint CLI."""

import json
from datetime import timedelta

import pytest

from safepoint.app import cli


@pytest.fixture
def run(controller, monkeypatch):
    """Run the CLI against the fake-backed controller."""
    monkeypatch.setattr(cli, "SafepointController", lambda project_root=None: controller)

    def _run(*args):
        return cli.main(list(args))

    return _run


def test_no_command_prints_help(run, capsys):
    assert run() == 1
    assert "usage" in capsys.readouterr().out


def test_create_and_list(run, capsys):
    assert run("create", "ci-agent", "--reason", "pre-deployment") == 0
    out = capsys.readouterr().out
    assert "Created: before-ci-agent-20251123T143022Z" in out

    assert run("list", "--json") == 0
    listed = json.loads(capsys.readouterr().out)
    assert listed[0]["name"] == "before-ci-agent-20251123T143022Z"
    assert listed[0]["kind"] == "marker"


def test_validation_error_exit_code(run, capsys):
    assert run("create", "ci-agent", "--reason", "x; rm -rf /") == 2
    err = capsys.readouterr().err
    assert "Error:" in err
    assert "Hint:" in err


def test_check_exit_codes(run, capsys):
    assert run("check") == 1
    assert "No snapshots found." in capsys.readouterr().out
    run("create", "ci-agent", "--reason", "x")
    assert run("check", "--threshold", "30") == 0


def test_ensure_reuses(run, capsys):
    assert run("ensure", "ci-agent", "--reason", "x") == 0
    assert run("ensure", "ci-agent", "--reason", "y") == 0
    assert "Reusing: before-ci-agent-" in capsys.readouterr().out


def test_restore_not_found(run, capsys):
    assert run("restore", "before-none-20250101T000000Z") == 3
    assert "safepoint list" in capsys.readouterr().err


def test_destructive_restore_without_token(run):
    run("create", "ci-agent", "--reason", "x")
    assert run("restore", "before-ci-agent-20251123T143022Z", "--destructive") == 4


def test_destructive_restore_confirmed(run, capsys, repo):
    run("create", "ci-agent", "--reason", "x")
    target = repo.head
    repo.advance()
    code = run(
        "restore",
        "before-ci-agent-20251123T143022Z",
        "--destructive",
        "--change-id",
        "CHG-1042",
        "--approver",
        "bob",
        "--yes",
    )
    assert code == 0
    assert repo.branches["main"] == target
    assert "Pre-restore backup: before-pre-restore-" in capsys.readouterr().out


def test_destructive_restore_cancelled(run, monkeypatch, repo):
    run("create", "ci-agent", "--reason", "x")
    monkeypatch.setattr("builtins.input", lambda prompt="": "no")
    head = repo.head
    code = run(
        "restore", "before-ci-agent-20251123T143022Z", "--destructive",
        "--change-id", "CHG-1", "--approver", "bob",
    )
    assert code == 0
    assert repo.head == head


def test_prune_dry_run(run, capsys, repo, clock):
    repo.add_marker("before-old-20250101T000000Z", created_at=clock.now() - timedelta(days=90))
    assert run("prune", "--dry-run") == 0
    assert "Would delete 1 snapshots" in capsys.readouterr().out
    assert "before-old-20250101T000000Z" in repo.tags


def test_verify_log_detects_tampering(run, capsys, controller):
    run("create", "ci-agent", "--reason", "first")
    run("create", "ci-agent", "--reason", "second")
    assert run("verify-log") == 0

    log = controller.get_log_path()
    log.write_text(log.read_text().replace("first", "forged"))
    assert run("verify-log") == 1
    assert "checksum mismatch" in capsys.readouterr().err


def test_status_json(run, capsys):
    run("create", "ci-agent", "--reason", "x")
    capsys.readouterr()
    assert run("status", "--json") == 0
    status = json.loads(capsys.readouterr().out)
    assert status["snapshotCount"] == 1
    assert status["fresh"] is True


def test_unlogged_create_has_distinct_exit_code(run, capsys, controller, repo):
    controller.get_log_path().mkdir(parents=True)
    assert run("create", "ci-agent", "--reason", "x") == cli.EXIT_DEGRADED
    assert "not recorded in the audit log" in capsys.readouterr().err
    assert len(repo.tags) == 1
