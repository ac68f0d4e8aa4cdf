"""safepoint CLI.

Principles:
- Safe by default: restores detach HEAD unless destructive mode is asked for.
- Destructive restores need a change id, an approver and a typed confirmation.
- Exit codes follow the error class so automation can branch on them.
  A change that succeeded but is missing from the audit log exits with
  EXIT_DEGRADED.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from .. import __version__
from ..core.controller import SafepointController
from ..core.errors import SafepointError
from ..core.models import ApprovalToken, CreateResult, RestoreMode, SnapshotKind
from ..utils.log import configure_logging

DEFAULT_LIST_LIMIT = 20
EXIT_DEGRADED = 6


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safepoint",
        description="safepoint - snapshots before risky automated changes, and the way back",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output",
    )
    parser.add_argument(
        "--project-root",
        default=None,
        help="Repository root (default: $SAFEPOINT_PROJECT_ROOT or cwd)",
    )

    subparsers = parser.add_subparsers(dest="command")
    kinds = [k.value for k in SnapshotKind] + ["tag"]

    create = subparsers.add_parser("create", help="Create a snapshot")
    create.add_argument("creator_id", help="Who is asking, e.g. the agent name")
    _add_create_options(create, kinds)

    check = subparsers.add_parser("check", help="Is there a recent-enough snapshot? (exit 0 if so)")
    check.add_argument("--threshold", type=int, default=None, help="Freshness window in minutes")

    ensure = subparsers.add_parser("ensure", help="Create a snapshot unless a fresh one exists")
    ensure.add_argument("creator_id", help="Who is asking, e.g. the agent name")
    ensure.add_argument("--threshold", type=int, default=None, help="Freshness window in minutes")
    _add_create_options(ensure, kinds)

    list_cmd = subparsers.add_parser("list", help="List snapshots, newest first")
    list_cmd.add_argument("--kind", choices=kinds, default=None)
    list_cmd.add_argument("--all", action="store_true", help=f"Show more than {DEFAULT_LIST_LIMIT}")
    list_cmd.add_argument("--json", action="store_true", help="Machine-readable output")

    restore = subparsers.add_parser("restore", help="Restore the working tree to a snapshot")
    restore.add_argument("name", help="Snapshot name")
    restore.add_argument(
        "--destructive",
        action="store_true",
        help="Hard-reset the current branch (needs --change-id and --approver)",
    )
    restore.add_argument("--change-id", default=None, help="Change-control ticket, e.g. CHG-1042")
    restore.add_argument("--approver", default=None, help="Who approved the change")
    restore.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    prune = subparsers.add_parser("prune", help="Delete snapshots past the retention period")
    prune.add_argument("--days", type=int, default=None, help="Retention in days")
    prune.add_argument("--dry-run", action="store_true", help="Only show what would be deleted")
    prune.add_argument(
        "--exempt",
        action="append",
        default=None,
        metavar="PATTERN",
        help="Glob of names to keep (repeatable; replaces the configured list)",
    )

    subparsers.add_parser("verify-log", help="Check the audit log checksum chain")

    unpack = subparsers.add_parser("unpack", help="Extract an archive snapshot")
    unpack.add_argument("name", help="Archive snapshot name")
    unpack.add_argument("destination", help="Directory outside the repository")

    status = subparsers.add_parser("status", help="Show snapshot status")
    status.add_argument("--json", action="store_true", help="Machine-readable output")

    return parser


def _add_create_options(sub: argparse.ArgumentParser, kinds: list[str]) -> None:
    sub.add_argument("--kind", choices=kinds, default=None, help="Snapshot kind (default from config)")
    sub.add_argument("--reason", "-m", default="", help="Why the snapshot is taken")
    sub.add_argument(
        "--sensitivity",
        choices=["unclassified", "internal", "confidential", "regulated"],
        default=None,
        help="Data classification (confidential/regulated archives are encrypted)",
    )
    sub.add_argument(
        "--uncommitted",
        choices=["auto-commit", "abort", "include"],
        default=None,
        help="What to do with uncommitted changes",
    )


def main(args: list[str] | None = None) -> int:
    parser = create_parser()
    parsed = parser.parse_args(args)

    configure_logging(parsed.debug)

    if not parsed.command:
        parser.print_help()
        return 1

    controller = SafepointController(project_root=_determine_project_root(parsed.project_root))
    handlers = {
        "create": cmd_create,
        "check": cmd_check,
        "ensure": cmd_ensure,
        "list": cmd_list,
        "restore": cmd_restore,
        "prune": cmd_prune,
        "verify-log": cmd_verify_log,
        "unpack": cmd_unpack,
        "status": cmd_status,
    }
    try:
        return handlers[parsed.command](parsed, controller)
    except SafepointError as e:
        _print_error(e)
        return e.exit_code


def cmd_create(args: argparse.Namespace, controller: SafepointController) -> int:
    result = controller.create_snapshot(
        args.creator_id,
        args.kind,
        args.reason,
        data_sensitivity=args.sensitivity,
        uncommitted_policy=args.uncommitted,
    )
    return _print_created(result)


def cmd_check(args: argparse.Namespace, controller: SafepointController) -> int:
    result = controller.check_fresh_snapshot(args.threshold)
    if result.found:
        print(f"Fresh: {result.name}  ({result.age_minutes} min old)")
        return 0
    if result.name:
        print(f"Stale: newest is {result.name}  ({result.age_minutes} min old)")
    else:
        print("No snapshots found.")
    return 1


def cmd_ensure(args: argparse.Namespace, controller: SafepointController) -> int:
    freshness, result = controller.ensure_snapshot(
        args.creator_id,
        args.kind,
        args.reason,
        threshold_minutes=args.threshold,
        data_sensitivity=args.sensitivity,
        uncommitted_policy=args.uncommitted,
    )
    if result is None:
        print(f"Reusing: {freshness.name}  ({freshness.age_minutes} min old)")
        return 0
    return _print_created(result)


def cmd_list(args: argparse.Namespace, controller: SafepointController) -> int:
    snapshots = controller.list_snapshots(args.kind)
    if args.json:
        print(json.dumps([s.to_dict() for s in snapshots], indent=2))
        return 0
    if not snapshots:
        print("No snapshots found.")
        return 0

    shown = snapshots if args.all else snapshots[:DEFAULT_LIST_LIMIT]
    print("#   Kind     Created               Commit        Name")
    for idx, snap in enumerate(shown, 1):
        created = snap.created_at.strftime("%Y-%m-%d %H:%M:%S") if snap.created_at else "?"
        commit = (snap.commit_ref or "")[:12]
        print(f"{idx:<3} {snap.kind.value:<8} {created:<21} {commit:<13} {snap.name}")

    if len(snapshots) > len(shown):
        print(f"\nShowing newest {len(shown)} of {len(snapshots)}. Use --all to see everything.")
    return 0


def cmd_restore(args: argparse.Namespace, controller: SafepointController) -> int:
    mode = RestoreMode.DESTRUCTIVE if args.destructive else RestoreMode.PRESERVING
    approval = None
    if args.change_id or args.approver:
        approval = ApprovalToken(change_id=args.change_id or "", approver=args.approver or "")

    if mode == RestoreMode.DESTRUCTIVE and approval is not None and not args.yes:
        print(f"This will hard-reset the current branch to {args.name}.")
        print("Uncommitted work is committed and snapshotted first.\n")
        typed = input("Type RESTORE to continue: ").strip()
        if typed != "RESTORE":
            print("Canceled.")
            return 0

    result = controller.restore_snapshot(args.name, mode, approval)
    print(f"Restored to: {result.name}  ({result.resolved_ref[:12]}, {result.mode.value})")
    if result.backup_name:
        print(f"Pre-restore backup: {result.backup_name}")
    diff = result.diff
    print(f"Changes undone: {diff.files_changed} files, +{diff.insertions} -{diff.deletions}")
    if mode == RestoreMode.PRESERVING:
        print("HEAD is detached; your branches were not moved.")
    if result.degraded:
        print("Warning: restore is not fully recorded in the audit log.", file=sys.stderr)
        if result.audit_error:
            print(f"Audit error: {result.audit_error}", file=sys.stderr)
        return EXIT_DEGRADED
    return 0


def cmd_prune(args: argparse.Namespace, controller: SafepointController) -> int:
    report = controller.prune_snapshots(args.days, dry_run=args.dry_run, exempt_patterns=args.exempt)

    verb = "Would delete" if report.dry_run else "Deleted"
    names = report.candidates if report.dry_run else report.deleted
    print(f"{verb} {len(names)} snapshots older than {report.retention_days} days.")
    for name in names[:10]:
        print(f"  - {name}")
    if len(names) > 10:
        print(f"  ... and {len(names) - 10} more")

    if report.exempt:
        print(f"Kept {len(report.exempt)} exempt snapshots.")
    if report.unclassified_retained:
        print(
            f"Note: {len(report.unclassified_retained)} exempt snapshots have no data classification.",
            file=sys.stderr,
        )
    for name, error in report.failed.items():
        print(f"Failed: {name}: {error}", file=sys.stderr)
    for name in report.audit_failures:
        print(f"Warning: deletion of {name} is not in the audit log", file=sys.stderr)
    return 1 if report.failed else 0


def cmd_verify_log(args: argparse.Namespace, controller: SafepointController) -> int:
    broken = controller.verify_audit_log()
    if not broken:
        print(f"Audit log intact: {controller.get_log_path()}")
        return 0
    print(f"Audit log checksum mismatch in {len(broken)} entries:", file=sys.stderr)
    for heading in broken:
        print(f"  - {heading}", file=sys.stderr)
    return 1


def cmd_unpack(args: argparse.Namespace, controller: SafepointController) -> int:
    count = controller.unpack_archive(args.name, args.destination)
    print(f"Unpacked {count} files from {args.name} into {args.destination}")
    return 0


def cmd_status(args: argparse.Namespace, controller: SafepointController) -> int:
    status = controller.get_status()
    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
        return 0

    print(f"Project:    {status.project_root}")
    print(f"Branch:     {status.current_line or '(detached)'}")
    print(f"Snapshots:  {status.snapshot_count}")
    if status.latest_snapshot:
        state = "fresh" if status.fresh else "stale"
        print(f"Latest:     {status.latest_snapshot}  ({status.latest_age_minutes} min, {state})")
    else:
        print("Latest:     none")
    log_state = "intact" if status.broken_log_entries == 0 else f"{status.broken_log_entries} broken entries"
    print(f"Audit log:  {status.log_path} ({log_state})")
    return 0


def _print_created(result: CreateResult) -> int:
    snap = result.snapshot
    print(f"Created: {snap.name}  ({snap.kind.value} at {snap.commit_ref[:12]})")
    if snap.archive_path is not None:
        suffix = ", encrypted" if snap.encrypted else ""
        print(f"Archive: {snap.archive_path}  ({snap.size} bytes{suffix})")
    if result.degraded:
        print("Warning: snapshot created but not recorded in the audit log.", file=sys.stderr)
        if result.audit_error:
            print(f"Audit error: {result.audit_error}", file=sys.stderr)
        return EXIT_DEGRADED
    return 0


def _print_error(error: SafepointError) -> None:
    where = f"{error.operation}: " if error.operation else ""
    resource = f" [{error.resource}]" if error.resource else ""
    print(f"Error: {where}{error.message}{resource}", file=sys.stderr)
    if error.hint:
        print(f"Hint: {error.hint}", file=sys.stderr)


def _determine_project_root(explicit: str | None = None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    val = os.environ.get("SAFEPOINT_PROJECT_ROOT")
    if isinstance(val, str) and val.strip():
        return Path(val.strip()).expanduser()
    return Path.cwd()
