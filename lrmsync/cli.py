#!/usr/bin/env python3
"""
lrm-sync - synchronize localization resources with a remote

Keeps a local working copy of localization entries in step with a remote
(cloud API or a shared/repository directory) using a three-way merge against
the last synchronized state. Conflicts are never resolved silently.

Commands:
    init      - Write lrmsync.yaml for a project
    status    - Show pending local/remote changes
    push      - Merge local changes into the remote
    pull      - Merge remote changes into the working copy
    log       - Show sync history
    revert    - Undo a history entry through the merge engine
    snapshot  - Create, list, delete, restore or diff named snapshots
    backup    - List or restore automatic pre-operation backups

Example Workflow:
    1. lrm-sync init --remote-dir ../shared/strings
    2. lrm-sync pull
       -> status "conflicted"? A conflict sheet path is returned.
    3. [Edit the sheet: add '> local', '> remote' or '> custom: text' per conflict]
    4. lrm-sync pull --sheet .lrm/conflicts-pull.txt
    5. lrm-sync push --message "New onboarding strings"
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from .backup import BackupManager
from .config import CONFIG_FILE, RemoteConfig, SyncConfig, load_config
from .conflict_sheet import ConflictSheetDecoder, ConflictSheetEncoder
from .errors import ConfigError, LrmSyncError
from .history import HistoryLedger
from .resolver import strategy_from_name
from .snapshots import RetentionQuota, SnapshotManager
from .storage import FileWorkingCopy
from .sync import SyncOrchestrator, SyncScope
from .transport import DirectoryRemote, HttpRemote

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_CONFLICTED = 2

HISTORY_FILE = "history.jsonl"
LOCK_FILE = "sync.lock"


def build_remote(remote: RemoteConfig, project_dir: Path, api_key=None):
    if remote.type == "http":
        return HttpRemote(
            remote.url,
            remote.project,
            api_key=api_key,
            timeout=remote.timeout,
            max_retries=remote.max_retries,
        )
    path = Path(remote.path)
    if not path.is_absolute():
        path = project_dir / path
    return DirectoryRemote(str(path))


def build_orchestrator(project_dir: str, config: SyncConfig) -> SyncOrchestrator:
    """Wire storage, remote, ledger, backups and snapshots from configuration."""
    root = Path(project_dir).resolve()
    store = FileWorkingCopy(str(root), config.resources_file, config.state_dir)
    state_dir = store.state_dir
    return SyncOrchestrator(
        store=store,
        remote=build_remote(config.remote, root, config.api_key),
        ledger=HistoryLedger(str(state_dir / HISTORY_FILE)),
        backups=BackupManager(store, str(state_dir / "backups")),
        snapshots=SnapshotManager(
            store,
            str(state_dir / "snapshots"),
            RetentionQuota(config.retention.max_snapshots, config.retention.evict_oldest),
        ),
        actor=config.actor,
        source=config.source,
        lock_path=state_dir / LOCK_FILE,
    )


def _orchestrator(args):
    config = load_config(args.project_dir)
    return build_orchestrator(args.project_dir, config), config


def _strategy(args, config):
    name = getattr(args, "resolve", None) or config.default_strategy
    try:
        return strategy_from_name(name)
    except ValueError as e:
        raise ConfigError(str(e))


def _sheet_path(orchestrator: SyncOrchestrator, operation: str) -> Path:
    return orchestrator.store.state_dir / f"conflicts-{operation}.txt"


def _read_sheet(path: str, operation: str, conflicts: list):
    """
    Decode a filled-in sheet against the conflicts it answers.

    Returns:
        Tuple of (Prompt or None, error result dict or None)
    """
    sheet_path = Path(path)
    if not sheet_path.exists():
        return None, {
            "status": "error",
            "error_type": "FILE_NOT_FOUND",
            "error": f"Conflict sheet not found: {path}",
            "suggestion": f"Run 'lrm-sync {operation}' first to generate a sheet",
        }
    strategy, errors = ConflictSheetDecoder().decode(sheet_path.read_text(encoding="utf-8"), conflicts)
    if errors:
        return None, {
            "status": "error",
            "error_type": "SHEET_INVALID",
            "errors": [e.to_dict() for e in errors],
            "summary": f"{len(errors)} problem(s) in {sheet_path}. Fix them and re-run.",
        }
    return strategy, None


def _run_sync(args, operation: str, run) -> tuple[dict, int]:
    """
    Run a sync-style operation, handling strategies and conflict sheets.

    Revert merges twice; its second ("remote") stage is answered by a separate
    sheet passed with --remote-sheet.

    Args:
        args: Parsed arguments (resolve, sheet, remote_sheet, dry_run, message)
        operation: Operation name used in sheet paths and commands
        run: Callable(orchestrator, strategy, dry_run, remote_strategy) -> SyncOutcome

    Returns:
        Tuple of (result dict, exit code)
    """
    orchestrator, config = _orchestrator(args)
    strategy = _strategy(args, config)
    remote_strategy = strategy

    if getattr(args, "sheet", None):
        # Read the open conflicts without writing anything, then answer them.
        preview = run(orchestrator, None, True, None)
        conflicts = preview.conflicts if preview.stage != "remote" else []
        strategy, error = _read_sheet(args.sheet, operation, conflicts)
        if error:
            return error, EXIT_ERROR

    if getattr(args, "remote_sheet", None):
        preview = run(orchestrator, strategy, True, None)
        conflicts = preview.conflicts if preview.stage == "remote" else []
        remote_strategy, error = _read_sheet(args.remote_sheet, operation, conflicts)
        if error:
            return error, EXIT_ERROR

    outcome = run(orchestrator, strategy, args.dry_run, remote_strategy)
    result = outcome.to_dict()

    if outcome.status == "conflicted":
        remote_stage = outcome.stage == "remote"
        sheet_operation = f"{operation}-remote" if remote_stage else operation
        sheet = _sheet_path(orchestrator, sheet_operation)
        sheet.parent.mkdir(parents=True, exist_ok=True)
        sheet.write_text(
            ConflictSheetEncoder().encode(outcome.conflicts, sheet_operation),
            encoding="utf-8",
        )
        command = args.command_line
        if remote_stage and getattr(args, "sheet", None):
            command += f" --sheet {args.sheet}"
        flag = "--remote-sheet" if remote_stage else "--sheet"
        result["sheet"] = str(sheet)
        result["summary"] = f"{len(outcome.conflicts)} conflict(s). Nothing was written."
        result["next_action"] = {
            "edit": str(sheet),
            "then_run": f"lrm-sync {command} {flag} {sheet}",
            "or_run": f"lrm-sync {args.command_line} --resolve local|remote",
        }
        return result, EXIT_CONFLICTED

    result["summary"] = (
        f"{operation}: {outcome.status}. "
        f"Local {outcome.local_changes.summary()}, remote {outcome.remote_changes.summary()}."
    )
    return result, 0


def cmd_init(args) -> dict:
    """Write lrmsync.yaml for a project directory."""
    project_dir = Path(args.project_dir)
    config_path = project_dir / CONFIG_FILE
    if config_path.exists() and not args.force:
        return {
            "status": "error",
            "error_type": "ALREADY_INITIALIZED",
            "error": f"{config_path} already exists",
            "suggestion": "Use --force to overwrite it",
        }

    if args.url:
        remote = RemoteConfig(type="http", url=args.url, project=args.project)
    else:
        remote = RemoteConfig(type="directory", path=args.remote_dir)
    config = SyncConfig(
        actor=args.actor or "",
        resources_file=args.resources,
        default_strategy=args.default_strategy,
        remote=remote,
    )
    config.validate()
    path = config.save(str(project_dir))
    (project_dir / config.state_dir).mkdir(parents=True, exist_ok=True)

    return {
        "status": "ok",
        "config_file": str(path),
        "remote": config.remote.type,
        "summary": f"Project initialized. Remote: {remote.url or remote.path}",
        "next_action": {
            "command": "lrm-sync pull",
            "description": "Fetch the remote state into the working copy",
        },
    }


def cmd_status(args) -> dict:
    orchestrator, _ = _orchestrator(args)
    result = orchestrator.status(SyncScope(args.scope))
    if result["in_sync"]:
        result["summary"] = "Working copy and remote are in sync."
    elif result["pending_conflicts"]:
        result["summary"] = f"{result['pending_conflicts']} conflict(s) pending."
        result["next_action"] = {"command": "lrm-sync pull", "description": "Merge and review conflicts"}
    else:
        result["summary"] = "Changes pending."
        result["next_action"] = {"command": "lrm-sync pull && lrm-sync push", "description": "Synchronize"}
    return result


def cmd_push(args) -> tuple[dict, int]:
    scope = SyncScope(args.scope)
    args.command_line = f"push --scope {args.scope}"
    return _run_sync(args, "push", lambda o, strategy, dry_run, _: o.push(
        strategy=strategy, scope=scope, dry_run=dry_run, message=args.message,
    ))


def cmd_pull(args) -> tuple[dict, int]:
    scope = SyncScope(args.scope)
    args.command_line = f"pull --scope {args.scope}"
    return _run_sync(args, "pull", lambda o, strategy, dry_run, _: o.pull(
        strategy=strategy, scope=scope, dry_run=dry_run, message=args.message,
    ))


def cmd_revert(args) -> tuple[dict, int]:
    args.command_line = f"revert {args.id}"
    return _run_sync(args, "revert", lambda o, strategy, dry_run, remote_strategy: o.revert(
        args.id, strategy=strategy, dry_run=dry_run, message=args.message,
        remote_strategy=remote_strategy,
    ))


def cmd_log(args) -> dict:
    orchestrator, _ = _orchestrator(args)
    entries = orchestrator.ledger.tail(args.limit)
    items = []
    for entry in entries:
        item = entry.to_dict()
        if not args.full:
            item.pop("changes")
        items.append(item)
    return {
        "status": "ok",
        "entries": items,
        "summary": f"{len(items)} history entr{'y' if len(items) == 1 else 'ies'}",
    }


def cmd_snapshot(args):
    orchestrator, _ = _orchestrator(args)
    manager = orchestrator.snapshots

    if args.snapshot_command == "create":
        named = manager.create(args.label)
        return {
            "status": "ok",
            "snapshot": named.to_dict(include_entries=False),
            "summary": f"Snapshot {named.id} created ({len(named.snapshot)} entries)",
        }
    if args.snapshot_command == "list":
        snapshots = manager.list()
        return {
            "status": "ok",
            "snapshots": [s.to_dict(include_entries=False) for s in snapshots],
            "summary": f"{len(snapshots)} snapshot(s)",
        }
    if args.snapshot_command == "delete":
        manager.delete(args.id)
        return {"status": "ok", "deleted": args.id, "summary": f"Snapshot {args.id} deleted"}
    if args.snapshot_command == "diff":
        changes = manager.diff(args.id, args.to)
        return {
            "status": "ok",
            "from": args.id,
            "to": args.to or "working-copy",
            "summary": changes.summary(),
            "changes": changes.to_dict(),
        }
    # restore
    args.command_line = f"snapshot restore {args.id}"
    return _run_sync(args, "restore", lambda o, strategy, dry_run, _: o.restore_snapshot(
        args.id, strategy=strategy, dry_run=dry_run, message=args.message,
    ))


def cmd_backup(args) -> dict:
    orchestrator, _ = _orchestrator(args)

    if args.backup_command == "list":
        backups = orchestrator.backups.list()
        return {
            "status": "ok",
            "backups": [b.to_dict() for b in backups],
            "summary": f"{len(backups)} backup(s)",
        }
    if args.backup_command == "info":
        info = orchestrator.backups.info(args.id)
        return {
            "status": "ok",
            "backup": info,
            "summary": f"{info['id']}: {info['entry_count']} entries before {info['operation']}",
        }
    if args.backup_command == "diff":
        changes = orchestrator.backups.diff(args.id)
        return {
            "status": "ok",
            "from": args.id,
            "to": "working-copy",
            "summary": changes.summary(),
            "changes": changes.to_dict(),
            "next_action": {
                "command": f"lrm-sync backup restore {args.id}",
                "description": "Write this backup back over the working copy",
            },
        }
    outcome = orchestrator.restore_backup(args.id, message=args.message)
    result = outcome.to_dict()
    result["summary"] = (
        f"Working copy restored from {args.id}. "
        f"Previous state saved as {outcome.backup.id}."
    )
    return result


def _add_sync_options(parser, scoped: bool = True) -> None:
    parser.add_argument("--dry-run", action="store_true", help="Compute the result without writing anything")
    parser.add_argument("--resolve", "-r", choices=["none", "local", "remote"],
                        help="Resolve every conflict one way (default: from lrmsync.yaml)")
    parser.add_argument("--sheet", help="Filled-in conflict sheet with one decision per conflict")
    parser.add_argument("--message", "-m", help="Note recorded in history")
    if scoped:
        parser.add_argument("--scope", default="all", choices=[s.value for s in SyncScope],
                            help="Entries to synchronize (default: all)")


def configure_logging(verbose: bool) -> None:
    """Log to stderr so stdout stays machine readable JSON."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="lrm-sync",
        description="lrm-sync - three-way merge sync for localization resources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Use a shared folder (or repository checkout) as the remote
  lrm-sync init --remote-dir ../shared/strings

  # Use the cloud API (key from LRM_API_KEY)
  lrm-sync init --url https://lrm.example.com/api --project my-app

  # See what would change, then pull
  lrm-sync pull --dry-run
  lrm-sync pull

  # Resolve conflicts from a sheet
  lrm-sync pull --sheet .lrm/conflicts-pull.txt

  # Push only configuration entries
  lrm-sync push --scope config

  # Undo an operation
  lrm-sync log
  lrm-sync revert 3fa9c1d2

  # Inspect a backup before restoring it
  lrm-sync backup diff pull-backup-20260101-120000-000000

Conflict Sheet Format:
  #CONFLICTS:v1:op=pull:count=1
  [welcome.title|en|0] kind=both-modified
    base: Welcome
    local: Welcome!
    remote: Hello
  > custom: Welcome back
  ---
        """,
    )
    parser.add_argument("--project-dir", "-C", default=".", help="Project directory (default: .)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging on stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init", help="Write lrmsync.yaml")
    target = init_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--remote-dir", help="Directory remote (shared folder or repository checkout)")
    target.add_argument("--url", help="Cloud API base URL")
    init_parser.add_argument("--project", help="Cloud project slug (with --url)")
    init_parser.add_argument("--actor", help="Name recorded in history (default: LRM_ACTOR or OS user)")
    init_parser.add_argument("--resources", default="resources.json", help="Working copy file")
    init_parser.add_argument("--default-strategy", default="none", choices=["none", "local", "remote"],
                             help="Conflict strategy when --resolve is not given")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing lrmsync.yaml")

    status_parser = subparsers.add_parser("status", help="Show pending changes")
    status_parser.add_argument("--scope", default="all", choices=[s.value for s in SyncScope])

    push_parser = subparsers.add_parser("push", help="Merge local changes into the remote")
    _add_sync_options(push_parser)

    pull_parser = subparsers.add_parser("pull", help="Merge remote changes into the working copy")
    _add_sync_options(pull_parser)

    log_parser = subparsers.add_parser("log", help="Show sync history")
    log_parser.add_argument("--limit", "-n", type=int, default=20, help="Entries to show (default: 20)")
    log_parser.add_argument("--full", action="store_true", help="Include full change sets")

    revert_parser = subparsers.add_parser("revert", help="Undo a history entry")
    revert_parser.add_argument("id", help="History entry id")
    _add_sync_options(revert_parser, scoped=False)
    revert_parser.add_argument("--remote-sheet",
                               help="Filled-in sheet for conflicts with the remote's current state")

    snapshot_parser = subparsers.add_parser("snapshot", help="Named snapshots")
    snapshot_sub = snapshot_parser.add_subparsers(dest="snapshot_command", required=True)
    snap_create = snapshot_sub.add_parser("create", help="Capture the working copy")
    snap_create.add_argument("label", help="Snapshot label")
    snapshot_sub.add_parser("list", help="List snapshots")
    snap_delete = snapshot_sub.add_parser("delete", help="Delete a snapshot")
    snap_delete.add_argument("id")
    snap_restore = snapshot_sub.add_parser("restore", help="Merge a snapshot back into the working copy")
    snap_restore.add_argument("id")
    _add_sync_options(snap_restore, scoped=False)
    snap_diff = snapshot_sub.add_parser("diff", help="Diff a snapshot against another or the working copy")
    snap_diff.add_argument("id")
    snap_diff.add_argument("to", nargs="?", help="Second snapshot (default: working copy)")

    backup_parser = subparsers.add_parser("backup", help="Automatic backups")
    backup_sub = backup_parser.add_subparsers(dest="backup_command", required=True)
    backup_sub.add_parser("list", help="List backups, newest first")
    backup_info = backup_sub.add_parser("info", help="Show one backup's details")
    backup_info.add_argument("id")
    backup_diff = backup_sub.add_parser("diff", help="Diff a backup against the working copy")
    backup_diff.add_argument("id")
    backup_restore = backup_sub.add_parser("restore", help="Write a backup straight back")
    backup_restore.add_argument("id")
    backup_restore.add_argument("--message", "-m", help="Note recorded in history")

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_ERROR)

    commands = {
        "init": cmd_init,
        "status": cmd_status,
        "push": cmd_push,
        "pull": cmd_pull,
        "log": cmd_log,
        "revert": cmd_revert,
        "snapshot": cmd_snapshot,
        "backup": cmd_backup,
    }

    try:
        result = commands[args.command](args)
    except LrmSyncError as e:
        print(json.dumps(e.to_dict(), indent=2, ensure_ascii=False), file=sys.stderr)
        sys.exit(EXIT_ERROR)
    except Exception as e:
        logger.debug("Unhandled error", exc_info=True)
        print(json.dumps({
            "status": "error",
            "error": str(e),
            "error_type": type(e).__name__,
        }), file=sys.stderr)
        sys.exit(EXIT_ERROR)

    exit_code = 0
    if isinstance(result, tuple):
        result, exit_code = result
    elif result.get("status") == "error":
        exit_code = EXIT_ERROR
    print(json.dumps(result, indent=2, ensure_ascii=False))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
