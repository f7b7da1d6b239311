#!/usr/bin/env python3
"""
media-offload: CLI for driving a migration run and managing API keys.

Usage:
    python migration_cli.py status
    python migration_cli.py start [--reset]
    python migration_cli.py run [--max-batches 100] [--interval 0.5]
    python migration_cli.py pause | resume | cancel | reset | batch
    python migration_cli.py errors [--limit 20]
    python migration_cli.py remove-object wp-content/2023/01/photo.jpg
    python migration_cli.py create-key --name "Ops laptop"
    python migration_cli.py list-keys
    python migration_cli.py revoke-key --id 3
    python migration_cli.py migrate-db

Reads the same DB_*, S3_* and MIGRATION_* settings as the API server.
"""

import argparse
import json
import logging
import sys
import time

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)

CLI_ACTOR = "cli"


def _controller():
    from services import get_controller
    return get_controller()


def _print_snapshot(snapshot, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(snapshot.to_dict(), indent=2))
        return
    print(
        f"{snapshot.status:<10} {snapshot.done}/{snapshot.total} "
        f"({snapshot.percent_complete}%)  uploaded={snapshot.uploaded_count} "
        f"skipped={snapshot.skipped_count} errors={snapshot.error_count}"
    )
    if snapshot.message:
        print(f"  {snapshot.message}")
    if snapshot.last_error:
        print(f"  last error: {snapshot.last_error}")


def _audited(action: str, snapshot) -> None:
    from activity_log import log_activity
    log_activity(
        f"migration_{action}",
        actor=CLI_ACTOR,
        run_id=snapshot.run_id,
        details={"status": snapshot.status, "done": snapshot.done, "total": snapshot.total},
    )


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------


def cmd_status(args):
    """Show the current run."""
    _print_snapshot(_controller().status(), args.json)


def cmd_start(args):
    """Start (or restart) the run."""
    snapshot = _controller().start(reset=args.reset)
    _audited("start", snapshot)
    _print_snapshot(snapshot, args.json)


def cmd_pause(args):
    snapshot = _controller().pause()
    _audited("pause", snapshot)
    _print_snapshot(snapshot, args.json)


def cmd_resume(args):
    snapshot = _controller().resume()
    _audited("resume", snapshot)
    _print_snapshot(snapshot, args.json)


def cmd_cancel(args):
    snapshot = _controller().cancel()
    _audited("cancel", snapshot)
    _print_snapshot(snapshot, args.json)


def cmd_reset(args):
    snapshot = _controller().reset()
    _audited("reset", snapshot)
    _print_snapshot(snapshot, args.json)


def cmd_batch(args):
    """Process one batch."""
    _print_snapshot(_controller().process_batch(), args.json)


def cmd_run(args):
    """Process batches until the run completes, stops running or the limit is hit."""
    from migration_models import MigrationStatus, NotRunningError

    controller = _controller()
    if args.start:
        controller.start()

    batches = 0
    snapshot = controller.status()
    while args.max_batches is None or batches < args.max_batches:
        try:
            snapshot = controller.process_batch()
        except NotRunningError as e:
            logger.info("Stopping: %s", e)
            break
        batches += 1
        _print_snapshot(snapshot, args.json)
        if snapshot.complete or snapshot.status != MigrationStatus.RUNNING.value:
            break
        if args.interval:
            time.sleep(args.interval)

    print(f"Ran {batches} batch(es).")
    return snapshot


def cmd_errors(args):
    """Show the most recent per-file failures."""
    errors = _controller().recent_errors(args.limit)
    if args.json:
        print(json.dumps(errors, indent=2))
        return
    if not errors:
        print("No errors recorded.")
        return
    for entry in errors:
        print(f"{entry['path']}: {entry['error']}")


def cmd_remove_object(args):
    """Delete the uploaded copy of a migrated file."""
    from activity_log import log_activity
    marker = _controller().remove_offloaded(args.path)
    log_activity("object_delete", actor=CLI_ACTOR, details={"path": args.path, **marker.to_dict()})
    print(f"Removed s3://{marker.bucket}/{marker.key}")


# ---------------------------------------------------------------------------
# Keys, schema and audit log
# ---------------------------------------------------------------------------


def cmd_create_key(args):
    """Create a new API key."""
    from auth import create_api_key_record
    result = create_api_key_record(args.name, args.permission)
    print("\n  API Key created successfully!\n")
    print(f"  Name:        {result['name']}")
    print(f"  ID:          {result['id']}")
    print(f"  Prefix:      {result['prefix']}")
    print(f"  Permissions: {', '.join(result['permissions'])}")
    print(f"  Key:         {result['key']}")
    print("\n  Store this key securely. It will NOT be shown again.\n")


def cmd_list_keys(args):
    """List all API keys."""
    from auth import list_api_keys
    keys = list_api_keys()
    if not keys:
        print("No API keys found.")
        return

    print(f"\n{'ID':<6} {'Name':<20} {'Prefix':<14} {'Created':<28} {'Active'}")
    print("-" * 76)
    for k in keys:
        active = "yes" if k["active"] else "no"
        print(f"{k['id']:<6} {k['name']:<20} {k['prefix']:<14} {k['created_at']:<28} {active}")
    print()


def cmd_revoke_key(args):
    """Revoke an API key."""
    from auth import revoke_api_key
    if revoke_api_key(args.id):
        print(f"Key {args.id} revoked successfully.")
    else:
        print(f"Key {args.id} not found or already revoked.", file=sys.stderr)
        sys.exit(1)


def cmd_migrate_db(args):
    """Apply pending schema migrations."""
    from migrate import run_migrations
    if not run_migrations():
        sys.exit(1)


def cmd_activity(args):
    """Show (or export) the audit trail."""
    from activity_log import export_csv, get_recent
    if args.csv:
        sys.stdout.write(export_csv(limit=args.limit))
        return
    for entry in get_recent(limit=args.limit):
        print(f"{entry['ts']}  {entry['action']:<22} {entry.get('actor') or '-':<16} {entry.get('run_id') or ''}")


def cmd_prune_activity(args):
    from activity_log import apply_retention
    print(f"Deleted {apply_retention(args.days)} entries.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="media-offload",
        description="Migrate a media uploads directory to S3-compatible storage",
    )
    parser.add_argument("--json", action="store_true", help="Print snapshots as JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("status", help="Show the current run")
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser("start", help="Start the run")
    p.add_argument("--reset", action="store_true", help="Discard the current run first")
    p.set_defaults(func=cmd_start)

    for name, func, help_text in (
        ("pause", cmd_pause, "Pause the run"),
        ("resume", cmd_resume, "Resume a paused run"),
        ("cancel", cmd_cancel, "Cancel the run"),
        ("reset", cmd_reset, "Discard the run and return to ready"),
        ("batch", cmd_batch, "Process one batch"),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.set_defaults(func=func)

    p = subparsers.add_parser("run", help="Process batches until the run completes")
    p.add_argument("--start", action="store_true", help="Start (or resume) the run first")
    p.add_argument("--max-batches", type=int, default=None, help="Stop after N batches")
    p.add_argument("--interval", type=float, default=0.0, help="Seconds to wait between batches")
    p.set_defaults(func=cmd_run)

    p = subparsers.add_parser("errors", help="Show recent per-file failures")
    p.add_argument("--limit", type=int, default=None, help="Number of errors to show")
    p.set_defaults(func=cmd_errors)

    p = subparsers.add_parser("remove-object", help="Delete the uploaded copy of a migrated file")
    p.add_argument("path", help="File path (absolute or relative to the uploads root)")
    p.set_defaults(func=cmd_remove_object)

    p = subparsers.add_parser("create-key", help="Create a new API key")
    p.add_argument("--name", required=True, help="Human-readable name for the key")
    p.add_argument("--permission", action="append", help="Permission to grant (repeatable)")
    p.set_defaults(func=cmd_create_key)

    p = subparsers.add_parser("list-keys", help="List all API keys")
    p.set_defaults(func=cmd_list_keys)

    p = subparsers.add_parser("revoke-key", help="Revoke an API key immediately")
    p.add_argument("--id", required=True, type=int, help="Key ID to revoke")
    p.set_defaults(func=cmd_revoke_key)

    p = subparsers.add_parser("migrate-db", help="Apply pending schema migrations")
    p.set_defaults(func=cmd_migrate_db)

    p = subparsers.add_parser("activity", help="Show the audit trail")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--csv", action="store_true", help="Export as CSV")
    p.set_defaults(func=cmd_activity)

    p = subparsers.add_parser("prune-activity", help="Delete old audit entries")
    p.add_argument("--days", type=int, required=True)
    p.set_defaults(func=cmd_prune_activity)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
