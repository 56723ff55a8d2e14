"""Console entry point for the biometric client's offline sync queue."""
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from core.log import read_sync_log
from core.settings import CONFIG_PATH, DB_PATH, SYNC_LOG_PATH, TOKEN_PATH
from services.errors import ConfigError, QueueError, SyncClientError
from services.orchestrator import SyncApp, build_app


def _print_stats(app: SyncApp) -> None:
    stats = app.queue.get_queue_statistics()
    print(f"Pending:      {stats.pending_count}")
    print(f"  registrations: {stats.pending_registrations}")
    print(f"  verifications: {stats.pending_verifications}")
    print(f"In progress:  {stats.in_progress_count}")
    print(f"Error:        {stats.error_count}")
    print(f"Abandoned:    {stats.abandoned_count}")
    print(f"Synced:       {stats.synced_count}")


def _print_failed(app: SyncApp) -> None:
    failed = app.queue.get_failed_operations()
    if not failed:
        print("No failed operations.")
        return
    for op in failed:
        roll = op.payload.get("roll_number", "?")
        print(
            f"#{op.id:<6} {op.operation_type:<13} {op.sync_status:<10} "
            f"attempts={op.sync_attempts} roll={roll} error={op.last_error or '-'}"
        )


def _print_history(app: SyncApp, limit: int) -> None:
    entries = app.history.recent(limit)
    if not entries:
        print("No sync history yet.")
        return
    for entry in entries:
        started = entry.started_at.strftime("%Y-%m-%d %H:%M:%S") if entry.started_at else "-"
        print(
            f"{started} {entry.sync_type:<18} {entry.direction:<7} "
            f"records={entry.records_count} ok={entry.success_count} failed={entry.failed_count} "
            f"{entry.error_message or ''}".rstrip()
        )


def _run(app: SyncApp, poll_seconds: float) -> None:
    recovered = app.start()
    if recovered:
        print(f"Recovered {recovered} interrupted operations.")
    print("Background sync running. Press Ctrl+C to stop.")
    try:
        while True:
            # Polling drives the connectivity transitions the processor listens to
            app.connectivity.is_online()
            time.sleep(poll_seconds)
    except KeyboardInterrupt:
        print("Stopping...")


def _sync_now(app: SyncApp) -> int:
    summary = app.processor.process_now()
    if summary is None:
        print("Sync did not run (offline, not logged in, or a cycle is already running).")
        return 1
    print(
        f"Processed {summary.total_processed}: {summary.success_count} synced, "
        f"{summary.failed_count} failed ({summary.abandoned_count} abandoned)."
    )
    return 0


def _remote_status(app: SyncApp) -> None:
    status = app.client.get_remote_sync_status()
    print(f"Students:                {status.total_students}")
    print(f"Registered fingerprints: {status.registered_fingerprints}")
    print(f"Pending verifications:   {status.pending_verifications}")
    print(f"Completed verifications: {status.completed_verifications}")
    if status.server_time:
        print(f"Server time:             {status.server_time}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__ or "")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="Operation store (default: %(default)s)")
    parser.add_argument(
        "--config", type=Path, default=CONFIG_PATH, help="Config file (default: %(default)s)"
    )
    parser.add_argument(
        "--token-file", type=Path, default=TOKEN_PATH, help="Token file (default: %(default)s)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run background sync until interrupted")
    run.add_argument("--poll", type=float, default=30.0, help="Connectivity poll interval in seconds")
    sub.add_parser("sync-now", help="Run one processing cycle immediately")
    sub.add_parser("stats", help="Show queue statistics")
    sub.add_parser("failed", help="List error and abandoned operations")
    reset = sub.add_parser("reset", help="Reset a failed operation for retry")
    reset.add_argument("operation_id", type=int)
    cleanup = sub.add_parser("cleanup", help="Delete synced operations older than N days")
    cleanup.add_argument("--days", type=int, default=None)
    sub.add_parser("remote-status", help="Show the server's sync statistics")
    history = sub.add_parser("history", help="Show recent sync journal entries")
    history.add_argument("--limit", type=int, default=20)
    log = sub.add_parser("log", help="Show the tail of the sync log")
    log.add_argument("--lines", type=int, default=100)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "log":
        print(read_sync_log(args.lines, SYNC_LOG_PATH))
        return 0

    try:
        app = build_app(db_path=args.db, config_path=args.config, token_path=args.token_file)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        if args.command == "run":
            _run(app, args.poll)
        elif args.command == "sync-now":
            return _sync_now(app)
        elif args.command == "stats":
            _print_stats(app)
        elif args.command == "failed":
            _print_failed(app)
        elif args.command == "reset":
            app.queue.reset_operation_for_retry(args.operation_id)
            print(f"Operation #{args.operation_id} queued for retry.")
        elif args.command == "cleanup":
            deleted = app.queue.cleanup_completed_operations(args.days)
            print(f"Removed {deleted} synced operations.")
        elif args.command == "remote-status":
            _remote_status(app)
        elif args.command == "history":
            _print_history(app, args.limit)
    except (QueueError, SyncClientError) as exc:
        logging.getLogger("biosync.sync").error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        app.shutdown()
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
