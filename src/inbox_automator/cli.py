"""Command-line entry point for Inbox Automator."""

from __future__ import annotations

import argparse
import sys
import threading
from pathlib import Path

from inbox_automator.core import AppSettings, configure_logging, load_app_settings
from inbox_automator.core.container import ServiceContainer
from inbox_automator.core.interfaces import AutomationError
from inbox_automator.core.models import DrainReport, RunSummary
from inbox_automator.engine.factory import (
    build_automation_service,
    build_container,
    build_scheduler,
)
from inbox_automator.engine.scheduler import SyncScheduler
from inbox_automator.storage import SqliteRepository

COMMANDS = ("info", "sync", "drain", "retry", "run-all", "schedule")


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Inbox Automator rule engine")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=COMMANDS,
        help="Operation to execute.",
    )
    parser.add_argument(
        "target",
        nargs="?",
        default=None,
        help="Account id for sync, user id for drain, message id for retry.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="With schedule: run a single pass instead of looping.",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the process exit code."""
    command = args.command
    if command == "info":
        _print_info(settings)
        return 0
    if command in {"sync", "drain", "retry"} and not args.target:
        print(f"The '{command}' command requires a target id.", file=sys.stderr)
        return 2

    container = build_container(settings)
    try:
        with SqliteRepository(settings.storage) as repository:
            if command == "schedule":
                return _schedule(build_scheduler(container, repository), once=args.once)
            service = build_automation_service(container, repository)
            if command == "sync":
                _print_run(args.target, service.trigger_sync(args.target))
            elif command == "drain":
                _print_drain(service.drain_queue(args.target))
            elif command == "retry":
                if not service.retry_message(args.target):
                    print(f"Message {args.target} is not in a failed state.")
                    return 1
                print(f"Message {args.target} queued for another attempt.")
            elif command == "run-all":
                return _run_all(service.run_all())
    except AutomationError as exc:
        print(f"{command} failed: {exc}", file=sys.stderr)
        return 1
    finally:
        _close_connectors(container)
    return 0


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def _print_info(settings: AppSettings) -> None:
    print("Inbox Automator is ready. Configure IMAP and LLM settings to get started.")
    print(f"IMAP host: {settings.imap.host}")
    print(f"LLM model: {settings.llm.model} at {settings.llm.base_url}")
    print(f"Database path: {settings.storage.db_path}")
    print(f"Raw message store: {settings.storage.raw_store_dir}")
    with SqliteRepository(settings.storage) as repository:
        accounts = repository.list_active_accounts()
        if not accounts:
            print("No active accounts.")
        for account in accounts:
            counts = repository.count_messages_by_status(account.id)
            summary = ", ".join(
                f"{status}={total}" for status, total in sorted(counts.items())
            )
            print(
                f"- {account.id} [{account.provider}] {account.email_address}: "
                f"status={account.last_sync_status} "
                f"checkpoint={account.sync_checkpoint or '-'} "
                f"messages: {summary or 'none'}"
            )


def _print_drain(report: DrainReport) -> None:
    print(
        f"Drained {report.batches} batch(es): {report.completed} completed, "
        f"{report.failed} failed, {report.skipped} skipped, "
        f"{report.actions_executed} action(s) executed."
    )


def _print_run(account_id: str, summary: RunSummary) -> None:
    sync = summary.sync
    print(
        f"Account {account_id}: synced {sync.processed} new message(s), "
        f"{sync.skipped} skipped, {sync.errors} error(s). "
        f"Checkpoint: {sync.checkpoint or '-'}"
    )
    print(
        f"Retention sweep matched {summary.sweep.matched} of "
        f"{summary.sweep.scanned} message(s)."
    )
    _print_drain(summary.drain)


def _run_all(results: dict[str, RunSummary | Exception]) -> int:
    if not results:
        print("No active accounts to sync.")
        return 0
    failures = 0
    for account_id, outcome in results.items():
        if isinstance(outcome, Exception):
            failures += 1
            print(f"Account {account_id}: failed ({outcome})")
        else:
            _print_run(account_id, outcome)
    return 1 if failures else 0


def _schedule(scheduler: SyncScheduler, *, once: bool) -> int:
    if once:
        scheduler.tick()
        print("Scheduler pass complete.")
        return 0
    stop = threading.Event()
    print("Scheduler running; press Ctrl+C to stop.")
    try:
        scheduler.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()
        print("Scheduler stopped.")
    return 0


def _close_connectors(container: ServiceContainer) -> None:
    for connector in container.connectors().values():
        close = getattr(connector, "close", None)
        if callable(close):
            close()


__all__ = ["build_parser", "execute", "main"]


if __name__ == "__main__":
    main()
