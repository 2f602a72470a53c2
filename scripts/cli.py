"""Minimal CLI entry point for manual operation of Gmail Mirror."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from gmail_mirror.config.settings import GmailMirrorSettings
from gmail_mirror.service import GmailMirror

ACTIVE_STATUSES = {"pending", "running"}


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@dataclass(frozen=True)
class PollIntervals:
    """How often to poll progress, keyed by what the last poll returned."""

    active: float = 1.0
    idle: float = 10.0

    @classmethod
    def from_settings(cls, settings: GmailMirrorSettings) -> PollIntervals:
        return cls(
            active=settings.poll_interval_active_seconds,
            idle=settings.poll_interval_idle_seconds,
        )

    def interval_for(self, response: dict[str, Any]) -> float:
        """Tight while a job is active or no snapshot exists yet, loose otherwise."""
        if not response.get("has_snapshot") or response.get("status") in ACTIVE_STATUSES:
            return self.active
        return self.idle


def print_progress(response: dict[str, Any]) -> None:
    """Print one progress line to stdout."""
    progress = response.get("progress")
    if not progress:
        print(f"[{response.get('status')}] waiting for first progress report", end="\r", flush=True)
        return
    eta = progress.get("eta_text") or "-"
    print(
        f"[{progress['phase']}] {progress['processed']}/{progress['total']} "
        f"({progress['percentage']:.1f}%) rate={progress['rate']:.1f}/s eta={eta} "
        f"{progress['message']}",
        end="\r",
        flush=True,
    )


def watch_progress(
    mirror: GmailMirror,
    account_id: str,
    intervals: PollIntervals,
    *,
    until_done: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """Poll progress until the account leaves pending/running.

    Returns the last progress response.
    """
    while True:
        response = mirror.get_sync_progress(account_id)
        if not response.get("success"):
            return response
        print_progress(response)
        if until_done and response.get("has_snapshot") and response["status"] not in ACTIVE_STATUSES:
            print()
            return response
        sleep(intervals.interval_for(response))


def _print_json(data: dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


def _add_paging_args(subparser: argparse.ArgumentParser) -> None:
    """Add --page and --limit flags to a subparser."""
    subparser.add_argument("--page", type=int, default=1, help="Page number (1-based)")
    subparser.add_argument("--limit", type=int, default=None, help="Rows per page")


def _add_target_args(subparser: argparse.ArgumentParser) -> None:
    """Add --ids and filter flags for bulk actions."""
    subparser.add_argument("--ids", nargs="+", default=None, help="Explicit message ids")
    subparser.add_argument("--sender", help="Comma-separated sender emails")
    subparser.add_argument("--sender-domain", dest="sender_domain", help="Comma-separated domains")
    subparser.add_argument("--category", help="Category label, e.g. CATEGORY_PROMOTIONS")
    subparser.add_argument("--older-than", dest="date_to", type=int, help="internalDate upper bound (ms)")


def _filter_args(args: argparse.Namespace) -> dict[str, Any]:
    keys = (
        "sender", "sender_domain", "category", "date_to", "search",
        "is_unread", "is_trash", "is_spam", "sort_by", "sort_order",
    )
    return {k: getattr(args, k) for k in keys if getattr(args, k, None) is not None}


def _validate_paging_args(args: argparse.Namespace) -> None:
    """Reject non-positive paging values."""
    if getattr(args, "page", 1) < 1:
        print("Error: --page must be positive", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "limit", None) is not None and args.limit <= 0:
        print("Error: --limit must be positive", file=sys.stderr)
        sys.exit(1)


def _flag(value: str) -> bool:
    return value.lower() == "true"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Gmail Mirror - Mirror a mailbox locally and triage it in bulk"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    add_account = subparsers.add_parser("add-account", help="Register an account")
    add_account.add_argument("account_id")
    add_account.add_argument("email")

    for name, help_text in (
        ("sync", "Start a full sync and wait for it"),
        ("resume", "Resume a cancelled or failed sync and wait for it"),
        ("delta", "Apply remote changes since the last sync"),
        ("cancel", "Cancel the active sync"),
        ("stats", "Show mailbox statistics"),
        ("auth-restored", "Mark an account's token as refreshed"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("account_id")

    progress = subparsers.add_parser("progress", help="Show or watch sync progress")
    progress.add_argument("account_id")
    progress.add_argument("--watch", action="store_true", help="Poll until the sync finishes")

    subparsers.add_parser("recover", help="Fail jobs left running by a dead process")

    explore = subparsers.add_parser("explore", help="Browse mirrored emails")
    explore.add_argument("account_id")
    explore.add_argument("--sender")
    explore.add_argument("--sender-domain", dest="sender_domain")
    explore.add_argument("--category")
    explore.add_argument("--search")
    explore.add_argument("--unread", dest="is_unread", type=_flag, default=None)
    explore.add_argument("--trash", dest="is_trash", type=_flag, default=None)
    explore.add_argument("--spam", dest="is_spam", type=_flag, default=None)
    explore.add_argument("--sort-by", dest="sort_by", choices=["date", "size", "sender"])
    explore.add_argument("--sort-order", dest="sort_order", choices=["asc", "desc"])
    explore.add_argument("--mode", choices=["browse", "cleanup"], default="browse")
    _add_paging_args(explore)

    subscriptions = subparsers.add_parser("subscriptions", help="List senders with unsubscribe links")
    subscriptions.add_argument("account_id")
    subscriptions.add_argument("--search")
    subscriptions.add_argument(
        "--sort-by", dest="sort_by", choices=["count", "size", "first_date", "latest_date", "name"]
    )
    _add_paging_args(subscriptions)

    unsubscribe = subparsers.add_parser("unsubscribe", help="Mark senders as unsubscribed")
    unsubscribe.add_argument("account_id")
    unsubscribe.add_argument("senders", nargs="+")

    for name, help_text in (
        ("trash", "Move emails to trash"),
        ("delete", "Permanently delete emails"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("account_id")
        _add_target_args(sub)

    return parser


def run_command(args: argparse.Namespace, mirror: GmailMirror, intervals: PollIntervals) -> int:
    """Dispatch one parsed command; returns the process exit code."""
    command = args.command
    result: dict[str, Any]

    if command == "add-account":
        result = mirror.register_account(args.account_id, args.email)
    elif command == "sync":
        result = mirror.start_sync(args.account_id)
        if result["success"]:
            print(f"Started job {result['job_id']} ({result['total_messages']} messages)")
            result = watch_progress(mirror, args.account_id, intervals)
    elif command == "resume":
        result = mirror.resume_sync(args.account_id)
        if result["success"]:
            print(result["message"])
            result = watch_progress(mirror, args.account_id, intervals)
    elif command == "delta":
        result = mirror.delta_sync(args.account_id)
        if result["success"] and "job_id" in result:
            print(result["message"])
            result = watch_progress(mirror, args.account_id, intervals)
    elif command == "cancel":
        result = mirror.cancel_sync(args.account_id)
    elif command == "progress":
        result = (
            watch_progress(mirror, args.account_id, intervals)
            if args.watch
            else mirror.get_sync_progress(args.account_id)
        )
    elif command == "auth-restored":
        result = mirror.report_auth_restored(args.account_id)
    elif command == "recover":
        jobs = mirror.recover_interrupted()
        result = {"success": True, "recovered": [job.job_id for job in jobs]}
    elif command == "stats":
        result = mirror.get_stats(args.account_id)
    elif command == "explore":
        result = mirror.get_explorer_emails(
            args.account_id,
            _filter_args(args) or None,
            page=args.page,
            limit=args.limit,
            mode=args.mode,
        )
    elif command == "subscriptions":
        result = mirror.get_subscriptions(
            args.account_id, page=args.page, limit=args.limit, filters=_filter_args(args)
        )
    elif command == "unsubscribe":
        result = mirror.mark_unsubscribed(args.account_id, senders=args.senders)
    elif command in ("trash", "delete"):
        filters = _filter_args(args) or None
        action = mirror.trash_emails if command == "trash" else mirror.permanently_delete_emails
        result = action(args.account_id, ids=args.ids, filters=filters)
    else:
        print(f"Unknown command: {command}", file=sys.stderr)
        return 1

    _print_json(result)
    return 0 if result.get("success") else 1


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command in ("explore", "subscriptions"):
        _validate_paging_args(args)

    settings = GmailMirrorSettings()
    setup_logging(settings.log_level)

    mirror = GmailMirror(settings=settings)
    intervals = PollIntervals.from_settings(settings)

    try:
        code = run_command(args, mirror, intervals)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        mirror.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
