"""Tests for CLI argument parsing, polling and dispatch."""

from __future__ import annotations

import argparse
from unittest.mock import MagicMock, patch

import pytest

from scripts.cli import (
    PollIntervals,
    _filter_args,
    _validate_paging_args,
    build_parser,
    main,
    run_command,
    watch_progress,
)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


class TestParser:
    def test_sync_takes_account(self) -> None:
        args = _parse_args(["sync", "acct"])
        assert args.command == "sync"
        assert args.account_id == "acct"

    def test_explore_defaults(self) -> None:
        args = _parse_args(["explore", "acct"])
        assert args.page == 1
        assert args.limit is None
        assert args.mode == "browse"
        assert args.is_unread is None

    def test_explore_flags(self) -> None:
        args = _parse_args(
            ["explore", "acct", "--sender", "a@x.com", "--unread", "true", "--sort-by", "size",
             "--page", "3", "--limit", "20", "--mode", "cleanup"]
        )
        assert args.sender == "a@x.com"
        assert args.is_unread is True
        assert args.sort_by == "size"
        assert (args.page, args.limit, args.mode) == (3, 20, "cleanup")

    def test_trash_targets(self) -> None:
        args = _parse_args(["trash", "acct", "--ids", "m1", "m2"])
        assert args.ids == ["m1", "m2"]
        assert _filter_args(args) == {}

    def test_delete_by_filter(self) -> None:
        args = _parse_args(["delete", "acct", "--sender-domain", "shop.example", "--older-than", "5"])
        assert args.ids is None
        assert _filter_args(args) == {"sender_domain": "shop.example", "date_to": 5}

    def test_invalid_sort_rejected(self) -> None:
        with pytest.raises(SystemExit):
            _parse_args(["explore", "acct", "--sort-by", "weight"])

    def test_unsubscribe_takes_many_senders(self) -> None:
        args = _parse_args(["unsubscribe", "acct", "a@x.com", "b@y.com"])
        assert args.senders == ["a@x.com", "b@y.com"]


class TestPollIntervals:
    def test_active_until_first_snapshot(self) -> None:
        intervals = PollIntervals(active=1.0, idle=10.0)

        assert intervals.interval_for({"status": "idle", "has_snapshot": False}) == 1.0
        assert intervals.interval_for({"status": "running", "has_snapshot": True}) == 1.0
        assert intervals.interval_for({"status": "completed", "has_snapshot": True}) == 10.0


class TestWatchProgress:
    def test_polls_until_terminal(self, capsys: pytest.CaptureFixture[str]) -> None:
        running = {
            "success": True,
            "status": "running",
            "has_snapshot": True,
            "progress": {"phase": "downloading content", "processed": 50, "total": 120,
                         "percentage": 41.67, "rate": 10.0, "eta_text": "7s",
                         "message": "Processing 50 of 120 emails"},
        }
        done = {**running, "status": "completed"}
        mirror = MagicMock()
        mirror.get_sync_progress.side_effect = [
            {"success": True, "status": "pending", "has_snapshot": False, "progress": None},
            running,
            done,
        ]
        sleeps: list[float] = []

        result = watch_progress(mirror, "acct", PollIntervals(active=0.5, idle=5.0), sleep=sleeps.append)

        assert result is done
        assert sleeps == [0.5, 0.5]
        assert "Processing 50 of 120 emails" in capsys.readouterr().out

    def test_stops_on_error(self) -> None:
        mirror = MagicMock()
        mirror.get_sync_progress.return_value = {"success": False, "error": "not_found"}

        result = watch_progress(mirror, "ghost", PollIntervals(), sleep=lambda s: None)

        assert result["error"] == "not_found"


class TestRunCommand:
    def test_trash_dispatch(self, capsys: pytest.CaptureFixture[str]) -> None:
        mirror = MagicMock()
        mirror.trash_emails.return_value = {"success": True, "trashed_count": 2}

        code = run_command(_parse_args(["trash", "acct", "--ids", "m1", "m2"]), mirror, PollIntervals())

        assert code == 0
        mirror.trash_emails.assert_called_once_with("acct", ids=["m1", "m2"], filters=None)
        assert '"trashed_count": 2' in capsys.readouterr().out

    def test_failure_exit_code(self) -> None:
        mirror = MagicMock()
        mirror.cancel_sync.return_value = {"success": False, "error": "not_found"}

        assert run_command(_parse_args(["cancel", "acct"]), mirror, PollIntervals()) == 1

    def test_recover_lists_job_ids(self, capsys: pytest.CaptureFixture[str]) -> None:
        mirror = MagicMock()
        mirror.recover_interrupted.return_value = [MagicMock(job_id="j1")]

        assert run_command(_parse_args(["recover"]), mirror, PollIntervals()) == 0
        assert '"j1"' in capsys.readouterr().out


class TestValidatePagingArgs:
    def test_accepts_defaults(self) -> None:
        _validate_paging_args(_parse_args(["explore", "acct"]))

    @pytest.mark.parametrize("argv", [["--page", "0"], ["--limit", "-5"]])
    def test_rejects_non_positive(self, argv: list[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            _validate_paging_args(_parse_args(["explore", "acct", *argv]))
        assert exc_info.value.code == 1


class TestMain:
    def test_no_command_prints_help(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1

    @patch("scripts.cli.setup_logging")
    @patch("scripts.cli.GmailMirrorSettings")
    @patch("scripts.cli.GmailMirror")
    def test_exit_code_follows_result(self, mock_mirror_cls, mock_settings_cls, _logging) -> None:
        mock_settings_cls.return_value = MagicMock(
            log_level="INFO", poll_interval_active_seconds=1.0, poll_interval_idle_seconds=10.0
        )
        mirror = mock_mirror_cls.return_value
        mirror.get_stats.return_value = {"success": True, "total": 0}

        with pytest.raises(SystemExit) as exc_info:
            main(["stats", "acct"])

        assert exc_info.value.code == 0
        mirror.close.assert_called_once()

    @patch("scripts.cli.setup_logging")
    @patch("scripts.cli.GmailMirrorSettings")
    @patch("scripts.cli.GmailMirror")
    def test_keyboard_interrupt(self, mock_mirror_cls, mock_settings_cls, _logging) -> None:
        mock_settings_cls.return_value = MagicMock(
            log_level="INFO", poll_interval_active_seconds=1.0, poll_interval_idle_seconds=10.0
        )
        mirror = mock_mirror_cls.return_value
        mirror.cancel_sync.side_effect = KeyboardInterrupt

        with pytest.raises(SystemExit) as exc_info:
            main(["cancel", "acct"])

        assert exc_info.value.code == 130
        mirror.close.assert_called_once()
