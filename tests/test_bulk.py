"""Tests for bulk trash and permanent delete."""

from __future__ import annotations

import pytest
from conftest import FakeGmailClient, seed_messages

from gmail_mirror.actions.bulk import BulkActionExecutor
from gmail_mirror.core.exceptions import (
    AuthExpiredError,
    InvalidRequestError,
    NotFoundError,
    RemoteUnavailableError,
)
from gmail_mirror.core.normalizer import MessageNormalizer
from gmail_mirror.query.explorer import ExplorerFilters, ExplorerQueryEngine
from gmail_mirror.storage.mirror import MirrorStore

TARGETS = ["m000", "m001", "m002", "m003", "m004"]


@pytest.fixture
def executor(
    store: MirrorStore, normalizer: MessageNormalizer, fake_client: FakeGmailClient
) -> BulkActionExecutor:
    seed_messages(store, normalizer, [fake_client.messages[f"m{i:03d}"] for i in range(10)])
    return BulkActionExecutor(
        store, ExplorerQueryEngine(store), lambda account_id: fake_client, max_workers=3
    )


def trashed_rows(store: MirrorStore) -> int:
    return store.conn.execute(
        "SELECT COUNT(*) AS cnt FROM messages WHERE account_id = 'acct' AND is_trash = 1"
    ).fetchone()["cnt"]


class TestTrash:
    def test_partial_failure_is_reported_per_id(
        self, executor: BulkActionExecutor, store: MirrorStore, fake_client: FakeGmailClient
    ) -> None:
        fake_client.trash_failures["m002"] = RemoteUnavailableError("503")

        result = executor.trash("acct", ids=TARGETS)

        assert result.succeeded == 4
        assert result.failed == 1
        assert result.failed_ids == ("m002",)
        assert result.partial is True
        assert result.message == "Moved 4 emails to trash, 1 failed"
        assert trashed_rows(store) == 4
        assert store.get_message("acct", "m002").is_trash is False
        assert store.count_messages("acct") == 10

    def test_trash_by_filter(
        self, executor: BulkActionExecutor, store: MirrorStore, fake_client: FakeGmailClient
    ) -> None:
        result = executor.trash("acct", filters=ExplorerFilters(sender="deals@shop.example"))

        assert result.trashed_count == 10
        assert sorted(fake_client.trashed) == [f"m{i:03d}" for i in range(10)]
        assert trashed_rows(store) == 10

    def test_vanished_message_counts_as_failure(
        self, executor: BulkActionExecutor, fake_client: FakeGmailClient
    ) -> None:
        fake_client.trash_failures["m001"] = NotFoundError("gone")

        result = executor.trash("acct", ids=["m000", "m001"])

        assert (result.succeeded, result.failed) == (1, 1)

    def test_duplicate_ids_are_applied_once(
        self, executor: BulkActionExecutor, fake_client: FakeGmailClient
    ) -> None:
        result = executor.trash("acct", ids=["m000", "m000", "m001"])

        assert result.requested == 2
        assert sorted(fake_client.trashed) == ["m000", "m001"]

    def test_no_matches(self, executor: BulkActionExecutor) -> None:
        result = executor.trash("acct", filters=ExplorerFilters(sender="nobody@nowhere"))

        assert result.requested == 0
        assert result.message == "No emails matched"

    def test_all_auth_failures_raise(
        self, executor: BulkActionExecutor, fake_client: FakeGmailClient, store: MirrorStore
    ) -> None:
        for mid in TARGETS:
            fake_client.trash_failures[mid] = AuthExpiredError("invalid_grant")

        with pytest.raises(AuthExpiredError):
            executor.trash("acct", ids=TARGETS)

        assert trashed_rows(store) == 0


class TestPermanentDelete:
    def test_deletes_rows_gmail_confirmed(
        self, executor: BulkActionExecutor, store: MirrorStore, fake_client: FakeGmailClient
    ) -> None:
        fake_client.delete_failures["m004"] = RemoteUnavailableError("503")

        result = executor.permanently_delete("acct", ids=TARGETS)

        assert result.deleted_count == 4
        assert result.failed_ids == ("m004",)
        assert result.message == "Permanently deleted 4 emails, 1 failed"
        assert store.count_messages("acct") == 6
        assert store.get_message("acct", "m004") is not None

    def test_already_gone_remotely_counts_as_deleted(
        self, executor: BulkActionExecutor, store: MirrorStore, fake_client: FakeGmailClient
    ) -> None:
        fake_client.delete_failures["m000"] = NotFoundError("gone")

        result = executor.permanently_delete("acct", ids=["m000"])

        assert result.deleted_count == 1
        assert store.get_message("acct", "m000") is None


class TestTargetResolution:
    def test_ids_and_filters_are_exclusive(self, executor: BulkActionExecutor) -> None:
        with pytest.raises(InvalidRequestError):
            executor.trash("acct", ids=["m000"], filters=ExplorerFilters())
        with pytest.raises(InvalidRequestError):
            executor.trash("acct")

    def test_unconstrained_filters_are_rejected(
        self, executor: BulkActionExecutor, fake_client: FakeGmailClient
    ) -> None:
        with pytest.raises(InvalidRequestError):
            executor.trash("acct", filters=ExplorerFilters())
        with pytest.raises(InvalidRequestError):
            executor.permanently_delete("acct", filters=ExplorerFilters(sort_by="size"))

        assert fake_client.trashed == []
        assert fake_client.deleted == []

    def test_unknown_account(self, executor: BulkActionExecutor) -> None:
        with pytest.raises(NotFoundError):
            executor.trash("nobody", ids=["m000"])
