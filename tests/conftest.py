"""Shared fixtures for Gmail Mirror tests."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from gmail_mirror.config.settings import GmailMirrorSettings
from gmail_mirror.core.exceptions import InvalidCursorError, NotFoundError
from gmail_mirror.core.models import HistoryChanges, LabelChange, MessagePage, MessageStub
from gmail_mirror.core.normalizer import MessageNormalizer
from gmail_mirror.storage.mirror import MirrorStore

BASE_DATE_MS = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


def make_raw_message(
    message_id: str,
    *,
    sender: str = '"Shop" <deals@shop.example>',
    subject: str = "Weekly deals",
    labels: list[str] | None = None,
    size: int = 1024,
    internal_date: int = BASE_DATE_MS,
    unsubscribe: str | None = None,
    attachment: bool = False,
) -> dict[str, Any]:
    """Build a raw Gmail API message as returned with format=metadata."""
    headers = [
        {"name": "From", "value": sender},
        {"name": "Subject", "value": subject},
    ]
    if unsubscribe:
        headers.append({"name": "List-Unsubscribe", "value": unsubscribe})
    payload: dict[str, Any] = {"mimeType": "multipart/mixed", "headers": headers}
    if attachment:
        payload["parts"] = [
            {"mimeType": "text/plain", "filename": ""},
            {"mimeType": "application/pdf", "filename": "invoice.pdf"},
        ]
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD", "CATEGORY_PROMOTIONS"],
        "snippet": f"Snippet for {message_id}",
        "sizeEstimate": size,
        "internalDate": str(internal_date),
        "payload": payload,
    }


class FakeGmailClient:
    """In-memory stand-in for GmailClient.

    Pages are addressed by string offsets, so page tokens are "50", "100", ...
    Every call is recorded so tests can assert what was requested.
    """

    def __init__(self, count: int = 120, history_id: str = "1000") -> None:
        self.messages: dict[str, dict[str, Any]] = {
            f"m{i:03d}": make_raw_message(f"m{i:03d}", internal_date=BASE_DATE_MS + i * DAY_MS)
            for i in range(count)
        }
        self.order: list[str] = list(self.messages)
        self.history_id = history_id
        self.history: HistoryChanges | None = None
        self.history_error: Exception | None = None
        self.list_error: Exception | None = None
        self.estimate_error: Exception | None = None
        self.trash_failures: dict[str, Exception] = {}
        self.delete_failures: dict[str, Exception] = {}
        self.fetch_failures: set[str] = set()
        self.on_list: Callable[[str | None], None] | None = None
        self.listed_tokens: list[str | None] = []
        self.fetched_ids: list[str] = []
        self.trashed: list[str] = []
        self.deleted: list[str] = []
        self._lock = threading.Lock()

    def estimate_total(self) -> int:
        if self.estimate_error is not None:
            raise self.estimate_error
        return len(self.order)

    def current_history_id(self) -> str:
        return self.history_id

    def list_message_page(self, page_token: str | None = None, max_results: int = 500) -> MessagePage:
        with self._lock:
            self.listed_tokens.append(page_token)
        if self.on_list is not None:
            self.on_list(page_token)
        if self.list_error is not None:
            raise self.list_error
        if page_token is not None and not page_token.isdigit():
            raise InvalidCursorError(f"bad token {page_token}")
        start = int(page_token or 0)
        ids = self.order[start : start + max_results]
        end = start + len(ids)
        return MessagePage(
            stubs=tuple(MessageStub(mid, f"t-{mid}") for mid in ids),
            next_page_token=str(end) if end < len(self.order) else None,
            result_size_estimate=len(self.order),
        )

    def fetch_messages_batch(self, message_ids: list[str]) -> tuple[list[dict[str, Any]], list[str]]:
        with self._lock:
            self.fetched_ids.extend(message_ids)
        found = [
            self.messages[mid]
            for mid in message_ids
            if mid in self.messages and mid not in self.fetch_failures
        ]
        failed = [mid for mid in message_ids if mid in self.fetch_failures]
        return found, failed

    def list_history(self, start_history_id: str) -> HistoryChanges:
        if self.history_error is not None:
            raise self.history_error
        if self.history is None:
            return HistoryChanges((), (), {}, start_history_id)
        return self.history

    def trash_message(self, message_id: str) -> None:
        if message_id in self.trash_failures:
            raise self.trash_failures[message_id]
        if message_id not in self.messages:
            raise NotFoundError(f"Not found: {message_id}")
        with self._lock:
            self.trashed.append(message_id)

    def delete_message(self, message_id: str) -> None:
        if message_id in self.delete_failures:
            raise self.delete_failures[message_id]
        with self._lock:
            self.deleted.append(message_id)
        self.messages.pop(message_id, None)

    # -- helpers for tests --------------------------------------------------

    def add_message(self, raw: dict[str, Any]) -> None:
        self.messages[raw["id"]] = raw
        self.order.append(raw["id"])

    def remove_message(self, message_id: str) -> None:
        self.messages.pop(message_id, None)
        self.order.remove(message_id)

    def set_history(
        self,
        added: tuple[str, ...] = (),
        deleted: tuple[str, ...] = (),
        labels: dict[str, LabelChange] | None = None,
        new_cursor: str = "2000",
    ) -> None:
        self.history = HistoryChanges(added, deleted, labels or {}, new_cursor)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "mirror.db"


@pytest.fixture
def store(tmp_db_path: Path) -> MirrorStore:
    """A connected MirrorStore with one registered account."""
    s = MirrorStore(tmp_db_path)
    s.connect()
    s.ensure_account("acct", "me@example.com")
    yield s
    s.close()


@pytest.fixture
def normalizer() -> MessageNormalizer:
    return MessageNormalizer()


@pytest.fixture
def fake_client() -> FakeGmailClient:
    return FakeGmailClient()


@pytest.fixture
def settings(tmp_path: Path) -> GmailMirrorSettings:
    """Settings with small pages and no sleeps."""
    return GmailMirrorSettings(
        database_path=tmp_path / "data" / "mirror.db",
        tokens_dir=tmp_path / "tokens",
        page_size=50,
        batch_size=20,
        inter_page_delay_seconds=0.0,
        initial_backoff_seconds=0.0,
        max_backoff_seconds=0.0,
        page_retry_limit=2,
        page_retry_delay_seconds=0.0,
        max_concurrent_syncs=4,
        bulk_max_workers=4,
        poll_interval_active_seconds=0.0,
        poll_interval_idle_seconds=0.0,
    )


def seed_messages(store: MirrorStore, normalizer: MessageNormalizer, raws: list[dict[str, Any]]) -> None:
    """Write normalized raw messages straight into the mirror for account "acct"."""
    store.upsert_messages("acct", [normalizer.normalize(raw) for raw in raws])
