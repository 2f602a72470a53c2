"""Page-at-a-time full sync and history-based delta sync."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from gmail_mirror.core.exceptions import ParseError, RateLimitError, RemoteUnavailableError
from gmail_mirror.core.gmail_client import GmailClient
from gmail_mirror.core.models import (
    Account,
    DeltaResult,
    MirroredMessage,
    PageResult,
    SyncJob,
)
from gmail_mirror.core.normalizer import MessageNormalizer
from gmail_mirror.pipeline.progress import ProgressTracker
from gmail_mirror.storage.mirror import MirrorStore, utc_now

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Pulls messages from Gmail into the mirror.

    Full sync, one page per call:
        list page at job.cursor → skip ids already written this run →
        batch-fetch metadata → normalize → upsert + advance job, one transaction

    Delta sync:
        history since last_delta_cursor → fetch added → upsert, relabel,
        delete and advance the cursor, one transaction
    """

    def __init__(
        self,
        store: MirrorStore,
        progress: ProgressTracker,
        normalizer: MessageNormalizer | None = None,
        *,
        page_size: int = 500,
        batch_size: int = 50,
        page_retry_limit: int = 3,
        page_retry_delay_seconds: float = 5.0,
    ) -> None:
        self._store = store
        self._progress = progress
        self._normalizer = normalizer or MessageNormalizer()
        self._page_size = page_size
        self._batch_size = batch_size
        self._page_retry_limit = page_retry_limit
        self._page_retry_delay = page_retry_delay_seconds

    def run_page(
        self,
        client: GmailClient,
        job: SyncJob,
        should_cancel: Callable[[], bool] | None = None,
    ) -> PageResult:
        """Ingest the page at ``job.cursor`` and advance the job.

        Throttling that outlasts the client's own backoff retries the whole
        page up to ``page_retry_limit`` times. Nothing is written for a page
        that fails, so the cursor stays on it.

        Args:
            client: Gmail client for the job's account.
            job: The running job; its cursor/processed/total are advanced in place.
            should_cancel: Checked once the page is durable.

        Returns:
            PageResult for the page, with ``cancel_requested`` set if a
            cancellation was observed at the page boundary.
        """
        attempt = 0
        while True:
            try:
                result = self._ingest_page(client, job)
                break
            except (RateLimitError, RemoteUnavailableError) as e:
                attempt += 1
                if attempt > self._page_retry_limit:
                    logger.error(
                        "Page at cursor %s failed after %d retries: %s",
                        job.cursor, self._page_retry_limit, e,
                    )
                    raise
                delay = self._page_retry_delay * attempt
                logger.warning(
                    "Page at cursor %s throttled (retry %d/%d in %.1fs): %s",
                    job.cursor, attempt, self._page_retry_limit, delay, e,
                )
                time.sleep(delay)

        if should_cancel is not None and should_cancel():
            return PageResult(
                page_size=result.page_size,
                fetched=result.fetched,
                skipped=result.skipped,
                missing=result.missing,
                next_cursor=result.next_cursor,
                cancel_requested=True,
            )
        return result

    def _ingest_page(self, client: GmailClient, job: SyncJob) -> PageResult:
        page = client.list_message_page(job.cursor, self._page_size)
        ids = [stub.message_id for stub in page.stubs]

        already = set()
        if job.run_started_at is not None and ids:
            already = self._store.synced_ids_since(job.account_id, ids, job.run_started_at)
        to_fetch = [mid for mid in ids if mid not in already]

        messages, missing, unserved = self._fetch_and_normalize(client, to_fetch)

        saved = (job.cursor, job.processed, job.total, list(job.rate_samples), job.updated_at)
        try:
            with self._store.transaction():
                stamp = utc_now()
                self._store.upsert_messages(job.account_id, messages, synced_at=stamp)
                self._store.touch_messages(job.account_id, unserved, synced_at=stamp)
                job.cursor = page.next_page_token
                job.processed += len(ids)
                job.total = max(job.total, page.result_size_estimate, job.processed)
                job.updated_at = utc_now()
                self._progress.record(job, len(ids))
                self._store.update_job(job)
                self._progress.publish(job)
        except Exception:
            job.cursor, job.processed, job.total, job.rate_samples, job.updated_at = saved
            raise

        logger.info(
            "Page for %s: %d ids (%d fetched, %d skipped, %d missing), %d/%d",
            job.account_id, len(ids), len(messages), len(already), missing,
            job.processed, job.total,
        )
        return PageResult(
            page_size=len(ids),
            fetched=len(messages),
            skipped=len(already),
            missing=missing,
            next_cursor=page.next_page_token,
        )

    def _fetch_and_normalize(
        self, client: GmailClient, message_ids: list[str]
    ) -> tuple[list[MirroredMessage], int, list[str]]:
        """Batch-fetch and normalize.

        Returns:
            Tuple of (messages, count not mirrored, ids that still exist
            remotely but could not be fetched or parsed). Ids the batch
            neither returned nor reported unavailable are gone (404).
        """
        messages: list[MirroredMessage] = []
        missing = 0
        unserved: list[str] = []
        for start in range(0, len(message_ids), self._batch_size):
            chunk = message_ids[start : start + self._batch_size]
            raw_messages, unavailable = client.fetch_messages_batch(chunk)
            missing += len(chunk) - len(raw_messages)
            unserved.extend(unavailable)
            for raw in raw_messages:
                message = self._normalize(raw)
                if message is None:
                    missing += 1
                    if raw.get("id"):
                        unserved.append(raw["id"])
                else:
                    messages.append(message)
        return messages, missing, unserved

    def _normalize(self, raw: dict[str, Any]) -> MirroredMessage | None:
        try:
            return self._normalizer.normalize(raw)
        except ParseError as e:
            logger.warning("Skipping unparseable message: %s", e)
            return None

    def run_delta(self, client: GmailClient, account: Account, job: SyncJob) -> DeltaResult:
        """Apply remote changes since ``account.last_delta_cursor``.

        The cursor only advances in the same transaction that applies the
        changes, so a failure replays the same window next time.

        Raises:
            InvalidCursorError: If the history id has expired.
        """
        changes = client.list_history(account.last_delta_cursor or "")
        deleted_ids = set(changes.deleted_ids)
        messages, missing, _ = self._fetch_and_normalize(client, list(changes.added_ids))
        if missing:
            logger.info("%d added messages could not be mirrored", missing)

        label_changes = {
            mid: change
            for mid, change in changes.label_changes.items()
            if mid not in deleted_ids
        }

        with self._store.transaction():
            self._store.upsert_messages(account.account_id, messages, synced_at=utc_now())
            labels_updated = self._store.apply_label_changes(account.account_id, label_changes)
            self._store.delete_messages(account.account_id, deleted_ids)
            self._store.set_delta_cursor(account.account_id, changes.new_cursor)
            job.processed = len(messages) + len(deleted_ids)
            job.updated_at = utc_now()
            self._store.update_job(job)

        logger.info(
            "Delta for %s: %d added, %d deleted, %d relabelled, cursor %s -> %s",
            account.account_id, len(messages), len(deleted_ids), labels_updated,
            account.last_delta_cursor, changes.new_cursor,
        )
        return DeltaResult(
            added=len(messages),
            deleted=len(deleted_ids),
            labels_updated=labels_updated,
            new_cursor=changes.new_cursor,
        )
