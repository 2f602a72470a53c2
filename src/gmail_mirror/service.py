"""Client-facing surface of Gmail Mirror.

Every method returns a plain dict with snake_case keys. Expected failures
come back as ``{"success": False, "error": code, "message": ..., "action": hint}``
where ``action`` tells the client whether to retry later, reconnect the
account, or start a new full sync.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from gmail_mirror.actions.bulk import BulkActionExecutor
from gmail_mirror.config.settings import GmailMirrorSettings
from gmail_mirror.core.auth import TokenFileClientFactory
from gmail_mirror.core.exceptions import AuthExpiredError, GmailMirrorError, InvalidCursorError
from gmail_mirror.core.gmail_client import GmailClient
from gmail_mirror.core.models import BulkActionResult, SyncJob
from gmail_mirror.pipeline.ingestion import IngestionPipeline
from gmail_mirror.pipeline.orchestrator import SyncOrchestrator
from gmail_mirror.pipeline.progress import ProgressTracker
from gmail_mirror.query.explorer import ExplorerFilters, ExplorerQueryEngine
from gmail_mirror.query.stats import StatsAggregator
from gmail_mirror.query.subscriptions import SubscriptionExtractor, SubscriptionFilters
from gmail_mirror.storage.mirror import MirrorStore

logger = logging.getLogger(__name__)

ACTION_RETRY_LATER = "retry_later"
ACTION_RECONNECT = "reconnect_account"
ACTION_FULL_SYNC = "start_full_sync"
ACTION_NONE = "none"


def error_response(error: GmailMirrorError) -> dict[str, Any]:
    """Structured failure with a hint for what the client should do next."""
    if isinstance(error, AuthExpiredError):
        action = ACTION_RECONNECT
    elif isinstance(error, InvalidCursorError):
        action = ACTION_FULL_SYNC
    elif error.retryable:
        action = ACTION_RETRY_LATER
    else:
        action = ACTION_NONE
    return {"success": False, "error": error.code, "message": str(error), "action": action}


def _structured(method: Callable[..., dict[str, Any]]) -> Callable[..., dict[str, Any]]:
    @functools.wraps(method)
    def wrapper(self: GmailMirror, *args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            return method(self, *args, **kwargs)
        except GmailMirrorError as e:
            logger.warning("%s failed: %s", method.__name__, e)
            return error_response(e)

    return wrapper


def _job_fields(job: SyncJob) -> dict[str, Any]:
    return {"job_id": job.job_id, "status": str(job.status), "total_messages": job.total}


def _bulk_fields(result: BulkActionResult) -> dict[str, Any]:
    return {
        "requested": result.requested,
        "failed_count": result.failed_count,
        "failed_ids": list(result.failed_ids),
        "partial": result.partial,
        "message": result.message,
        # Failed ids are safe to submit again
        "action": ACTION_RETRY_LATER if result.failed else ACTION_NONE,
    }


class GmailMirror:
    """Wires the sync engine and query layer together behind one object."""

    def __init__(
        self,
        settings: GmailMirrorSettings | None = None,
        *,
        client_factory: Callable[[str], GmailClient] | None = None,
        store: MirrorStore | None = None,
    ) -> None:
        self._settings = settings or GmailMirrorSettings()
        if store is None:
            self._settings.ensure_directories()
            store = MirrorStore(self._settings.database_path)
            store.connect()
        self._store = store
        self._client_factory = client_factory or TokenFileClientFactory(self._settings)

        s = self._settings
        self._progress = ProgressTracker(store, window_size=s.rate_window_size)
        self._pipeline = IngestionPipeline(
            store,
            self._progress,
            page_size=s.page_size,
            batch_size=s.batch_size,
            page_retry_limit=s.page_retry_limit,
            page_retry_delay_seconds=s.page_retry_delay_seconds,
        )
        self._orchestrator = SyncOrchestrator(
            store,
            self._client_factory,
            self._pipeline,
            self._progress,
            max_concurrent_syncs=s.max_concurrent_syncs,
        )
        self._explorer = ExplorerQueryEngine(
            store,
            default_limit=s.default_page_limit,
            browse_max_limit=s.browse_max_limit,
            cleanup_max_limit=s.cleanup_max_limit,
        )
        self._stats = StatsAggregator(store)
        self._subscriptions = SubscriptionExtractor(
            store, default_limit=s.default_page_limit, max_limit=s.browse_max_limit
        )
        self._bulk = BulkActionExecutor(
            store, self._explorer, self._client_factory, max_workers=s.bulk_max_workers
        )

    @property
    def store(self) -> MirrorStore:
        return self._store

    @property
    def orchestrator(self) -> SyncOrchestrator:
        return self._orchestrator

    def register_account(self, account_id: str, email: str) -> dict[str, Any]:
        """Make an account known to the mirror (registration seam)."""
        account = self._store.ensure_account(account_id, email)
        return {"success": True, "account_id": account.account_id, "email": account.email}

    # -- sync -------------------------------------------------------------

    @_structured
    def start_sync(self, account_id: str) -> dict[str, Any]:
        job = self._orchestrator.start(account_id)
        return {"success": True, **_job_fields(job)}

    @_structured
    def get_sync_progress(self, account_id: str) -> dict[str, Any]:
        """Account state plus the latest snapshot, if any.

        ``status`` and ``has_snapshot`` are separate so pollers can pick an
        interval before the first snapshot exists.
        """
        account = self._store.require_account(account_id)
        snapshot = self._progress.snapshot(account_id)
        return {
            "success": True,
            "account_id": account_id,
            "status": str(account.sync_state),
            "has_snapshot": snapshot is not None,
            "progress": snapshot.to_dict() if snapshot else None,
            "last_full_sync_at": (
                account.last_full_sync_at.isoformat() if account.last_full_sync_at else None
            ),
            "last_error": account.last_error,
        }

    @_structured
    def cancel_sync(self, account_id: str) -> dict[str, Any]:
        self._orchestrator.cancel(account_id)
        return {
            "success": True,
            "message": "Cancellation requested, the sync stops after the current page",
        }

    @_structured
    def resume_sync(self, account_id: str) -> dict[str, Any]:
        job = self._orchestrator.resume(account_id)
        return {
            "success": True,
            "job_id": job.job_id,
            "status": str(job.status),
            "message": f"Resuming sync from {job.processed:,} of {job.total:,} emails",
        }

    @_structured
    def delta_sync(self, account_id: str) -> dict[str, Any]:
        result = self._orchestrator.delta(account_id)
        if isinstance(result, SyncJob):
            return {
                "success": True,
                "job_id": result.job_id,
                "status": str(result.status),
                "message": "No usable delta cursor, started a full sync",
            }
        return {
            "success": True,
            "added": result.added,
            "deleted": result.deleted,
            "labels_updated": result.labels_updated,
        }

    @_structured
    def report_auth_expired(self, account_id: str) -> dict[str, Any]:
        self._orchestrator.report_auth_expired(account_id)
        return {"success": True}

    @_structured
    def report_auth_restored(self, account_id: str) -> dict[str, Any]:
        account = self._orchestrator.report_auth_restored(account_id)
        return {"success": True, "status": str(account.sync_state)}

    def recover_interrupted(self) -> list[SyncJob]:
        return self._orchestrator.recover_interrupted(
            auto_resume=self._settings.auto_resume_interrupted
        )

    def wait_for_sync(self, account_id: str, timeout: float | None = None) -> bool:
        return self._orchestrator.wait(account_id, timeout)

    # -- queries ----------------------------------------------------------

    @_structured
    def get_explorer_emails(
        self,
        account_id: str,
        filters: ExplorerFilters | Mapping[str, Any] | None = None,
        page: int = 1,
        limit: int | None = None,
        mode: str = "browse",
    ) -> dict[str, Any]:
        self._store.require_account(account_id)
        if not isinstance(filters, ExplorerFilters):
            filters = ExplorerFilters.from_mapping(filters)
        result = self._explorer.query(account_id, filters, page=page, limit=limit, mode=mode)
        p = result.pagination
        return {
            "success": True,
            "emails": [email.to_dict() for email in result.emails],
            "pagination": {
                "page": p.page,
                "limit": p.limit,
                "total": p.total,
                "total_pages": p.total_pages,
                "has_more": p.has_more,
            },
            "total_size_bytes": result.total_size_bytes,
        }

    @_structured
    def get_categories(self, account_id: str) -> dict[str, Any]:
        self._store.require_account(account_id)
        return {"success": True, "categories": self._explorer.distinct_categories(account_id)}

    @_structured
    def get_sender_suggestions(
        self, account_id: str, search: str | None = None, limit: int = 20
    ) -> dict[str, Any]:
        self._store.require_account(account_id)
        return {
            "success": True,
            "suggestions": self._explorer.sender_suggestions(account_id, search, limit),
        }

    @_structured
    def get_stats(self, account_id: str) -> dict[str, Any]:
        self._store.require_account(account_id)
        return {"success": True, **self._stats.quick_stats(account_id).to_dict()}

    @_structured
    def get_subscriptions(
        self,
        account_id: str,
        page: int = 1,
        limit: int | None = None,
        filters: SubscriptionFilters | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        self._store.require_account(account_id)
        if not isinstance(filters, SubscriptionFilters):
            filters = SubscriptionFilters.from_mapping(filters)
        result = self._subscriptions.list_subscriptions(account_id, page, limit, filters)
        p = result.pagination
        return {
            "success": True,
            "subscriptions": [
                {
                    "email": s.sender_email,
                    "name": s.sender_name,
                    "count": s.count,
                    "total_size": s.total_size,
                    "first_date": s.first_date,
                    "latest_date": s.latest_date,
                    "unsubscribe_link": s.unsubscribe_link,
                    "is_unsubscribed": s.is_unsubscribed,
                }
                for s in result.subscriptions
            ],
            "pagination": {
                "page": p.page,
                "limit": p.limit,
                "total": p.total,
                "total_pages": p.total_pages,
                "has_more": p.has_more,
            },
        }

    @_structured
    def mark_unsubscribed(
        self,
        account_id: str,
        sender_email: str | None = None,
        sender_name: str | None = None,
        *,
        senders: Sequence[Mapping[str, Any] | tuple[str, str | None] | str] | None = None,
    ) -> dict[str, Any]:
        """Mark one sender, or a list of senders, as unsubscribed."""
        self._store.require_account(account_id)
        if senders is not None:
            bulk = self._subscriptions.mark_unsubscribed_bulk(account_id, senders)
            return {
                "success": True,
                "marked_count": bulk.marked_count,
                "already_unsubscribed_count": bulk.already_unsubscribed_count,
                "message": f"Marked {bulk.marked_count} senders as unsubscribed",
            }
        result = self._subscriptions.mark_unsubscribed(account_id, sender_email or "", sender_name)
        return {
            "success": True,
            "already_unsubscribed": result.already_unsubscribed,
            "message": (
                "Already marked as unsubscribed"
                if result.already_unsubscribed
                else "Marked as unsubscribed"
            ),
        }

    @_structured
    def list_unsubscribed(self, account_id: str) -> dict[str, Any]:
        self._store.require_account(account_id)
        return {
            "success": True,
            "senders": [
                {
                    "email": r.sender_email,
                    "name": r.sender_name,
                    "marked_at": r.marked_at.isoformat(),
                }
                for r in self._subscriptions.list_unsubscribed(account_id)
            ],
        }

    # -- bulk actions -----------------------------------------------------

    @_structured
    def trash_emails(
        self,
        account_id: str,
        ids: Sequence[str] | None = None,
        filters: ExplorerFilters | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        result = self._bulk.trash(account_id, ids=ids, filters=self._coerce_filters(filters))
        return {
            "success": result.succeeded > 0 or result.failed == 0,
            "trashed_count": result.trashed_count,
            **_bulk_fields(result),
        }

    @_structured
    def permanently_delete_emails(
        self,
        account_id: str,
        ids: Sequence[str] | None = None,
        filters: ExplorerFilters | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        result = self._bulk.permanently_delete(
            account_id, ids=ids, filters=self._coerce_filters(filters)
        )
        return {
            "success": result.succeeded > 0 or result.failed == 0,
            "deleted_count": result.deleted_count,
            **_bulk_fields(result),
        }

    @staticmethod
    def _coerce_filters(
        filters: ExplorerFilters | Mapping[str, Any] | None,
    ) -> ExplorerFilters | None:
        if isinstance(filters, ExplorerFilters):
            return filters
        if not filters:
            return None
        return ExplorerFilters.from_mapping(filters)

    def close(self) -> None:
        """Stop background syncs and close the database."""
        self._orchestrator.shutdown(wait=True, cancel_running=True)
        self._store.close()
