"""Bulk trash and permanent delete, reconciled between Gmail and the mirror."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed

from gmail_mirror.core.exceptions import AuthExpiredError, GmailMirrorError, InvalidRequestError, NotFoundError
from gmail_mirror.core.gmail_client import GmailClient
from gmail_mirror.core.models import BulkActionResult
from gmail_mirror.query.explorer import ExplorerFilters, ExplorerQueryEngine
from gmail_mirror.storage.mirror import MirrorStore

logger = logging.getLogger(__name__)

TRASH = "trash"
DELETE = "delete"


class BulkActionExecutor:
    """Applies one remote mutation per id on a bounded pool, then updates the mirror.

    Ids are handled independently: failures are collected into the result so
    the caller can retry just those. The local write for the ids Gmail
    accepted happens in one transaction after all remote calls finish.
    """

    def __init__(
        self,
        store: MirrorStore,
        explorer: ExplorerQueryEngine,
        client_factory: Callable[[str], GmailClient],
        max_workers: int = 8,
    ) -> None:
        self._store = store
        self._explorer = explorer
        self._client_factory = client_factory
        self._max_workers = max_workers

    def trash(
        self,
        account_id: str,
        ids: Sequence[str] | None = None,
        filters: ExplorerFilters | None = None,
    ) -> BulkActionResult:
        """Move messages to trash remotely and flag them trashed locally."""
        return self._run(account_id, TRASH, ids, filters)

    def permanently_delete(
        self,
        account_id: str,
        ids: Sequence[str] | None = None,
        filters: ExplorerFilters | None = None,
    ) -> BulkActionResult:
        """Delete messages remotely and drop the rows Gmail confirmed."""
        return self._run(account_id, DELETE, ids, filters)

    def _resolve(
        self,
        account_id: str,
        ids: Sequence[str] | None,
        filters: ExplorerFilters | None,
    ) -> list[str]:
        if (ids is None) == (filters is None):
            raise InvalidRequestError("Provide either message ids or filters, not both")
        if filters is not None:
            if not filters.has_predicates():
                raise InvalidRequestError("Filters must constrain the selection")
            return self._explorer.resolve_ids(account_id, filters)
        # Keep order, drop duplicates
        return list(dict.fromkeys(mid for mid in ids if mid))

    def _run(
        self,
        account_id: str,
        action: str,
        ids: Sequence[str] | None,
        filters: ExplorerFilters | None,
    ) -> BulkActionResult:
        self._store.require_account(account_id)
        target = self._resolve(account_id, ids, filters)
        if not target:
            return BulkActionResult(
                action=action, requested=0, succeeded=0, failed=0, message="No emails matched"
            )

        client = self._client_factory(account_id)
        mutate = client.trash_message if action == TRASH else client.delete_message

        succeeded: list[str] = []
        failed: list[str] = []
        auth_failures = 0

        with ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(target)),
            thread_name_prefix=f"gmail-{action}",
        ) as pool:
            futures = {pool.submit(mutate, mid): mid for mid in target}
            for future in as_completed(futures):
                mid = futures[future]
                try:
                    future.result()
                    succeeded.append(mid)
                except NotFoundError:
                    if action == DELETE:
                        # Already gone remotely
                        succeeded.append(mid)
                    else:
                        logger.warning("Cannot trash %s: not found remotely", mid)
                        failed.append(mid)
                except AuthExpiredError as e:
                    auth_failures += 1
                    logger.error("Authentication expired while applying %s to %s: %s", action, mid, e)
                    failed.append(mid)
                except GmailMirrorError as e:
                    logger.warning("Failed to %s %s: %s", action, mid, e)
                    failed.append(mid)

        if auth_failures and not succeeded:
            raise AuthExpiredError(f"Authentication expired during bulk {action}")

        with self._store.transaction():
            if action == TRASH:
                self._store.mark_trashed(account_id, succeeded)
            else:
                self._store.delete_messages(account_id, succeeded)

        verb = "Moved {n} emails to trash" if action == TRASH else "Permanently deleted {n} emails"
        message = verb.format(n=len(succeeded))
        if failed:
            message += f", {len(failed)} failed"
        logger.info("Bulk %s for %s: %s", action, account_id, message)

        order = {mid: i for i, mid in enumerate(target)}
        return BulkActionResult(
            action=action,
            requested=len(target),
            succeeded=len(succeeded),
            failed=len(failed),
            failed_ids=tuple(sorted(failed, key=order.__getitem__)),
            message=message,
        )
