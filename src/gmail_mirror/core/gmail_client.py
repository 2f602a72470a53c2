"""Gmail API client for paging, batch metadata fetch, history, and mutations."""

from __future__ import annotations

import logging
import random
import time
from typing import Any

from google.auth.exceptions import RefreshError
from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError
from googleapiclient.http import BatchHttpRequest

from gmail_mirror.core.exceptions import (
    AuthExpiredError,
    GmailMirrorError,
    InvalidCursorError,
    NotFoundError,
    RateLimitError,
    RemoteUnavailableError,
)
from gmail_mirror.core.models import HistoryChanges, LabelChange, MessagePage, MessageStub
from gmail_mirror.core.normalizer import METADATA_HEADERS

logger = logging.getLogger(__name__)

HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]


def _status_of(exc: Exception) -> int | None:
    """HTTP status of a googleapiclient error, if any."""
    if isinstance(exc, HttpError):
        try:
            return int(exc.resp.status)
        except (AttributeError, TypeError, ValueError):
            return None
    return None


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception represents a Gmail API 429 rate limit."""
    if _status_of(exc) == 429:
        return True
    error_str = str(exc)
    return "429" in error_str or "rateLimitExceeded" in error_str


def _is_server_error(exc: Exception) -> bool:
    """5xx responses and dropped connections are worth retrying."""
    status = _status_of(exc)
    if status is not None:
        return status >= 500
    return isinstance(exc, (ConnectionError, TimeoutError))


def _is_auth_error(exc: Exception) -> bool:
    return isinstance(exc, RefreshError) or _status_of(exc) == 401


class GmailClient:
    """Thin wrapper around the Gmail API used by the sync and bulk layers."""

    def __init__(
        self,
        service: Resource,
        user_id: str = "me",
        *,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        inter_page_delay_seconds: float = 0.2,
        num_retries: int = 3,
    ) -> None:
        self._service = service
        self._user_id = user_id
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._inter_page_delay = inter_page_delay_seconds
        self._num_retries = num_retries
        self._last_page_at: float | None = None

    def _sleep_backoff(self, backoff: float, context: str, attempt: int) -> float:
        """Sleep a jittered backoff and return the next backoff value."""
        sleep_time = min(backoff, self._max_backoff)
        jitter = random.uniform(0, sleep_time)
        logger.warning(
            "Throttled during %s (attempt %d/%d), sleeping %.2fs",
            context, attempt + 1, self._max_retries, jitter,
        )
        time.sleep(jitter)
        return min(backoff * 2, self._max_backoff)

    def _execute_with_retry(
        self,
        request: Any,
        context: str,
        *,
        cursor_error_statuses: tuple[int, ...] = (),
    ) -> Any:
        """Execute a single API request with exponential backoff on 429/5xx.

        Args:
            request: A googleapiclient HttpRequest object.
            context: Description for log messages (e.g. "list messages").
            cursor_error_statuses: HTTP statuses that mean the supplied
                page token or history id was rejected.

        Returns:
            The API response dict.

        Raises:
            AuthExpiredError: On 401 or a failed token refresh.
            InvalidCursorError: On a status listed in cursor_error_statuses.
            RateLimitError: When retries are exhausted on 429 errors.
            RemoteUnavailableError: When retries are exhausted on 5xx/network errors.
            NotFoundError: On 404.
            GmailMirrorError: On other API errors.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            try:
                return request.execute(num_retries=self._num_retries)
            except Exception as e:
                if _is_auth_error(e):
                    raise AuthExpiredError(f"Authentication expired during {context}: {e}") from e
                status = _status_of(e)
                if status is not None and status in cursor_error_statuses:
                    raise InvalidCursorError(f"Cursor rejected during {context}: {e}") from e
                if _is_rate_limit_error(e):
                    if attempt >= self._max_retries:
                        raise RateLimitError(
                            f"Rate limited during {context} after "
                            f"{self._max_retries} retries: {e}"
                        ) from e
                    backoff = self._sleep_backoff(backoff, context, attempt)
                elif _is_server_error(e):
                    if attempt >= self._max_retries:
                        raise RemoteUnavailableError(
                            f"Gmail unavailable during {context} after "
                            f"{self._max_retries} retries: {e}"
                        ) from e
                    backoff = self._sleep_backoff(backoff, context, attempt)
                elif status == 404:
                    raise NotFoundError(f"Not found during {context}: {e}") from e
                else:
                    raise GmailMirrorError(f"Failed to {context}: {e}") from e

        raise RateLimitError(f"Rate limited during {context} after {self._max_retries} retries")

    def get_profile(self) -> dict[str, Any]:
        """Return the mailbox profile (emailAddress, messagesTotal, historyId)."""
        request = self._service.users().getProfile(userId=self._user_id)
        return self._execute_with_retry(request, "get profile")

    def current_history_id(self) -> str:
        """Latest history id, used as the delta cursor after a full sync."""
        return str(self.get_profile().get("historyId", "") or "")

    def estimate_total(self) -> int:
        """Estimate the mailbox size including SPAM and TRASH.

        The profile total excludes SPAM and TRASH, which are mirrored too, so
        their label counts are added when available.
        """
        total = int(self.get_profile().get("messagesTotal", 0) or 0)
        for label_id in ("SPAM", "TRASH"):
            request = self._service.users().labels().get(userId=self._user_id, id=label_id)
            try:
                label = self._execute_with_retry(request, f"get label {label_id}")
            except AuthExpiredError:
                raise
            except GmailMirrorError as e:
                logger.warning("Could not count %s messages: %s", label_id, e)
                continue
            total += int(label.get("messagesTotal", 0) or 0)
        return total

    def list_message_page(
        self,
        page_token: str | None = None,
        max_results: int = 500,
    ) -> MessagePage:
        """Fetch one page of message references, including SPAM and TRASH.

        Args:
            page_token: Continuation token from the previous page, or None.
            max_results: Page size (1-500).

        Raises:
            InvalidCursorError: If the page token is rejected by the API.
        """
        if self._last_page_at is not None and self._inter_page_delay > 0:
            elapsed = time.monotonic() - self._last_page_at
            if elapsed < self._inter_page_delay:
                time.sleep(self._inter_page_delay - elapsed)

        kwargs: dict[str, Any] = {
            "userId": self._user_id,
            "maxResults": max_results,
            "includeSpamTrash": True,
        }
        if page_token:
            kwargs["pageToken"] = page_token

        request = self._service.users().messages().list(**kwargs)
        response = self._execute_with_retry(
            request,
            "list messages",
            cursor_error_statuses=(400,) if page_token else (),
        )
        self._last_page_at = time.monotonic()

        stubs = tuple(
            MessageStub(message_id=msg["id"], thread_id=msg.get("threadId", ""))
            for msg in response.get("messages", []) or []
        )
        logger.debug("Listed %d message IDs (page)", len(stubs))
        return MessagePage(
            stubs=stubs,
            next_page_token=response.get("nextPageToken") or None,
            result_size_estimate=int(response.get("resultSizeEstimate", 0) or 0),
        )

    def fetch_messages_batch(
        self, message_ids: list[str]
    ) -> tuple[list[dict[str, Any]], list[str]]:
        """Fetch message metadata in a single batch request.

        Args:
            message_ids: List of Gmail message IDs to fetch (at most 100).

        Returns:
            Tuple of (raw Gmail API message dicts, ids that could not be fetched).
            Ids that failed with a non-retryable error other than 404 are
            unavailable. Vanished messages (404) appear in neither list.

        Raises:
            AuthExpiredError: If any request in the batch was unauthorized.
            RateLimitError: When throttling persists after max_retries.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            results: dict[str, dict[str, Any]] = {}
            unavailable: list[str] = []
            throttled = False
            auth_failure: Exception | None = None

            def _callback(
                request_id: str,
                response: dict[str, Any] | None,
                exception: Exception | None,
            ) -> None:
                nonlocal throttled, auth_failure
                msg_id = message_ids[int(request_id)]
                if exception:
                    if _is_auth_error(exception):
                        auth_failure = exception
                    elif _is_rate_limit_error(exception) or _is_server_error(exception):
                        throttled = True
                    elif _status_of(exception) == 404:
                        logger.debug("Message %s vanished before fetch", msg_id)
                    else:
                        logger.warning("Batch fetch error for %s: %s", msg_id, exception)
                        unavailable.append(msg_id)
                elif response:
                    results[msg_id] = response

            batch: BatchHttpRequest = self._service.new_batch_http_request(callback=_callback)

            for index, msg_id in enumerate(message_ids):
                batch.add(
                    self._service.users()
                    .messages()
                    .get(
                        userId=self._user_id,
                        id=msg_id,
                        format="metadata",
                        metadataHeaders=list(METADATA_HEADERS),
                    ),
                    request_id=str(index),
                )

            try:
                batch.execute()
            except Exception as e:
                if _is_auth_error(e):
                    raise AuthExpiredError(f"Authentication expired during batch fetch: {e}") from e
                if _is_rate_limit_error(e) or _is_server_error(e):
                    throttled = True
                else:
                    raise GmailMirrorError(f"Batch request failed: {e}") from e

            if auth_failure is not None:
                raise AuthExpiredError(
                    f"Authentication expired during batch fetch: {auth_failure}"
                ) from auth_failure

            if throttled:
                if attempt >= self._max_retries:
                    raise RateLimitError(
                        f"Rate limited during batch fetch after {self._max_retries} retries"
                    )
                backoff = self._sleep_backoff(backoff, "batch fetch", attempt)
                continue

            if unavailable:
                logger.info(
                    "Batch had %d unavailable messages out of %d requests",
                    len(unavailable), len(message_ids),
                )

            logger.debug("Batch fetched %d messages", len(results))
            ordered = [results[msg_id] for msg_id in message_ids if msg_id in results]
            return ordered, unavailable

        raise RateLimitError(
            f"Rate limited during batch fetch after {self._max_retries} retries"
        )

    def list_history(self, start_history_id: str) -> HistoryChanges:
        """Collect and fold all changes since a history id.

        A message added then deleted within the window counts only as deleted;
        label changes on added or deleted messages are dropped because the
        message is refetched or removed anyway.

        Raises:
            InvalidCursorError: If the history id has expired (404).
        """
        added: dict[str, None] = {}
        deleted: dict[str, None] = {}
        label_adds: dict[str, set[str]] = {}
        label_removes: dict[str, set[str]] = {}
        new_cursor = start_history_id
        page_token: str | None = None

        while True:
            kwargs: dict[str, Any] = {
                "userId": self._user_id,
                "startHistoryId": start_history_id,
                "historyTypes": HISTORY_TYPES,
            }
            if page_token:
                kwargs["pageToken"] = page_token

            request = self._service.users().history().list(**kwargs)
            response = self._execute_with_retry(
                request, "list history", cursor_error_statuses=(404,)
            )

            for record in response.get("history", []) or []:
                for entry in record.get("messagesAdded", []) or []:
                    msg_id = entry.get("message", {}).get("id")
                    if msg_id:
                        added[msg_id] = None
                        deleted.pop(msg_id, None)
                for entry in record.get("messagesDeleted", []) or []:
                    msg_id = entry.get("message", {}).get("id")
                    if msg_id:
                        deleted[msg_id] = None
                        added.pop(msg_id, None)
                        label_adds.pop(msg_id, None)
                        label_removes.pop(msg_id, None)
                for entry in record.get("labelsAdded", []) or []:
                    msg_id = entry.get("message", {}).get("id")
                    if not msg_id or msg_id in added:
                        continue
                    for label_id in entry.get("labelIds", []) or []:
                        label_adds.setdefault(msg_id, set()).add(label_id)
                        label_removes.get(msg_id, set()).discard(label_id)
                for entry in record.get("labelsRemoved", []) or []:
                    msg_id = entry.get("message", {}).get("id")
                    if not msg_id or msg_id in added:
                        continue
                    for label_id in entry.get("labelIds", []) or []:
                        label_removes.setdefault(msg_id, set()).add(label_id)
                        label_adds.get(msg_id, set()).discard(label_id)

            if response.get("historyId"):
                new_cursor = str(response["historyId"])

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        label_changes: dict[str, LabelChange] = {}
        for msg_id in set(label_adds) | set(label_removes):
            adds = tuple(sorted(label_adds.get(msg_id, set())))
            removes = tuple(sorted(label_removes.get(msg_id, set())))
            if adds or removes:
                label_changes[msg_id] = LabelChange(added=adds, removed=removes)

        logger.debug(
            "History changes: %d added, %d deleted, %d label changes",
            len(added), len(deleted), len(label_changes),
        )
        return HistoryChanges(
            added_ids=tuple(added),
            deleted_ids=tuple(deleted),
            label_changes=label_changes,
            new_cursor=new_cursor,
        )

    def trash_message(self, message_id: str) -> None:
        """Move one message to trash."""
        request = self._service.users().messages().trash(userId=self._user_id, id=message_id)
        self._execute_with_retry(request, f"trash message {message_id}")

    def delete_message(self, message_id: str) -> None:
        """Permanently delete one message."""
        request = self._service.users().messages().delete(userId=self._user_id, id=message_id)
        self._execute_with_retry(request, f"delete message {message_id}")
