"""Per-sender subscription aggregates and local unsubscribe tracking."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from gmail_mirror.core.exceptions import InvalidRequestError
from gmail_mirror.core.models import (
    BulkUnsubscribeResult,
    Pagination,
    Subscription,
    SubscriptionPage,
    UnsubscribeRecord,
    UnsubscribeResult,
)
from gmail_mirror.query.explorer import escape_like
from gmail_mirror.storage.mirror import MirrorStore

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "count": "count",
    "size": "total_size",
    "first_date": "first_date",
    "latest_date": "latest_date",
    "name": "LOWER(COALESCE(sender_name, sender_email))",
}

_MAPPING_KEYS = {
    "search": "search",
    "minCount": "min_count",
    "maxCount": "max_count",
    "minSize": "min_size",
    "maxSize": "max_size",
    "dateFrom": "date_from",
    "dateTo": "date_to",
    "sortBy": "sort_by",
    "sortOrder": "sort_order",
}

# One row per lowercased sender. Name is the most frequent non-empty display
# name; the link is the one on the newest message that carries one.
_AGGREGATE = """
    SELECT
        m.from_email AS sender_email,
        (
            SELECT n.from_name FROM messages n
            WHERE n.account_id = m.account_id AND n.from_email = m.from_email
              AND n.from_name IS NOT NULL AND n.from_name != ''
            GROUP BY n.from_name
            ORDER BY COUNT(*) DESC, MAX(n.internal_date) DESC
            LIMIT 1
        ) AS sender_name,
        COUNT(*) AS count,
        COALESCE(SUM(m.size_bytes), 0) AS total_size,
        MIN(m.internal_date) AS first_date,
        MAX(m.internal_date) AS latest_date,
        (
            SELECT u.unsubscribe_link FROM messages u
            WHERE u.account_id = m.account_id AND u.from_email = m.from_email
              AND u.unsubscribe_link IS NOT NULL
            ORDER BY u.internal_date DESC
            LIMIT 1
        ) AS unsubscribe_link,
        EXISTS (
            SELECT 1 FROM unsubscribed_senders s
            WHERE s.account_id = m.account_id AND s.sender_email = m.from_email
        ) AS is_unsubscribed
    FROM messages m
    WHERE m.account_id = ?
    GROUP BY m.from_email
"""


@dataclass(frozen=True)
class SubscriptionFilters:
    search: str | None = None
    min_count: int | None = None
    max_count: int | None = None
    min_size: int | None = None
    max_size: int | None = None
    date_from: int | None = None
    date_to: int | None = None
    sort_by: str = "count"
    sort_order: str = "desc"
    require_unsubscribe_link: bool = True

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any] | None) -> SubscriptionFilters:
        """Build filters from query-string style input; bad values are dropped."""
        values: dict[str, Any] = {}
        for key, raw in (params or {}).items():
            name = _MAPPING_KEYS.get(key, key)
            if name not in cls.__dataclass_fields__ or raw is None or raw == "":
                continue
            if name == "search":
                values[name] = str(raw)
            elif name == "sort_by":
                if raw in SORT_COLUMNS:
                    values[name] = raw
            elif name == "sort_order":
                if raw in ("asc", "desc"):
                    values[name] = raw
            elif name == "require_unsubscribe_link":
                values[name] = raw if isinstance(raw, bool) else str(raw).lower() == "true"
            else:
                try:
                    values[name] = int(raw)
                except (TypeError, ValueError):
                    continue
        return cls(**values)

    def outer_clause(self) -> tuple[str, list[Any]]:
        conditions: list[str] = []
        params: list[Any] = []
        if self.require_unsubscribe_link:
            conditions.append("unsubscribe_link IS NOT NULL")
        if self.search:
            pattern = f"%{escape_like(self.search.lower())}%"
            conditions.append(
                "(sender_email LIKE ? ESCAPE '\\' "
                "OR LOWER(COALESCE(sender_name, '')) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])
        for name, column, op in (
            ("min_count", "count", ">="),
            ("max_count", "count", "<="),
            ("min_size", "total_size", ">="),
            ("max_size", "total_size", "<="),
            ("date_from", "first_date", ">="),
            ("date_to", "first_date", "<="),
        ):
            value = getattr(self, name)
            if value is not None:
                conditions.append(f"{column} {op} ?")
                params.append(value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    def order_clause(self) -> str:
        column = SORT_COLUMNS.get(self.sort_by, "count")
        direction = "ASC" if self.sort_order == "asc" else "DESC"
        return f"{column} {direction}, sender_email ASC"


class SubscriptionExtractor:
    """Groups mirrored mail by sender and records unsubscribe marks."""

    def __init__(self, store: MirrorStore, default_limit: int = 50, max_limit: int = 100) -> None:
        self._store = store
        self._default_limit = default_limit
        self._max_limit = max_limit

    def list_subscriptions(
        self,
        account_id: str,
        page: int = 1,
        limit: int | None = None,
        filters: SubscriptionFilters | None = None,
    ) -> SubscriptionPage:
        filters = filters or SubscriptionFilters()
        page = max(1, page)
        limit = self._default_limit if limit is None or limit < 1 else min(limit, self._max_limit)
        where, params = filters.outer_clause()
        base = f"SELECT * FROM ({_AGGREGATE}) {where}"

        with self._store.read_snapshot() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS cnt FROM ({base})", (account_id, *params)
            ).fetchone()["cnt"]
            rows = conn.execute(
                f"{base} ORDER BY {filters.order_clause()} LIMIT ? OFFSET ?",
                (account_id, *params, limit, (page - 1) * limit),
            ).fetchall()

        subscriptions = [
            Subscription(
                sender_email=row["sender_email"],
                sender_name=row["sender_name"],
                count=row["count"],
                total_size=row["total_size"],
                first_date=row["first_date"],
                latest_date=row["latest_date"],
                unsubscribe_link=row["unsubscribe_link"],
                is_unsubscribed=bool(row["is_unsubscribed"]),
            )
            for row in rows
        ]
        return SubscriptionPage(
            subscriptions=subscriptions,
            pagination=Pagination.build(page, limit, total),
        )

    def mark_unsubscribed(
        self, account_id: str, sender_email: str, sender_name: str | None = None
    ) -> UnsubscribeResult:
        """Record a sender as unsubscribed; a repeat mark is a reported no-op."""
        email = (sender_email or "").strip().lower()
        if not email:
            raise InvalidRequestError("sender_email is required")
        inserted = self._store.insert_unsubscribed(account_id, email, sender_name)
        if inserted:
            logger.info("Marked %s as unsubscribed for %s", email, account_id)
        return UnsubscribeResult(sender_email=email, already_unsubscribed=not inserted)

    def mark_unsubscribed_bulk(
        self,
        account_id: str,
        senders: Iterable[tuple[str, str | None] | Mapping[str, Any] | str],
    ) -> BulkUnsubscribeResult:
        """Mark many senders; duplicates are counted, never fatal."""
        marked = 0
        already = 0
        with self._store.transaction():
            for sender in senders:
                email, name = self._sender_fields(sender)
                if not email:
                    continue
                if self._store.insert_unsubscribed(account_id, email, name):
                    marked += 1
                else:
                    already += 1
        logger.info(
            "Bulk marked %d senders as unsubscribed (%d already unsubscribed) for %s",
            marked, already, account_id,
        )
        return BulkUnsubscribeResult(marked_count=marked, already_unsubscribed_count=already)

    def list_unsubscribed(self, account_id: str) -> list[UnsubscribeRecord]:
        return self._store.list_unsubscribed(account_id)

    @staticmethod
    def _sender_fields(sender: Any) -> tuple[str, str | None]:
        if isinstance(sender, str):
            return sender.strip().lower(), None
        if isinstance(sender, Mapping):
            email = sender.get("email") or sender.get("sender_email") or ""
            name = sender.get("name") or sender.get("sender_name")
            return str(email).strip().lower(), name
        email, name = sender
        return (email or "").strip().lower(), name
