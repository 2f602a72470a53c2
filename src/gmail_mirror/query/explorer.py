"""Filtered, sorted, paginated reads over the mirror."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from gmail_mirror.core.exceptions import InvalidRequestError
from gmail_mirror.core.models import ExplorerPage, Pagination
from gmail_mirror.storage.mirror import MirrorStore

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "date": "internal_date",
    "size": "size_bytes",
    "sender": "from_email",
}

_FLAG_COLUMNS = {
    "is_unread": "is_unread",
    "is_starred": "is_starred",
    "is_trash": "is_trash",
    "is_spam": "is_spam",
    "is_important": "is_important",
    "has_attachments": "has_attachments",
}

_HAS_INBOX = "EXISTS (SELECT 1 FROM json_each(messages.labels) WHERE value = 'INBOX')"
_HAS_SENT = "EXISTS (SELECT 1 FROM json_each(messages.labels) WHERE value = 'SENT')"

# Query-string keys accepted by ExplorerFilters.from_mapping
_MAPPING_KEYS = {
    "sender": "sender",
    "senderDomain": "sender_domain",
    "category": "category",
    "labelIds": "label_ids",
    "dateFrom": "date_from",
    "dateTo": "date_to",
    "sizeMin": "size_min",
    "sizeMax": "size_max",
    "isUnread": "is_unread",
    "isStarred": "is_starred",
    "isTrash": "is_trash",
    "isSpam": "is_spam",
    "isImportant": "is_important",
    "hasAttachments": "has_attachments",
    "isArchived": "is_archived",
    "isSent": "is_sent",
    "search": "search",
    "sortBy": "sort_by",
    "sortOrder": "sort_order",
}

_INT_FIELDS = {"date_from", "date_to", "size_min", "size_max"}
_BOOL_FIELDS = set(_FLAG_COLUMNS) | {"is_archived", "is_sent"}


def split_list(value: str | None) -> list[str]:
    """Split a comma-separated filter value, dropping blanks."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _parse_bool(value: Any) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    return None


def _parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class ExplorerFilters:
    """Predicate over mirrored messages.

    Present fields are ANDed. ``sender``, ``sender_domain``, ``category`` and
    ``label_ids`` take comma-separated lists that match ANY listed value.
    Boolean flags are tri-state: None leaves the flag unconstrained.
    """

    sender: str | None = None
    sender_domain: str | None = None
    category: str | None = None
    label_ids: str | None = None
    date_from: int | None = None
    date_to: int | None = None
    size_min: int | None = None
    size_max: int | None = None
    is_unread: bool | None = None
    is_starred: bool | None = None
    is_trash: bool | None = None
    is_spam: bool | None = None
    is_important: bool | None = None
    has_attachments: bool | None = None
    is_archived: bool | None = None
    is_sent: bool | None = None
    search: str | None = None
    sort_by: str = "date"
    sort_order: str = "desc"

    @classmethod
    def default(cls) -> ExplorerFilters:
        """The inbox-like view: no trash, no spam."""
        return cls(is_trash=False, is_spam=False)

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any] | None) -> ExplorerFilters:
        """Build filters from query-string style input.

        Accepts camelCase or snake_case keys, "true"/"false" flags and
        numeric strings. Unknown keys and unparseable values are ignored.
        An empty mapping yields the default filters.
        """
        if not params:
            return cls.default()

        values: dict[str, Any] = {}
        for key, raw in params.items():
            name = _MAPPING_KEYS.get(key, key)
            if name not in cls.__dataclass_fields__ or raw is None:
                continue
            if name in _INT_FIELDS:
                parsed = _parse_int(raw)
            elif name in _BOOL_FIELDS:
                parsed = _parse_bool(raw)
            elif name == "sort_by":
                parsed = raw if raw in SORT_COLUMNS else None
            elif name == "sort_order":
                parsed = raw if raw in ("asc", "desc") else None
            else:
                parsed = str(raw) or None
            if parsed is not None:
                values[name] = parsed

        return cls(**values).with_defaults()

    def has_predicates(self) -> bool:
        return any(
            getattr(self, name) is not None
            for name in self.__dataclass_fields__
            if name not in ("sort_by", "sort_order")
        )

    def with_defaults(self) -> ExplorerFilters:
        """Apply the default view when nothing constrains the result."""
        if self.has_predicates():
            return self
        return replace(self, is_trash=False, is_spam=False)

    def where_clause(self, account_id: str) -> tuple[str, list[Any]]:
        """Translate to a SQL WHERE clause with bound parameters."""
        conditions = ["account_id = ?"]
        params: list[Any] = [account_id]

        senders = [s.lower() for s in split_list(self.sender)]
        if len(senders) == 1:
            conditions.append("from_email LIKE ? ESCAPE '\\'")
            params.append(f"%{escape_like(senders[0])}%")
        elif senders:
            conditions.append(f"from_email IN ({', '.join('?' * len(senders))})")
            params.extend(senders)

        domains = [d.lower().lstrip("@") for d in split_list(self.sender_domain)]
        if domains:
            conditions.append(
                "(" + " OR ".join("from_email LIKE ? ESCAPE '\\'" for _ in domains) + ")"
            )
            params.extend(f"%@{escape_like(d)}" for d in domains)

        categories = split_list(self.category)
        if categories:
            conditions.append(f"category IN ({', '.join('?' * len(categories))})")
            params.extend(categories)

        labels = split_list(self.label_ids)
        if labels:
            conditions.append(
                "EXISTS (SELECT 1 FROM json_each(messages.labels) WHERE value IN "
                f"({', '.join('?' * len(labels))}))"
            )
            params.extend(labels)

        for name, column, op in (
            ("date_from", "internal_date", ">="),
            ("date_to", "internal_date", "<="),
            ("size_min", "size_bytes", ">="),
            ("size_max", "size_bytes", "<="),
        ):
            value = getattr(self, name)
            if value is not None:
                conditions.append(f"{column} {op} ?")
                params.append(value)

        for name, column in _FLAG_COLUMNS.items():
            value = getattr(self, name)
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(int(value))

        if self.is_archived is not None:
            archived = f"(NOT {_HAS_INBOX} AND is_trash = 0 AND is_spam = 0)"
            conditions.append(archived if self.is_archived else f"NOT {archived}")

        if self.is_sent is not None:
            conditions.append(_HAS_SENT if self.is_sent else f"NOT {_HAS_SENT}")

        if self.search:
            pattern = f"%{escape_like(self.search.lower())}%"
            conditions.append(
                "(LOWER(COALESCE(subject, '')) LIKE ? ESCAPE '\\' "
                "OR LOWER(COALESCE(snippet, '')) LIKE ? ESCAPE '\\' "
                "OR LOWER(from_email) LIKE ? ESCAPE '\\' "
                "OR LOWER(COALESCE(from_name, '')) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern] * 4)

        return " AND ".join(conditions), params

    def order_clause(self) -> str:
        column = SORT_COLUMNS.get(self.sort_by, "internal_date")
        direction = "ASC" if self.sort_order == "asc" else "DESC"
        return f"{column} {direction}, message_id {direction}"


class ExplorerQueryEngine:
    """Runs ExplorerFilters against the mirror.

    The page rows, the match count and the size aggregate are read inside one
    snapshot so they always agree with each other.
    """

    def __init__(
        self,
        store: MirrorStore,
        *,
        default_limit: int = 50,
        browse_max_limit: int = 100,
        cleanup_max_limit: int = 5000,
    ) -> None:
        self._store = store
        self._default_limit = default_limit
        self._max_limits = {"browse": browse_max_limit, "cleanup": cleanup_max_limit}

    def effective_limit(self, limit: int | None, mode: str = "browse") -> int:
        if mode not in self._max_limits:
            raise InvalidRequestError(f"Unknown explorer mode: {mode!r}")
        if limit is None or limit < 1:
            return self._default_limit
        return min(limit, self._max_limits[mode])

    def query(
        self,
        account_id: str,
        filters: ExplorerFilters | None = None,
        page: int = 1,
        limit: int | None = None,
        mode: str = "browse",
    ) -> ExplorerPage:
        """Return one page of matching messages plus pagination and size totals."""
        filters = (filters or ExplorerFilters()).with_defaults()
        page = max(1, page)
        limit = self.effective_limit(limit, mode)
        where, params = filters.where_clause(account_id)

        with self._store.read_snapshot() as conn:
            agg = conn.execute(
                f"SELECT COUNT(*) AS cnt, COALESCE(SUM(size_bytes), 0) AS size "
                f"FROM messages WHERE {where}",
                params,
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM messages WHERE {where} "
                f"ORDER BY {filters.order_clause()} LIMIT ? OFFSET ?",
                (*params, limit, (page - 1) * limit),
            ).fetchall()

        logger.debug(
            "Explorer %s: %d matches, page %d (%d rows)", account_id, agg["cnt"], page, len(rows)
        )
        return ExplorerPage(
            emails=[MirrorStore.message_from_row(row) for row in rows],
            pagination=Pagination.build(page, limit, agg["cnt"]),
            total_size_bytes=agg["size"],
        )

    def resolve_ids(self, account_id: str, filters: ExplorerFilters) -> list[str]:
        """All message ids matching ``filters`` at this instant."""
        where, params = filters.where_clause(account_id)
        with self._store.read_snapshot() as conn:
            rows = conn.execute(
                f"SELECT message_id FROM messages WHERE {where} ORDER BY {filters.order_clause()}",
                params,
            ).fetchall()
        return [row["message_id"] for row in rows]

    def distinct_categories(self, account_id: str) -> list[str]:
        rows = self._store.conn.execute(
            "SELECT DISTINCT category FROM messages "
            "WHERE account_id = ? AND category IS NOT NULL ORDER BY category",
            (account_id,),
        ).fetchall()
        return [row["category"] for row in rows]

    def sender_suggestions(
        self, account_id: str, search: str | None = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        """Autocomplete entries: domains with several matching addresses, then addresses."""
        suggestions: list[dict[str, Any]] = []
        pattern = f"%{escape_like(search.lower())}%" if search else "%"

        with self._store.read_snapshot() as conn:
            domain_rows = conn.execute(
                """SELECT SUBSTR(from_email, INSTR(from_email, '@') + 1) AS domain,
                          COUNT(DISTINCT from_email) AS address_count,
                          COUNT(*) AS total
                   FROM messages
                   WHERE account_id = ? AND from_email LIKE ? ESCAPE '\\'
                   GROUP BY domain
                   HAVING address_count > 1
                   ORDER BY total DESC
                   LIMIT ?""",
                (account_id, pattern, max(1, limit // 2)),
            ).fetchall()
            for row in domain_rows:
                suggestions.append(
                    {
                        "type": "domain",
                        "value": row["domain"],
                        "label": f"@{row['domain']} ({row['address_count']} addresses)",
                        "count": row["total"],
                    }
                )

            sender_rows = conn.execute(
                """SELECT from_email, MAX(from_name) AS name, COUNT(*) AS total
                   FROM messages
                   WHERE account_id = ? AND from_email LIKE ? ESCAPE '\\'
                   GROUP BY from_email
                   ORDER BY total DESC
                   LIMIT ?""",
                (account_id, pattern, max(0, limit - len(suggestions))),
            ).fetchall()
            for row in sender_rows:
                label = f"{row['name']} <{row['from_email']}>" if row["name"] else row["from_email"]
                suggestions.append(
                    {
                        "type": "email",
                        "value": row["from_email"],
                        "label": label,
                        "count": row["total"],
                    }
                )

        return suggestions
