"""Point-in-time mailbox statistics and cleanup-ready buckets."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from gmail_mirror.storage.mirror import MirrorStore

FIVE_MB = 5 * 1024 * 1024
TEN_MB = 10 * 1024 * 1024
YEAR_MS = 365 * 24 * 60 * 60 * 1000

CATEGORY_KEYS = {
    "CATEGORY_PROMOTIONS": "promotions",
    "CATEGORY_SOCIAL": "social",
    "CATEGORY_UPDATES": "updates",
    "CATEGORY_FORUMS": "forums",
    "CATEGORY_PERSONAL": "primary",
}

_VISIBLE = "is_trash = 0 AND is_spam = 0"
_CLEANABLE = "is_trash = 0 AND is_spam = 0 AND is_starred = 0 AND is_important = 0"


@dataclass(frozen=True)
class Bucket:
    count: int = 0
    size: int = 0


@dataclass(frozen=True)
class QuickStats:
    """Aggregate counts for one account, all read from the same snapshot.

    ``total``/``unread``/``categories``/size and age counts exclude trash and
    spam. ``cleanup`` buckets additionally exclude starred and important mail.
    """

    total: int
    unread: int
    categories: dict[str, int]
    larger_5mb: int
    larger_10mb: int
    total_storage_bytes: int
    trash_storage_bytes: int
    older_than_1_year: int
    older_than_2_years: int
    unique_senders: int
    trash: Bucket
    spam: Bucket
    cleanup: dict[str, Bucket] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "unread": self.unread,
            "categories": dict(self.categories),
            "size": {
                "larger_5mb": self.larger_5mb,
                "larger_10mb": self.larger_10mb,
                "total_storage_bytes": self.total_storage_bytes,
                "trash_storage_bytes": self.trash_storage_bytes,
            },
            "age": {
                "older_than_1_year": self.older_than_1_year,
                "older_than_2_years": self.older_than_2_years,
            },
            "senders": {"unique_count": self.unique_senders},
            "trash": asdict(self.trash),
            "spam": asdict(self.spam),
            "cleanup": {name: asdict(bucket) for name, bucket in self.cleanup.items()},
        }


class StatsAggregator:
    """Computes QuickStats from the mirror in a single read transaction."""

    def __init__(
        self,
        store: MirrorStore,
        now_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self._store = store
        self._now_ms = now_ms

    def quick_stats(self, account_id: str) -> QuickStats:
        now = self._now_ms()
        one_year_ago = now - YEAR_MS
        two_years_ago = now - 2 * YEAR_MS

        with self._store.read_snapshot() as conn:
            basic = conn.execute(
                f"""SELECT COUNT(*) AS total,
                       COALESCE(SUM(is_unread), 0) AS unread,
                       COALESCE(SUM(size_bytes), 0) AS storage,
                       COALESCE(SUM(size_bytes > :five_mb), 0) AS larger_5mb,
                       COALESCE(SUM(size_bytes > :ten_mb), 0) AS larger_10mb,
                       COALESCE(SUM(internal_date < :one_year), 0) AS older_1y,
                       COALESCE(SUM(internal_date < :two_years), 0) AS older_2y
                   FROM messages WHERE account_id = :account AND {_VISIBLE}""",
                {
                    "account": account_id,
                    "five_mb": FIVE_MB,
                    "ten_mb": TEN_MB,
                    "one_year": one_year_ago,
                    "two_years": two_years_ago,
                },
            ).fetchone()

            trash = conn.execute(
                "SELECT COUNT(*) AS cnt, COALESCE(SUM(size_bytes), 0) AS size "
                "FROM messages WHERE account_id = ? AND is_trash = 1",
                (account_id,),
            ).fetchone()

            # Spam that has since been trashed counts as trash only
            spam = conn.execute(
                "SELECT COUNT(*) AS cnt, COALESCE(SUM(size_bytes), 0) AS size "
                "FROM messages WHERE account_id = ? AND is_spam = 1 AND is_trash = 0",
                (account_id,),
            ).fetchone()

            category_rows = conn.execute(
                f"""SELECT category, COUNT(*) AS cnt FROM messages
                   WHERE account_id = ? AND category IS NOT NULL AND {_VISIBLE}
                   GROUP BY category""",
                (account_id,),
            ).fetchall()

            cleanup_category_rows = conn.execute(
                f"""SELECT category, COUNT(*) AS cnt,
                       COALESCE(SUM(size_bytes), 0) AS size,
                       COALESCE(SUM(is_unread = 0), 0) AS read_cnt,
                       COALESCE(SUM(CASE WHEN is_unread = 0 THEN size_bytes ELSE 0 END), 0)
                           AS read_size
                   FROM messages
                   WHERE account_id = ? AND category IS NOT NULL AND {_CLEANABLE}
                   GROUP BY category""",
                (account_id,),
            ).fetchall()

            cleanup_misc = conn.execute(
                f"""SELECT
                       COALESCE(SUM(internal_date < :one_year), 0) AS older_1y,
                       COALESCE(SUM(CASE WHEN internal_date < :one_year
                                    THEN size_bytes ELSE 0 END), 0) AS older_1y_size,
                       COALESCE(SUM(internal_date < :two_years), 0) AS older_2y,
                       COALESCE(SUM(CASE WHEN internal_date < :two_years
                                    THEN size_bytes ELSE 0 END), 0) AS older_2y_size,
                       COALESCE(SUM(size_bytes > :five_mb), 0) AS larger_5mb,
                       COALESCE(SUM(CASE WHEN size_bytes > :five_mb
                                    THEN size_bytes ELSE 0 END), 0) AS larger_5mb_size,
                       COALESCE(SUM(size_bytes > :ten_mb), 0) AS larger_10mb,
                       COALESCE(SUM(CASE WHEN size_bytes > :ten_mb
                                    THEN size_bytes ELSE 0 END), 0) AS larger_10mb_size
                   FROM messages WHERE account_id = :account AND {_CLEANABLE}""",
                {
                    "account": account_id,
                    "five_mb": FIVE_MB,
                    "ten_mb": TEN_MB,
                    "one_year": one_year_ago,
                    "two_years": two_years_ago,
                },
            ).fetchone()

            senders = conn.execute(
                "SELECT COUNT(DISTINCT from_email) AS cnt FROM messages WHERE account_id = ?",
                (account_id,),
            ).fetchone()

        categories = {key: 0 for key in CATEGORY_KEYS.values()}
        for row in category_rows:
            key = CATEGORY_KEYS.get(row["category"])
            if key:
                categories[key] = row["cnt"]

        cleanup = {
            name: Bucket()
            for name in ("promotions", "social", "updates", "forums", "read_promotions")
        }
        for row in cleanup_category_rows:
            key = CATEGORY_KEYS.get(row["category"])
            if key is None or key == "primary":
                continue
            cleanup[key] = Bucket(count=row["cnt"], size=row["size"])
            if key == "promotions":
                cleanup["read_promotions"] = Bucket(count=row["read_cnt"], size=row["read_size"])

        cleanup["older_than_1_year"] = Bucket(cleanup_misc["older_1y"], cleanup_misc["older_1y_size"])
        cleanup["older_than_2_years"] = Bucket(cleanup_misc["older_2y"], cleanup_misc["older_2y_size"])
        cleanup["larger_5mb"] = Bucket(cleanup_misc["larger_5mb"], cleanup_misc["larger_5mb_size"])
        cleanup["larger_10mb"] = Bucket(cleanup_misc["larger_10mb"], cleanup_misc["larger_10mb_size"])

        return QuickStats(
            total=basic["total"],
            unread=basic["unread"],
            categories=categories,
            larger_5mb=basic["larger_5mb"],
            larger_10mb=basic["larger_10mb"],
            total_storage_bytes=basic["storage"],
            trash_storage_bytes=trash["size"],
            older_than_1_year=basic["older_1y"],
            older_than_2_years=basic["older_2y"],
            unique_senders=senders["cnt"],
            trash=Bucket(count=trash["cnt"], size=trash["size"]),
            spam=Bucket(count=spam["cnt"], size=spam["size"]),
            cleanup=cleanup,
        )
