"""SQLite-backed local mirror: accounts, sync jobs, messages, snapshots."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from gmail_mirror.core.exceptions import AlreadyRunningError, NotFoundError
from gmail_mirror.core.models import (
    Account,
    AccountSyncState,
    JobStatus,
    LabelChange,
    MirroredMessage,
    ProgressSnapshot,
    SyncJob,
    SyncKind,
    UnsubscribeRecord,
)
from gmail_mirror.core.normalizer import find_category

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        sync_state TEXT NOT NULL DEFAULT 'idle',
        last_full_sync_at TEXT,
        last_delta_cursor TEXT,
        last_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sync_jobs (
        job_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        processed INTEGER NOT NULL DEFAULT 0,
        total INTEGER NOT NULL DEFAULT 0,
        cursor TEXT,
        started_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT,
        run_started_at TEXT NOT NULL,
        delta_cursor_at_start TEXT,
        resumed_from TEXT,
        error_code TEXT,
        last_error TEXT,
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        rate_samples TEXT NOT NULL DEFAULT '[]'
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_account ON sync_jobs(account_id, started_at);

    -- At most one pending/running job per account
    CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_active
        ON sync_jobs(account_id) WHERE status IN ('pending', 'running');

    CREATE TABLE IF NOT EXISTS messages (
        account_id TEXT NOT NULL,
        message_id TEXT NOT NULL,
        thread_id TEXT NOT NULL DEFAULT '',
        subject TEXT,
        snippet TEXT,
        from_email TEXT NOT NULL,
        from_name TEXT,
        labels TEXT NOT NULL DEFAULT '[]',
        category TEXT,
        size_bytes INTEGER NOT NULL DEFAULT 0,
        has_attachments INTEGER NOT NULL DEFAULT 0,
        is_unread INTEGER NOT NULL DEFAULT 0,
        is_starred INTEGER NOT NULL DEFAULT 0,
        is_trash INTEGER NOT NULL DEFAULT 0,
        is_spam INTEGER NOT NULL DEFAULT 0,
        is_important INTEGER NOT NULL DEFAULT 0,
        internal_date INTEGER NOT NULL DEFAULT 0,
        unsubscribe_link TEXT,
        synced_at TEXT NOT NULL,
        PRIMARY KEY (account_id, message_id)
    );

    CREATE INDEX IF NOT EXISTS idx_messages_date ON messages(account_id, internal_date);
    CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(account_id, from_email);
    CREATE INDEX IF NOT EXISTS idx_messages_category ON messages(account_id, category);
    CREATE INDEX IF NOT EXISTS idx_messages_size ON messages(account_id, size_bytes);
    CREATE INDEX IF NOT EXISTS idx_messages_synced ON messages(account_id, synced_at);

    CREATE TABLE IF NOT EXISTS unsubscribed_senders (
        account_id TEXT NOT NULL,
        sender_email TEXT NOT NULL,
        sender_name TEXT,
        marked_at TEXT NOT NULL,
        PRIMARY KEY (account_id, sender_email)
    );

    CREATE TABLE IF NOT EXISTS progress_snapshots (
        account_id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL,
        status TEXT NOT NULL,
        processed INTEGER NOT NULL,
        total INTEGER NOT NULL,
        percentage REAL NOT NULL,
        rate REAL NOT NULL,
        eta REAL,
        phase TEXT NOT NULL,
        message TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
"""


def utc_now() -> datetime:
    return datetime.now(UTC)


def _ts(value: datetime | None) -> str | None:
    """Fixed-width ISO timestamp so string comparison matches time order."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class MirrorStore:
    """The local mirror in SQLite.

    Each thread gets its own connection. Writes go through ``transaction()``
    (``BEGIN IMMEDIATE``); reads that must be consistent go through
    ``read_snapshot()``. Both nest: a write method called inside an open
    transaction on the same thread joins it.

    Tables:
    - accounts: per-account sync state and delta cursor
    - sync_jobs: one row per sync attempt
    - messages: mirrored message metadata keyed on (account_id, message_id)
    - unsubscribed_senders: senders the user marked as unsubscribed
    - progress_snapshots: latest progress view per account
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._connected = False

    def connect(self) -> None:
        """Open the database and ensure the schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connected = True
        self.conn.executescript(_SCHEMA)

    def close(self) -> None:
        """Close every per-thread connection."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
            self._local = threading.local()
            self._connected = False

    def __enter__(self) -> MirrorStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if not self._connected:
            raise RuntimeError("Database not connected. Call connect() first.")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self._db_path),
                isolation_level=None,
                check_same_thread=False,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serializable write transaction on this thread's connection."""
        conn = self.conn
        if conn.in_transaction:
            yield conn
            return
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    @contextmanager
    def read_snapshot(self) -> Iterator[sqlite3.Connection]:
        """Consistent read view; never waits on writers under WAL."""
        conn = self.conn
        if conn.in_transaction:
            yield conn
            return
        conn.execute("BEGIN")
        try:
            yield conn
        finally:
            conn.execute("COMMIT")

    # -- accounts ---------------------------------------------------------

    def ensure_account(self, account_id: str, email: str) -> Account:
        """Register an account if it is not known yet and return it."""
        now = _ts(utc_now())
        with self.transaction() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO accounts
                   (account_id, email, sync_state, created_at, updated_at)
                   VALUES (?, ?, 'idle', ?, ?)""",
                (account_id, email, now, now),
            )
        return self.require_account(account_id)

    def get_account(self, account_id: str) -> Account | None:
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE account_id = ?", (account_id,)
        ).fetchone()
        return self._row_to_account(row) if row else None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Unknown account: {account_id}")
        return account

    def set_account_state(
        self,
        account_id: str,
        state: AccountSyncState,
        *,
        last_error: str | None = None,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET sync_state = ?, last_error = ?, updated_at = ? "
                "WHERE account_id = ?",
                (state.value, last_error, _ts(utc_now()), account_id),
            )

    def set_delta_cursor(self, account_id: str, cursor: str | None) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET last_delta_cursor = ?, updated_at = ? WHERE account_id = ?",
                (cursor, _ts(utc_now()), account_id),
            )

    def record_full_sync(
        self, account_id: str, completed_at: datetime, delta_cursor: str | None
    ) -> None:
        """Stamp a completed full sync and install its delta cursor."""
        with self.transaction() as conn:
            conn.execute(
                """UPDATE accounts SET last_full_sync_at = ?,
                   last_delta_cursor = COALESCE(?, last_delta_cursor), updated_at = ?
                   WHERE account_id = ?""",
                (_ts(completed_at), delta_cursor, _ts(utc_now()), account_id),
            )

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            account_id=row["account_id"],
            email=row["email"],
            sync_state=AccountSyncState(row["sync_state"]),
            last_full_sync_at=_parse_ts(row["last_full_sync_at"]),
            last_delta_cursor=row["last_delta_cursor"],
            last_error=row["last_error"],
        )

    # -- sync jobs --------------------------------------------------------

    def insert_job(self, job: SyncJob) -> None:
        """Persist a new job.

        Raises:
            AlreadyRunningError: If the account already has an active job.
        """
        try:
            with self.transaction() as conn:
                conn.execute(
                    """INSERT INTO sync_jobs
                       (job_id, account_id, kind, status, processed, total, cursor,
                        started_at, updated_at, completed_at, run_started_at,
                        delta_cursor_at_start, resumed_from, error_code, last_error,
                        cancel_requested, rate_samples)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        job.job_id,
                        job.account_id,
                        job.kind.value,
                        job.status.value,
                        job.processed,
                        job.total,
                        job.cursor,
                        _ts(job.started_at),
                        _ts(job.updated_at),
                        _ts(job.completed_at),
                        _ts(job.run_started_at),
                        job.delta_cursor_at_start,
                        job.resumed_from,
                        job.error_code,
                        job.last_error,
                        int(job.cancel_requested),
                        json.dumps(job.rate_samples),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise AlreadyRunningError(
                f"A sync is already active for account {job.account_id}"
            ) from e

    def update_job(self, job: SyncJob) -> None:
        """Write back the mutable fields of a job."""
        with self.transaction() as conn:
            conn.execute(
                """UPDATE sync_jobs SET status = ?, processed = ?, total = ?, cursor = ?,
                   updated_at = ?, completed_at = ?, error_code = ?, last_error = ?,
                   cancel_requested = MAX(cancel_requested, ?), rate_samples = ?
                   WHERE job_id = ?""",
                (
                    job.status.value,
                    job.processed,
                    job.total,
                    job.cursor,
                    _ts(job.updated_at),
                    _ts(job.completed_at),
                    job.error_code,
                    job.last_error,
                    int(job.cancel_requested),
                    json.dumps(job.rate_samples),
                    job.job_id,
                ),
            )

    def request_cancel(self, job_id: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE sync_jobs SET cancel_requested = 1, updated_at = ? WHERE job_id = ?",
                (_ts(utc_now()), job_id),
            )

    def get_job(self, job_id: str) -> SyncJob | None:
        row = self.conn.execute(
            "SELECT * FROM sync_jobs WHERE job_id = ?", (job_id,)
        ).fetchone()
        return self._row_to_job(row) if row else None

    def latest_job(self, account_id: str, kind: SyncKind | None = None) -> SyncJob | None:
        """Most recently started job for an account, optionally of one kind."""
        sql = "SELECT * FROM sync_jobs WHERE account_id = ?"
        params: list[str] = [account_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind.value)
        sql += " ORDER BY started_at DESC, rowid DESC LIMIT 1"
        row = self.conn.execute(sql, params).fetchone()
        return self._row_to_job(row) if row else None

    def active_job(self, account_id: str) -> SyncJob | None:
        row = self.conn.execute(
            "SELECT * FROM sync_jobs WHERE account_id = ? AND status IN (?, ?)",
            (account_id, *ACTIVE_STATUSES),
        ).fetchone()
        return self._row_to_job(row) if row else None

    def active_jobs(self) -> list[SyncJob]:
        """All pending/running jobs across accounts."""
        rows = self.conn.execute(
            "SELECT * FROM sync_jobs WHERE status IN (?, ?) ORDER BY started_at",
            ACTIVE_STATUSES,
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> SyncJob:
        return SyncJob(
            job_id=row["job_id"],
            account_id=row["account_id"],
            kind=SyncKind(row["kind"]),
            status=JobStatus(row["status"]),
            processed=row["processed"],
            total=row["total"],
            cursor=row["cursor"],
            started_at=_parse_ts(row["started_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            run_started_at=_parse_ts(row["run_started_at"]),
            delta_cursor_at_start=row["delta_cursor_at_start"],
            resumed_from=row["resumed_from"],
            error_code=row["error_code"],
            last_error=row["last_error"],
            cancel_requested=bool(row["cancel_requested"]),
            rate_samples=[tuple(s) for s in json.loads(row["rate_samples"] or "[]")],
        )

    # -- messages ---------------------------------------------------------

    def upsert_messages(
        self,
        account_id: str,
        messages: Iterable[MirroredMessage],
        synced_at: datetime | None = None,
    ) -> int:
        """Insert or replace mirrored messages; later values win.

        Returns:
            Number of rows written.
        """
        stamp = _ts(synced_at or utc_now())
        rows = [
            (
                account_id,
                m.message_id,
                m.thread_id,
                m.subject,
                m.snippet,
                m.from_email,
                m.from_name,
                json.dumps(list(m.labels)),
                m.category,
                m.size_bytes,
                int(m.has_attachments),
                int(m.is_unread),
                int(m.is_starred),
                int(m.is_trash),
                int(m.is_spam),
                int(m.is_important),
                m.internal_date,
                m.unsubscribe_link,
                stamp,
            )
            for m in messages
        ]
        if not rows:
            return 0
        with self.transaction() as conn:
            conn.executemany(
                """INSERT INTO messages
                   (account_id, message_id, thread_id, subject, snippet, from_email,
                    from_name, labels, category, size_bytes, has_attachments, is_unread,
                    is_starred, is_trash, is_spam, is_important, internal_date,
                    unsubscribe_link, synced_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(account_id, message_id) DO UPDATE SET
                       thread_id = excluded.thread_id,
                       subject = excluded.subject,
                       snippet = excluded.snippet,
                       from_email = excluded.from_email,
                       from_name = excluded.from_name,
                       labels = excluded.labels,
                       category = excluded.category,
                       size_bytes = excluded.size_bytes,
                       has_attachments = excluded.has_attachments,
                       is_unread = excluded.is_unread,
                       is_starred = excluded.is_starred,
                       is_trash = excluded.is_trash,
                       is_spam = excluded.is_spam,
                       is_important = excluded.is_important,
                       internal_date = excluded.internal_date,
                       unsubscribe_link = excluded.unsubscribe_link,
                       synced_at = excluded.synced_at""",
                rows,
            )
        return len(rows)

    def synced_ids_since(
        self, account_id: str, message_ids: Iterable[str], since: datetime
    ) -> set[str]:
        """Subset of ``message_ids`` already written at or after ``since``."""
        ids = list(message_ids)
        found: set[str] = set()
        stamp = _ts(since)
        # Stay well below SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start : start + 500]
            placeholders = ", ".join("?" * len(chunk))
            rows = self.conn.execute(
                f"SELECT message_id FROM messages WHERE account_id = ? "
                f"AND synced_at >= ? AND message_id IN ({placeholders})",
                (account_id, stamp, *chunk),
            ).fetchall()
            found.update(row["message_id"] for row in rows)
        return found

    def touch_messages(
        self, account_id: str, message_ids: Iterable[str], synced_at: datetime | None = None
    ) -> int:
        """Re-stamp existing rows without rewriting their content.

        Used for messages the remote still lists but could not serve, so a
        sweep does not mistake them for deletions.
        """
        stamp = _ts(synced_at or utc_now())
        rows = [(stamp, account_id, mid) for mid in message_ids]
        if not rows:
            return 0
        with self.transaction() as conn:
            cursor = conn.executemany(
                "UPDATE messages SET synced_at = ? WHERE account_id = ? AND message_id = ?", rows
            )
        return cursor.rowcount

    def get_message(self, account_id: str, message_id: str) -> MirroredMessage | None:
        row = self.conn.execute(
            "SELECT * FROM messages WHERE account_id = ? AND message_id = ?",
            (account_id, message_id),
        ).fetchone()
        return self.message_from_row(row) if row else None

    def count_messages(self, account_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM messages WHERE account_id = ?", (account_id,)
        ).fetchone()
        return row["cnt"]

    def apply_label_changes(self, account_id: str, changes: dict[str, LabelChange]) -> int:
        """Apply label additions/removals and recompute the derived flags.

        Messages not in the mirror are ignored.

        Returns:
            Number of rows updated.
        """
        updated = 0
        with self.transaction() as conn:
            for message_id, change in changes.items():
                row = conn.execute(
                    "SELECT labels FROM messages WHERE account_id = ? AND message_id = ?",
                    (account_id, message_id),
                ).fetchone()
                if row is None:
                    continue
                labels = [lbl for lbl in json.loads(row["labels"]) if lbl not in change.removed]
                for label in change.added:
                    if label not in labels:
                        labels.append(label)
                self._write_labels(conn, account_id, message_id, labels)
                updated += 1
        return updated

    def mark_trashed(self, account_id: str, message_ids: Iterable[str]) -> int:
        """Flag messages as trashed locally, keeping the rows."""
        return self.apply_label_changes(
            account_id, {mid: LabelChange(added=("TRASH",)) for mid in message_ids}
        )

    @staticmethod
    def _write_labels(
        conn: sqlite3.Connection, account_id: str, message_id: str, labels: list[str]
    ) -> None:
        conn.execute(
            """UPDATE messages SET labels = ?, category = ?, is_unread = ?, is_starred = ?,
               is_trash = ?, is_spam = ?, is_important = ?
               WHERE account_id = ? AND message_id = ?""",
            (
                json.dumps(labels),
                find_category(labels),
                int("UNREAD" in labels),
                int("STARRED" in labels),
                int("TRASH" in labels),
                int("SPAM" in labels),
                int("IMPORTANT" in labels),
                account_id,
                message_id,
            ),
        )

    def delete_messages(self, account_id: str, message_ids: Iterable[str]) -> int:
        rows = [(account_id, mid) for mid in message_ids]
        if not rows:
            return 0
        with self.transaction() as conn:
            cursor = conn.executemany(
                "DELETE FROM messages WHERE account_id = ? AND message_id = ?", rows
            )
        return cursor.rowcount

    def sweep_stale(self, account_id: str, before: datetime) -> int:
        """Delete rows not re-synced since ``before``; returns rows removed."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM messages WHERE account_id = ? AND synced_at < ?",
                (account_id, _ts(before)),
            )
        if cursor.rowcount:
            logger.info("Swept %d stale messages for %s", cursor.rowcount, account_id)
        return cursor.rowcount

    @staticmethod
    def message_from_row(row: sqlite3.Row) -> MirroredMessage:
        return MirroredMessage(
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            subject=row["subject"],
            snippet=row["snippet"],
            from_email=row["from_email"],
            from_name=row["from_name"],
            labels=tuple(json.loads(row["labels"] or "[]")),
            category=row["category"],
            size_bytes=row["size_bytes"],
            has_attachments=bool(row["has_attachments"]),
            is_unread=bool(row["is_unread"]),
            is_starred=bool(row["is_starred"]),
            is_trash=bool(row["is_trash"]),
            is_spam=bool(row["is_spam"]),
            is_important=bool(row["is_important"]),
            internal_date=row["internal_date"],
            unsubscribe_link=row["unsubscribe_link"],
            synced_at=_parse_ts(row["synced_at"]),
        )

    # -- unsubscribe records ----------------------------------------------

    def insert_unsubscribed(
        self, account_id: str, sender_email: str, sender_name: str | None
    ) -> bool:
        """Record a sender as unsubscribed. Returns False if already recorded."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO unsubscribed_senders
                   (account_id, sender_email, sender_name, marked_at)
                   VALUES (?, ?, ?, ?)""",
                (account_id, sender_email.lower(), sender_name, _ts(utc_now())),
            )
        return cursor.rowcount > 0

    def list_unsubscribed(self, account_id: str) -> list[UnsubscribeRecord]:
        rows = self.conn.execute(
            "SELECT * FROM unsubscribed_senders WHERE account_id = ? ORDER BY marked_at DESC",
            (account_id,),
        ).fetchall()
        return [
            UnsubscribeRecord(
                sender_email=row["sender_email"],
                sender_name=row["sender_name"],
                marked_at=_parse_ts(row["marked_at"]),
            )
            for row in rows
        ]

    # -- progress snapshots -----------------------------------------------

    def save_snapshot(self, account_id: str, snapshot: ProgressSnapshot) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO progress_snapshots
                   (account_id, job_id, status, processed, total, percentage, rate,
                    eta, phase, message, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(account_id) DO UPDATE SET
                       job_id = excluded.job_id,
                       status = excluded.status,
                       processed = excluded.processed,
                       total = excluded.total,
                       percentage = excluded.percentage,
                       rate = excluded.rate,
                       eta = excluded.eta,
                       phase = excluded.phase,
                       message = excluded.message,
                       updated_at = excluded.updated_at""",
                (
                    account_id,
                    snapshot.job_id,
                    snapshot.status.value,
                    snapshot.processed,
                    snapshot.total,
                    snapshot.percentage,
                    snapshot.rate,
                    snapshot.eta,
                    snapshot.phase,
                    snapshot.message,
                    _ts(snapshot.updated_at or utc_now()),
                ),
            )

    def load_snapshot(self, account_id: str) -> ProgressSnapshot | None:
        row = self.conn.execute(
            "SELECT * FROM progress_snapshots WHERE account_id = ?", (account_id,)
        ).fetchone()
        if row is None:
            return None
        return ProgressSnapshot(
            job_id=row["job_id"],
            account_id=row["account_id"],
            status=JobStatus(row["status"]),
            processed=row["processed"],
            total=row["total"],
            percentage=row["percentage"],
            rate=row["rate"],
            eta=row["eta"],
            phase=row["phase"],
            message=row["message"],
            updated_at=_parse_ts(row["updated_at"]),
        )
