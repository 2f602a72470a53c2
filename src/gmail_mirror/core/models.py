"""Dataclasses and enums for the Gmail Mirror domain model."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class AccountSyncState(StrEnum):
    """Account-level sync state persisted on the account row."""

    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    AUTH_EXPIRED = "auth_expired"


class JobStatus(StrEnum):
    """Lifecycle status of a single SyncJob."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    AUTH_EXPIRED = "auth_expired"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


class SyncKind(StrEnum):
    FULL = "full"
    DELTA = "delta"


# States from which a fresh full sync may be started
STARTABLE_STATES = frozenset(
    {
        AccountSyncState.IDLE,
        AccountSyncState.COMPLETED,
        AccountSyncState.FAILED,
        AccountSyncState.CANCELLED,
    }
)

RESUMABLE_STATUSES = frozenset({JobStatus.CANCELLED, JobStatus.FAILED})


@dataclass(frozen=True)
class MessageStub:
    """Lightweight message reference from Gmail list API."""

    message_id: str
    thread_id: str


@dataclass(frozen=True)
class MessagePage:
    """One page of message references plus the continuation token."""

    stubs: tuple[MessageStub, ...]
    next_page_token: str | None = None
    result_size_estimate: int = 0


@dataclass(frozen=True)
class MirroredMessage:
    """Local copy of one remote message's metadata."""

    message_id: str
    thread_id: str
    subject: str | None
    snippet: str | None
    from_email: str
    from_name: str | None
    labels: tuple[str, ...] = field(default_factory=tuple)
    category: str | None = None
    size_bytes: int = 0
    has_attachments: bool = False
    is_unread: bool = False
    is_starred: bool = False
    is_trash: bool = False
    is_spam: bool = False
    is_important: bool = False
    internal_date: int = 0
    unsubscribe_link: str | None = None
    synced_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["labels"] = list(self.labels)
        data["synced_at"] = self.synced_at.isoformat() if self.synced_at else None
        return data


@dataclass(frozen=True)
class LabelChange:
    """Net label additions/removals for one message within a history window."""

    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()


@dataclass(frozen=True)
class HistoryChanges:
    """Folded result of a Gmail history.list walk."""

    added_ids: tuple[str, ...]
    deleted_ids: tuple[str, ...]
    label_changes: dict[str, LabelChange]
    new_cursor: str


@dataclass
class Account:
    """A mirrored mailbox. Owned by the registration collaborator."""

    account_id: str
    email: str
    sync_state: AccountSyncState = AccountSyncState.IDLE
    last_full_sync_at: datetime | None = None
    last_delta_cursor: str | None = None
    last_error: str | None = None


@dataclass
class SyncJob:
    """One sync attempt for one account."""

    job_id: str
    account_id: str
    kind: SyncKind
    status: JobStatus = JobStatus.PENDING
    processed: int = 0
    total: int = 0
    cursor: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    run_started_at: datetime | None = None
    delta_cursor_at_start: str | None = None
    resumed_from: str | None = None
    error_code: str | None = None
    last_error: str | None = None
    cancel_requested: bool = False
    rate_samples: list[tuple[float, int]] = field(default_factory=list)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Derived, read-mostly view of a job's progress."""

    job_id: str
    account_id: str
    status: JobStatus
    processed: int
    total: int
    percentage: float
    rate: float
    eta: float | None
    phase: str
    message: str
    updated_at: datetime | None = None

    @property
    def eta_text(self) -> str | None:
        if self.eta is None:
            return None
        return format_duration(self.eta)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": str(self.status),
            "processed": self.processed,
            "total": self.total,
            "percentage": self.percentage,
            "rate": self.rate,
            "eta": self.eta,
            "eta_text": self.eta_text,
            "phase": self.phase,
            "message": self.message,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class PageResult:
    """Outcome of ingesting one page of a full sync."""

    page_size: int
    fetched: int
    skipped: int
    missing: int
    next_cursor: str | None
    cancel_requested: bool = False

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


@dataclass(frozen=True)
class DeltaResult:
    added: int
    deleted: int
    labels_updated: int = 0
    new_cursor: str | None = None


@dataclass(frozen=True)
class UnsubscribeResult:
    sender_email: str
    already_unsubscribed: bool


@dataclass(frozen=True)
class BulkUnsubscribeResult:
    marked_count: int
    already_unsubscribed_count: int


@dataclass(frozen=True)
class UnsubscribeRecord:
    sender_email: str
    sender_name: str | None
    marked_at: datetime


@dataclass(frozen=True)
class Subscription:
    """Per-sender aggregate for the subscriptions view."""

    sender_email: str
    sender_name: str | None
    count: int
    total_size: int
    first_date: int
    latest_date: int
    unsubscribe_link: str | None
    is_unsubscribed: bool


@dataclass(frozen=True)
class Pagination:
    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> Pagination:
        total_pages = (total + limit - 1) // limit if limit > 0 else 0
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_more=page * limit < total,
        )


@dataclass(frozen=True)
class ExplorerPage:
    emails: list[MirroredMessage]
    pagination: Pagination
    total_size_bytes: int


@dataclass(frozen=True)
class SubscriptionPage:
    subscriptions: list[Subscription]
    pagination: Pagination


@dataclass(frozen=True)
class BulkActionResult:
    """Outcome of a bulk trash or permanent delete.

    Per-id failures are reported here rather than raised.
    """

    action: str
    requested: int
    succeeded: int
    failed: int
    failed_ids: tuple[str, ...] = ()
    message: str = ""

    @property
    def partial(self) -> bool:
        return self.succeeded > 0 and self.failed > 0

    @property
    def trashed_count(self) -> int:
        return self.succeeded if self.action == "trash" else 0

    @property
    def deleted_count(self) -> int:
        return self.succeeded if self.action == "delete" else 0

    @property
    def failed_count(self) -> int:
        return self.failed


def format_duration(seconds: float) -> str:
    """Render a duration as e.g. ``1h 5m``, ``2m 10s`` or ``42s``."""
    if seconds < 0:
        return "calculating..."
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
