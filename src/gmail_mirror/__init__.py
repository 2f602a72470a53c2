"""Gmail Mirror - Mirror a Gmail mailbox into SQLite, explore it and clean it up."""

from gmail_mirror.core.models import (
    Account,
    AccountSyncState,
    BulkActionResult,
    JobStatus,
    MirroredMessage,
    ProgressSnapshot,
    SyncJob,
)
from gmail_mirror.service import GmailMirror

__version__ = "0.1.0"

__all__ = [
    "Account",
    "AccountSyncState",
    "BulkActionResult",
    "GmailMirror",
    "JobStatus",
    "MirroredMessage",
    "ProgressSnapshot",
    "SyncJob",
]
