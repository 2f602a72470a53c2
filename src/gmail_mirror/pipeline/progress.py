"""Progress accounting: moving-average rate, percentage, ETA, phase."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from gmail_mirror.core.models import JobStatus, ProgressSnapshot, SyncJob, SyncKind
from gmail_mirror.storage.mirror import MirrorStore, utc_now

logger = logging.getLogger(__name__)

PHASE_WAITING = "waiting to start"
PHASE_COUNTING = "counting messages"
PHASE_LISTING = "fetching message list"
PHASE_DOWNLOADING = "downloading content"
PHASE_FINALIZING = "finalizing"
PHASE_APPLYING = "applying changes"

_TERMINAL_PHASES = {
    JobStatus.COMPLETED: "completed",
    JobStatus.CANCELLED: "cancelled",
    JobStatus.FAILED: "failed",
    JobStatus.AUTH_EXPIRED: "auth expired",
}


class ProgressTracker:
    """Derives ProgressSnapshots from SyncJobs and persists them.

    Rate samples live on the job as ``(timestamp, processed_delta)`` pairs,
    bounded to ``window_size``. The first sample of a run is a ``(t, 0)``
    anchor so the first page already yields a rate.
    """

    def __init__(
        self,
        store: MirrorStore,
        window_size: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._window_size = max(2, window_size)
        self._clock = clock

    def begin(self, job: SyncJob) -> None:
        """Start a fresh rate window for a run."""
        job.rate_samples = [(self._clock(), 0)]

    def record(self, job: SyncJob, processed_delta: int) -> None:
        """Add one sample and trim the window."""
        if not job.rate_samples:
            self.begin(job)
        job.rate_samples.append((self._clock(), processed_delta))
        if len(job.rate_samples) > self._window_size:
            job.rate_samples = job.rate_samples[-self._window_size :]

    @staticmethod
    def rate(job: SyncJob) -> float:
        """Messages per second over the sample window, 0 when unknown."""
        samples = job.rate_samples
        if len(samples) < 2:
            return 0.0
        span = samples[-1][0] - samples[0][0]
        if span <= 0:
            return 0.0
        return sum(delta for _, delta in samples[1:]) / span

    @staticmethod
    def percentage(job: SyncJob, floor: float = 0.0) -> float:
        """Percent complete in [0, 100]; completed full jobs are always 100."""
        if job.status == JobStatus.COMPLETED:
            return 100.0
        if job.kind == SyncKind.DELTA or job.total <= 0:
            value = 0.0
        else:
            value = min(100.0, max(0.0, job.processed / job.total * 100))
        if job.status.is_active:
            value = max(value, floor)
        return round(value, 2)

    def eta(self, job: SyncJob) -> float | None:
        """Seconds remaining, or None when terminal or the rate is unknown."""
        if not job.status.is_active or job.kind == SyncKind.DELTA:
            return None
        rate = self.rate(job)
        if rate <= 0:
            return None
        return max(0, job.total - job.processed) / rate

    @staticmethod
    def phase(job: SyncJob) -> str:
        if job.status in _TERMINAL_PHASES:
            return _TERMINAL_PHASES[job.status]
        if job.status == JobStatus.PENDING:
            return PHASE_WAITING
        if job.kind == SyncKind.DELTA:
            return PHASE_APPLYING
        if job.processed == 0:
            return PHASE_LISTING
        if job.total and job.processed >= job.total:
            return PHASE_FINALIZING
        return PHASE_DOWNLOADING

    @staticmethod
    def status_message(job: SyncJob, phase: str) -> str:
        """Human-readable status line for clients."""
        if job.status == JobStatus.COMPLETED:
            return f"Sync completed: {job.processed:,} emails"
        if job.status == JobStatus.CANCELLED:
            return f"Sync cancelled after {job.processed:,} emails"
        if job.status == JobStatus.FAILED:
            return f"Sync failed: {job.last_error or 'unknown error'}"
        if job.status == JobStatus.AUTH_EXPIRED:
            return "Authentication expired, reconnect the account"
        if phase == PHASE_WAITING:
            return "Waiting to start..."
        if phase == PHASE_COUNTING:
            return "Counting emails..."
        if phase == PHASE_LISTING:
            return "Fetching message list..."
        if phase == PHASE_APPLYING:
            return "Applying remote changes..."
        if phase == PHASE_FINALIZING:
            return "Finalizing..."
        return f"Processing {job.processed:,} of {job.total:,} emails"

    def build(self, job: SyncJob, phase: str | None = None) -> ProgressSnapshot:
        """Compute a snapshot without persisting it."""
        floor = 0.0
        previous = self._store.load_snapshot(job.account_id)
        if previous is not None and previous.job_id == job.job_id:
            floor = previous.percentage

        current_phase = phase or self.phase(job)
        return ProgressSnapshot(
            job_id=job.job_id,
            account_id=job.account_id,
            status=job.status,
            processed=job.processed,
            total=job.total,
            percentage=self.percentage(job, floor),
            rate=round(self.rate(job), 3) if job.status.is_active else 0.0,
            eta=self.eta(job),
            phase=current_phase,
            message=self.status_message(job, current_phase),
            updated_at=job.updated_at or utc_now(),
        )

    def publish(self, job: SyncJob, phase: str | None = None) -> ProgressSnapshot:
        """Compute and persist the snapshot for a job."""
        snapshot = self.build(job, phase)
        self._store.save_snapshot(job.account_id, snapshot)
        logger.debug(
            "Progress %s: %s %d/%d (%.1f%%)",
            job.account_id, snapshot.phase, job.processed, job.total, snapshot.percentage,
        )
        return snapshot

    def snapshot(self, account_id: str) -> ProgressSnapshot | None:
        """Latest persisted snapshot, or None if no job has reported yet."""
        return self._store.load_snapshot(account_id)
