"""Tests for progress accounting."""

from __future__ import annotations

import pytest

from gmail_mirror.core.models import JobStatus, SyncJob, SyncKind, format_duration
from gmail_mirror.pipeline.progress import (
    PHASE_COUNTING,
    PHASE_DOWNLOADING,
    PHASE_FINALIZING,
    PHASE_LISTING,
    PHASE_WAITING,
    ProgressTracker,
)
from gmail_mirror.storage.mirror import MirrorStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(store: MirrorStore, clock: FakeClock) -> ProgressTracker:
    return ProgressTracker(store, window_size=3, clock=clock)


def job(**kwargs) -> SyncJob:
    fields = {"job_id": "j1", "account_id": "acct", "kind": SyncKind.FULL, "status": JobStatus.RUNNING}
    fields.update(kwargs)
    return SyncJob(**fields)


class TestRate:
    def test_first_page_yields_rate(self, tracker: ProgressTracker, clock: FakeClock) -> None:
        j = job()
        tracker.begin(j)
        clock.advance(10)
        tracker.record(j, 50)

        assert tracker.rate(j) == pytest.approx(5.0)

    def test_window_is_bounded(self, tracker: ProgressTracker, clock: FakeClock) -> None:
        j = job()
        tracker.begin(j)
        for delta in (100, 10, 10):
            clock.advance(10)
            tracker.record(j, delta)

        # Last three samples: 20 messages over 20s
        assert len(j.rate_samples) == 3
        assert tracker.rate(j) == pytest.approx(1.0)

    def test_unknown_rate_is_zero(self, tracker: ProgressTracker) -> None:
        j = job()
        assert tracker.rate(j) == 0.0
        tracker.begin(j)
        assert tracker.rate(j) == 0.0


class TestPercentage:
    def test_fraction_of_total(self) -> None:
        assert ProgressTracker.percentage(job(processed=50, total=200)) == 25.0

    def test_clamped_when_processed_exceeds_total(self) -> None:
        assert ProgressTracker.percentage(job(processed=150, total=100)) == 100.0

    def test_zero_total(self) -> None:
        assert ProgressTracker.percentage(job(processed=10, total=0)) == 0.0

    def test_completed_is_always_100(self) -> None:
        assert ProgressTracker.percentage(job(status=JobStatus.COMPLETED, processed=0, total=0)) == 100.0

    def test_floor_only_applies_while_active(self) -> None:
        assert ProgressTracker.percentage(job(processed=40, total=100), floor=45.0) == 45.0
        cancelled = job(status=JobStatus.CANCELLED, processed=40, total=100)
        assert ProgressTracker.percentage(cancelled, floor=45.0) == 40.0

    def test_delta_jobs_report_zero(self) -> None:
        assert ProgressTracker.percentage(job(kind=SyncKind.DELTA, processed=5, total=5)) == 0.0


class TestEta:
    def test_eta_from_rate(self, tracker: ProgressTracker, clock: FakeClock) -> None:
        j = job(processed=50, total=150)
        tracker.begin(j)
        clock.advance(10)
        tracker.record(j, 50)

        assert tracker.eta(j) == pytest.approx(20.0)

    def test_no_eta_without_rate_or_when_terminal(self, tracker: ProgressTracker) -> None:
        assert tracker.eta(job(processed=0, total=100)) is None
        assert tracker.eta(job(status=JobStatus.COMPLETED)) is None


class TestPhaseAndMessage:
    @pytest.mark.parametrize(
        ("fields", "expected"),
        [
            ({"status": JobStatus.PENDING}, PHASE_WAITING),
            ({"processed": 0, "total": 100}, PHASE_LISTING),
            ({"processed": 50, "total": 100}, PHASE_DOWNLOADING),
            ({"processed": 100, "total": 100}, PHASE_FINALIZING),
            ({"status": JobStatus.COMPLETED}, "completed"),
            ({"status": JobStatus.AUTH_EXPIRED}, "auth expired"),
        ],
    )
    def test_phase(self, fields: dict, expected: str) -> None:
        assert ProgressTracker.phase(job(**fields)) == expected

    def test_messages(self) -> None:
        assert ProgressTracker.status_message(job(processed=1500, total=3000), PHASE_DOWNLOADING) == (
            "Processing 1,500 of 3,000 emails"
        )
        assert ProgressTracker.status_message(job(status=JobStatus.PENDING), PHASE_COUNTING) == (
            "Counting emails..."
        )
        done = job(status=JobStatus.COMPLETED, processed=120)
        assert ProgressTracker.status_message(done, "completed") == "Sync completed: 120 emails"


class TestPublish:
    def test_publish_persists_snapshot(self, tracker: ProgressTracker, store: MirrorStore) -> None:
        j = job(processed=30, total=120)
        tracker.publish(j)

        snapshot = tracker.snapshot("acct")
        assert snapshot.percentage == 25.0
        assert snapshot.phase == PHASE_DOWNLOADING

    def test_percentage_never_regresses_within_a_job(self, tracker: ProgressTracker) -> None:
        j = job(processed=60, total=100)
        tracker.publish(j)
        # A larger estimate arrives mid-run
        j.total = 200
        snapshot = tracker.publish(j)

        assert snapshot.percentage == 60.0

    def test_new_job_starts_from_zero(self, tracker: ProgressTracker) -> None:
        tracker.publish(job(processed=60, total=100))
        snapshot = tracker.publish(job(job_id="j2", processed=0, total=100))

        assert snapshot.percentage == 0.0


class TestFormatDuration:
    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [(42, "42s"), (130, "2m 10s"), (3900, "1h 5m"), (-1, "calculating...")],
    )
    def test_format(self, seconds: float, expected: str) -> None:
        assert format_duration(seconds) == expected
