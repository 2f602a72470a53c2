"""Per-account sync job state machine, concurrency guard and cancellation."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import replace

from gmail_mirror.core.exceptions import (
    AlreadyRunningError,
    AuthExpiredError,
    GmailMirrorError,
    InvalidCursorError,
    NotFoundError,
)
from gmail_mirror.core.gmail_client import GmailClient
from gmail_mirror.core.models import (
    RESUMABLE_STATUSES,
    STARTABLE_STATES,
    Account,
    AccountSyncState,
    DeltaResult,
    JobStatus,
    SyncJob,
    SyncKind,
)
from gmail_mirror.pipeline.ingestion import IngestionPipeline
from gmail_mirror.pipeline.locks import AccountLocks
from gmail_mirror.pipeline.progress import PHASE_COUNTING, ProgressTracker
from gmail_mirror.storage.mirror import MirrorStore, utc_now

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], GmailClient]


class SyncOrchestrator:
    """Owns the sync lifecycle for every account.

    The account lock is taken without blocking by ``start``/``resume``/``delta``
    and held until the job reaches a terminal state; the background worker
    releases it. The partial unique index on ``sync_jobs`` backs this up at
    the storage level.
    """

    def __init__(
        self,
        store: MirrorStore,
        client_factory: ClientFactory,
        pipeline: IngestionPipeline,
        progress: ProgressTracker,
        *,
        locks: AccountLocks | None = None,
        max_concurrent_syncs: int = 4,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._pipeline = pipeline
        self._progress = progress
        self._locks = locks or AccountLocks()
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_syncs, thread_name_prefix="gmail-sync"
        )
        self._state_lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._overrides: dict[str, JobStatus] = {}
        self._futures: dict[str, Future] = {}

    # -- entry points -----------------------------------------------------

    def start(self, account_id: str) -> SyncJob:
        """Start a fresh full sync in the background.

        Returns a copy of the job as it was when handed to the worker.

        Raises:
            NotFoundError: Unknown account.
            AuthExpiredError: The account must be reconnected first.
            AlreadyRunningError: A sync is already active for the account.
        """
        self._check_startable(account_id)
        if not self._locks.try_acquire(account_id):
            raise AlreadyRunningError(f"A sync is already running for {account_id}")

        launched = False
        try:
            account = self._check_startable(account_id)
            if account.sync_state not in STARTABLE_STATES:
                logger.warning(
                    "Account %s was left in state %s, starting anyway",
                    account_id, account.sync_state,
                )
            client = self._client_for(account_id)

            now = utc_now()
            job = SyncJob(
                job_id=uuid.uuid4().hex,
                account_id=account_id,
                kind=SyncKind.FULL,
                started_at=now,
                updated_at=now,
                run_started_at=now,
            )
            with self._store.transaction():
                self._store.insert_job(job)
                self._store.set_account_state(account_id, AccountSyncState.PENDING)
                self._progress.publish(job, phase=PHASE_COUNTING)

            try:
                job.total = client.estimate_total()
                job.delta_cursor_at_start = client.current_history_id() or None
            except AuthExpiredError as e:
                self._finish(job, JobStatus.AUTH_EXPIRED, error=e)
                raise
            except GmailMirrorError as e:
                self._finish(job, JobStatus.FAILED, error=e)
                raise

            job.updated_at = utc_now()
            with self._store.transaction():
                self._store.update_job(job)
                self._progress.publish(job)

            started = replace(job)
            self._launch(job, client)
            launched = True
            logger.info("Started full sync %s for %s (%d messages)", job.job_id, account_id, job.total)
            return started
        finally:
            if not launched:
                self._locks.release(account_id)

    def resume(self, account_id: str) -> SyncJob:
        """Continue the latest cancelled/failed full sync from its cursor.

        Raises:
            NotFoundError: No resumable job (none, completed, or no cursor yet).
            AuthExpiredError: The account must be reconnected first.
            AlreadyRunningError: A sync is already active for the account.
        """
        self._check_startable(account_id)
        if not self._locks.try_acquire(account_id):
            raise AlreadyRunningError(f"A sync is already running for {account_id}")

        launched = False
        try:
            self._check_startable(account_id)
            prior = self._store.latest_job(account_id, SyncKind.FULL)
            if prior is None or prior.status not in RESUMABLE_STATUSES or not prior.cursor:
                raise NotFoundError(f"No resumable sync for {account_id}")

            client = self._client_for(account_id)
            now = utc_now()
            job = SyncJob(
                job_id=uuid.uuid4().hex,
                account_id=account_id,
                kind=SyncKind.FULL,
                processed=prior.processed,
                total=prior.total,
                cursor=prior.cursor,
                started_at=now,
                updated_at=now,
                run_started_at=prior.run_started_at or now,
                delta_cursor_at_start=prior.delta_cursor_at_start,
                resumed_from=prior.job_id,
            )
            with self._store.transaction():
                self._store.insert_job(job)
                self._store.set_account_state(account_id, AccountSyncState.PENDING)
                self._progress.publish(job)

            started = replace(job)
            self._launch(job, client)
            launched = True
            logger.info(
                "Resumed sync for %s from job %s at %d/%d",
                account_id, prior.job_id, started.processed, started.total,
            )
            return started
        finally:
            if not launched:
                self._locks.release(account_id)

    def cancel(self, account_id: str) -> bool:
        """Request cooperative cancellation of the active job.

        The job becomes ``cancelled`` once its in-flight page is durable.

        Raises:
            NotFoundError: No pending/running job for the account.
        """
        self._store.require_account(account_id)
        job = self._store.active_job(account_id)
        if job is None:
            raise NotFoundError(f"No active sync for {account_id}")

        self._store.request_cancel(job.job_id)
        with self._state_lock:
            event = self._cancel_events.get(account_id)
        if event is not None:
            event.set()
            logger.info("Cancellation requested for %s (job %s)", account_id, job.job_id)
        elif not self._locks.is_held(account_id):
            # No worker in this process owns the job
            job.cancel_requested = True
            self._finish(job, JobStatus.CANCELLED)
        return True

    def delta(self, account_id: str) -> DeltaResult | SyncJob:
        """Apply remote changes since the last delta cursor, synchronously.

        Falls back to a full sync (returning its job) when there is no cursor
        yet or the cursor has expired.

        Raises:
            AlreadyRunningError: Any sync holds the account.
            AuthExpiredError: The account must be reconnected first.
        """
        account = self._check_startable(account_id)
        if not account.last_delta_cursor:
            logger.info("No delta cursor for %s, starting full sync", account_id)
            return self.start(account_id)

        if not self._locks.try_acquire(account_id):
            raise AlreadyRunningError(f"A sync is already running for {account_id}")

        result: DeltaResult | None = None
        try:
            account = self._check_startable(account_id)
            client = self._client_for(account_id)
            now = utc_now()
            job = SyncJob(
                job_id=uuid.uuid4().hex,
                account_id=account_id,
                kind=SyncKind.DELTA,
                status=JobStatus.RUNNING,
                cursor=account.last_delta_cursor,
                started_at=now,
                updated_at=now,
                run_started_at=now,
            )
            with self._store.transaction():
                self._store.insert_job(job)
                self._store.set_account_state(account_id, AccountSyncState.RUNNING)

            try:
                result = self._pipeline.run_delta(client, account, job)
            except InvalidCursorError as e:
                logger.warning("Delta cursor for %s expired, falling back to full sync", account_id)
                with self._store.transaction():
                    self._store.set_delta_cursor(account_id, None)
                    self._finish(job, JobStatus.FAILED, error=e)
            except AuthExpiredError as e:
                self._finish(job, JobStatus.AUTH_EXPIRED, error=e)
                raise
            except Exception as e:
                self._finish(job, JobStatus.FAILED, error=e)
                raise
            else:
                self._finish(job, JobStatus.COMPLETED)
        finally:
            self._locks.release(account_id)

        if result is None:
            return self.start(account_id)
        return result

    def report_auth_expired(self, account_id: str) -> None:
        """Force the account into ``auth_expired``; an active job ends at its next page boundary."""
        self._store.require_account(account_id)
        self._store.set_account_state(
            account_id, AccountSyncState.AUTH_EXPIRED, last_error="Authentication expired"
        )
        job = self._store.active_job(account_id)
        if job is None:
            return
        with self._state_lock:
            event = self._cancel_events.get(account_id)
            if event is not None:
                self._overrides[account_id] = JobStatus.AUTH_EXPIRED
                event.set()
                return
        if not self._locks.is_held(account_id):
            self._finish(job, JobStatus.AUTH_EXPIRED)

    def report_auth_restored(self, account_id: str) -> Account:
        """Return an ``auth_expired`` account to ``idle`` so it can sync again."""
        account = self._store.require_account(account_id)
        if account.sync_state == AccountSyncState.AUTH_EXPIRED:
            self._store.set_account_state(account_id, AccountSyncState.IDLE)
            logger.info("Authentication restored for %s", account_id)
        return self._store.require_account(account_id)

    def recover_interrupted(self, auto_resume: bool = False) -> list[SyncJob]:
        """Fail jobs left active by a previous process, keeping their cursors.

        Returns the recovered jobs. With ``auto_resume`` each recovered full
        sync that has a cursor is resumed.
        """
        recovered: list[SyncJob] = []
        for job in self._store.active_jobs():
            if self._locks.is_held(job.account_id):
                continue
            job.error_code = "interrupted"
            self._finish(job, JobStatus.FAILED, error="Sync interrupted before completion")
            recovered.append(job)
            logger.warning(
                "Recovered interrupted %s job %s for %s at %d/%d",
                job.kind, job.job_id, job.account_id, job.processed, job.total,
            )

        if auto_resume:
            for job in recovered:
                if job.kind != SyncKind.FULL or not job.cursor:
                    continue
                try:
                    self.resume(job.account_id)
                except GmailMirrorError as e:
                    logger.error("Could not resume %s: %s", job.account_id, e)
        return recovered

    def wait(self, account_id: str, timeout: float | None = None) -> bool:
        """Block until the account's background job finishes. Returns True if done."""
        with self._state_lock:
            future = self._futures.get(account_id)
        if future is None:
            return True
        wait_futures([future], timeout=timeout)
        return future.done()

    def is_running(self, account_id: str) -> bool:
        return self._locks.is_held(account_id)

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            with self._state_lock:
                for event in self._cancel_events.values():
                    event.set()
        self._executor.shutdown(wait=wait)

    # -- internals --------------------------------------------------------

    def _check_startable(self, account_id: str) -> Account:
        account = self._store.require_account(account_id)
        if account.sync_state == AccountSyncState.AUTH_EXPIRED:
            raise AuthExpiredError(f"Account {account_id} must be reconnected before syncing")
        return account

    def _auth_expired(self, account_id: str) -> bool:
        account = self._store.get_account(account_id)
        return account is not None and account.sync_state == AccountSyncState.AUTH_EXPIRED

    def _client_for(self, account_id: str) -> GmailClient:
        try:
            return self._client_factory(account_id)
        except AuthExpiredError as e:
            self._store.set_account_state(
                account_id, AccountSyncState.AUTH_EXPIRED, last_error=str(e)
            )
            raise

    def _launch(self, job: SyncJob, client: GmailClient) -> None:
        event = threading.Event()
        with self._state_lock:
            self._cancel_events[job.account_id] = event
            self._overrides.pop(job.account_id, None)
            self._futures[job.account_id] = self._executor.submit(self._run, job, client, event)

    def _run(self, job: SyncJob, client: GmailClient, event: threading.Event) -> None:
        """Worker body: drive pages until terminal, then release the account."""
        try:
            self._drive(job, client, event)
        except Exception as e:
            logger.exception("Sync worker for %s crashed", job.account_id)
            if job.status.is_active:
                self._finish(job, JobStatus.FAILED, error=e)
        finally:
            with self._state_lock:
                self._cancel_events.pop(job.account_id, None)
                self._overrides.pop(job.account_id, None)
            self._locks.release(job.account_id)

    def _drive(self, job: SyncJob, client: GmailClient, event: threading.Event) -> None:
        persisted = self._store.get_job(job.job_id)
        if persisted is not None and persisted.cancel_requested:
            event.set()

        job.status = JobStatus.RUNNING
        job.updated_at = utc_now()
        self._progress.begin(job)
        with self._store.transaction():
            expired = self._auth_expired(job.account_id)
            if not expired:
                self._store.update_job(job)
                self._store.set_account_state(job.account_id, AccountSyncState.RUNNING)
                self._progress.publish(job)
        if expired:
            logger.warning("Authentication expired before sync %s could run", job.job_id)
            self._finish(job, JobStatus.AUTH_EXPIRED, error=AuthExpiredError("Authentication expired"))
            return

        while True:
            if event.is_set():
                self._finish_cancelled(job)
                return
            try:
                result = self._pipeline.run_page(client, job, event.is_set)
            except AuthExpiredError as e:
                logger.error("Authentication expired during sync for %s", job.account_id)
                self._finish(job, JobStatus.AUTH_EXPIRED, error=e)
                return
            except InvalidCursorError as e:
                logger.error("Page cursor for %s rejected, a new full sync is needed", job.account_id)
                job.cursor = None
                self._finish(job, JobStatus.FAILED, error=e)
                return
            except GmailMirrorError as e:
                logger.error("Sync for %s failed at %d/%d: %s", job.account_id, job.processed, job.total, e)
                self._finish(job, JobStatus.FAILED, error=e)
                return

            if result.is_last:
                self._finish(job, JobStatus.COMPLETED)
                return
            if result.cancel_requested:
                self._finish_cancelled(job)
                return

    def _finish_cancelled(self, job: SyncJob) -> None:
        with self._state_lock:
            override = self._overrides.get(job.account_id)
        job.cancel_requested = True
        self._finish(job, override or JobStatus.CANCELLED)

    def _finish(
        self,
        job: SyncJob,
        status: JobStatus,
        error: Exception | str | None = None,
    ) -> None:
        """Move a job to a terminal status and persist account, job and snapshot together."""
        now = utc_now()
        job.status = status
        job.updated_at = now
        job.completed_at = now
        if error is not None:
            job.last_error = str(error)
            if job.error_code is None:
                job.error_code = getattr(error, "code", "error")

        account_state = AccountSyncState(status.value)
        account_error = job.last_error
        with self._store.transaction():
            # A reported expiry stays until report_auth_restored
            if self._auth_expired(job.account_id):
                account_state = AccountSyncState.AUTH_EXPIRED
                account_error = account_error or "Authentication expired"
            if status == JobStatus.COMPLETED and job.kind == SyncKind.FULL:
                job.total = job.processed
                if job.run_started_at is not None:
                    self._store.sweep_stale(job.account_id, job.run_started_at)
                self._store.record_full_sync(job.account_id, now, job.delta_cursor_at_start)
            self._store.update_job(job)
            self._store.set_account_state(job.account_id, account_state, last_error=account_error)
            if job.kind == SyncKind.FULL:
                self._progress.publish(job)

        logger.info(
            "%s sync %s for %s finished: %s (%d/%d)",
            job.kind, job.job_id, job.account_id, status, job.processed, job.total,
        )
