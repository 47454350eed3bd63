"""
Job tracker — polled, named jobs wrapping orchestrator runs.

State machine:
  pending → checking_cache → syncing → downloading_photos → preparing → completed
                                                               any step → failed

At most one non-terminal job exists per subject; a second request returns it.
Terminal jobs expire after the retention window and then read as not found.

Progress ticks (one per page and one per attachment) are kept in memory and
overlaid on the persisted row by get(); only stage changes are written.
A job whose worker thread is gone without a terminal state is failed the next
time its subject is requested, so single-flight never wedges a subject.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from surveysync.config.settings import settings
from surveysync.models.survey import SyncJob, JobStatus, TERMINAL_STATUSES, as_utc, utcnow
from surveysync.storage.database import SessionLocal
from surveysync.sync.orchestrator import SyncOrchestrator, SyncProgress, SyncStage, require_subject

logger = logging.getLogger(__name__)

_STAGE_STATUS = {
    SyncStage.checking_cache: JobStatus.checking_cache,
    SyncStage.syncing: JobStatus.syncing,
    SyncStage.downloading_photos: JobStatus.downloading_photos,
}


class JobNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class JobView:
    id: str
    subject: str
    status: JobStatus
    message: Optional[str]
    fetched: int
    total: int
    attachments_downloaded: int
    attachments_total: int
    from_cache: bool
    error: Optional[str]
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime]
    expires_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: SyncJob) -> "JobView":
        return cls(
            id=row.id,
            subject=row.subject,
            status=row.status,
            message=row.message,
            fetched=row.fetched,
            total=row.total,
            attachments_downloaded=row.attachments_downloaded,
            attachments_total=row.attachments_total,
            from_cache=row.from_cache,
            error=row.error,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            finished_at=as_utc(row.finished_at),
            expires_at=as_utc(row.expires_at),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subject": self.subject,
            "status": self.status.value,
            "message": self.message,
            "fetched": self.fetched,
            "total": self.total,
            "attachments_downloaded": self.attachments_downloaded,
            "attachments_total": self.attachments_total,
            "from_cache": self.from_cache,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class JobTracker:
    """Runs syncs on background threads and persists their status for pollers."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        session_factory=None,
        retention_minutes: Optional[float] = None,
        prepare: Optional[Callable[[str], int]] = None,
    ):
        self._orchestrator = orchestrator
        self._session_factory = session_factory or SessionLocal
        self._retention = timedelta(
            minutes=settings.job_retention_minutes if retention_minutes is None else retention_minutes
        )
        self._prepare = prepare
        self._subject_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._threads: dict[str, threading.Thread] = {}
        self._live: dict[str, dict] = {}
        self._live_lock = threading.Lock()
        self._cleanup_thread: Optional[threading.Thread] = None
        self._cleanup_stop = threading.Event()

    # ── Public interface ─────────────────────────────────────────────

    def start(self, subject: str, force: bool = False) -> tuple[JobView, bool]:
        """Start a sync job, or return the subject's in-flight job. Returns (job, created)."""
        subject = require_subject(subject)
        self.purge_expired()

        with self._subject_lock(subject):
            db = self._session_factory()
            try:
                existing = (
                    db.query(SyncJob)
                    .filter(SyncJob.subject == subject, SyncJob.status.notin_(TERMINAL_STATUSES))
                    .order_by(SyncJob.created_at.desc())
                    .first()
                )
                if existing is not None and not self._worker_alive(existing.id):
                    logger.warning("Job %s for %s lost its worker — marking failed", existing.id, subject)
                    now = utcnow()
                    existing.status = JobStatus.failed
                    existing.error = "Worker exited before the job finished"
                    existing.updated_at = now
                    existing.finished_at = now
                    existing.expires_at = now + self._retention
                    db.commit()
                    existing = None
                if existing is not None:
                    logger.info("Sync for %s already in flight — reusing job %s", subject, existing.id)
                    return JobView.from_row(existing), False

                now = utcnow()
                job = SyncJob(
                    subject=subject,
                    force=force,
                    status=JobStatus.pending,
                    message="Queued",
                    created_at=now,
                    updated_at=now,
                )
                db.add(job)
                db.commit()
                view = JobView.from_row(job)
            finally:
                db.close()

            thread = threading.Thread(
                target=self._run, args=(view.id, subject, force),
                daemon=True, name=f"sync-{view.id[:8]}",
            )
            self._threads[view.id] = thread
            thread.start()

        logger.info("Started sync job %s for %s (force=%s)", view.id, subject, force)
        return view, True

    def get(self, job_id: str) -> JobView:
        db = self._session_factory()
        try:
            row = db.get(SyncJob, job_id)
            if row is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if row.expires_at is not None and as_utc(row.expires_at) <= utcnow():
                raise JobNotFoundError(f"Job expired: {job_id}")
            view = JobView.from_row(row)
        finally:
            db.close()

        if not view.is_terminal:
            with self._live_lock:
                live = self._live.get(job_id)
            if live:
                view = replace(view, **live)
        return view

    def wait(self, job_id: str, timeout: float = 60.0, interval: float = 0.05) -> JobView:
        """Poll until the job reaches a terminal state or timeout elapses."""
        deadline = time.monotonic() + timeout
        while True:
            job = self.get(job_id)
            if job.is_terminal or time.monotonic() >= deadline:
                return job
            time.sleep(interval)

    def purge_expired(self) -> int:
        db = self._session_factory()
        try:
            deleted = (
                db.query(SyncJob)
                .filter(SyncJob.expires_at.isnot(None), SyncJob.expires_at <= utcnow())
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        if deleted:
            logger.info("Cleaned up %d expired jobs", deleted)
        return deleted

    def recover_interrupted(self) -> int:
        """Fail jobs left non-terminal by a previous process."""
        now = utcnow()
        db = self._session_factory()
        try:
            rows = db.query(SyncJob).filter(SyncJob.status.notin_(TERMINAL_STATUSES)).all()
            for row in rows:
                row.status = JobStatus.failed
                row.error = "Interrupted by server restart"
                row.updated_at = now
                row.finished_at = now
                row.expires_at = now + self._retention
            db.commit()
        finally:
            db.close()
        if rows:
            logger.warning("Marked %d interrupted jobs as failed", len(rows))
        return len(rows)

    # ── Cleanup loop ────────────────────────────────────────────────

    def start_cleanup(self, interval_seconds: float = 3600.0) -> None:
        if self._cleanup_thread and self._cleanup_thread.is_alive():
            return
        self._cleanup_stop.clear()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_loop, args=(interval_seconds,),
            daemon=True, name="job-cleanup",
        )
        self._cleanup_thread.start()
        logger.info("Job cleanup started (interval: %.0fs)", interval_seconds)

    def stop_cleanup(self) -> None:
        self._cleanup_stop.set()
        if self._cleanup_thread:
            self._cleanup_thread.join(timeout=5.0)
            self._cleanup_thread = None
            logger.info("Job cleanup stopped")

    def _cleanup_loop(self, interval: float) -> None:
        while not self._cleanup_stop.wait(interval):
            try:
                self.purge_expired()
            except Exception:
                logger.exception("Job cleanup error")

    # ── Worker ──────────────────────────────────────────────────────

    def _worker_alive(self, job_id: str) -> bool:
        thread = self._threads.get(job_id)
        return thread is not None and thread.is_alive()

    def _subject_lock(self, subject: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._subject_locks.get(subject)
            if lock is None:
                lock = self._subject_locks[subject] = threading.Lock()
            return lock

    def _run(self, job_id: str, subject: str, force: bool) -> None:
        try:
            self._update(job_id, status=JobStatus.checking_cache, message="Checking local cache")
            result = self._orchestrator.sync(
                subject, force=force,
                on_progress=lambda progress: self._on_progress(job_id, progress),
            )
            self._update(
                job_id,
                status=JobStatus.preparing,
                message="Preparing data",
                from_cache=result.from_cache,
                fetched=result.fetched,
                total=result.total,
                attachments_downloaded=result.attachments_downloaded,
                attachments_total=result.attachments_total,
            )
            if self._prepare:
                self._prepare(subject)
            message = "Loaded from local cache" if result.from_cache else "Sync completed"
            if result.attachments_failed:
                message += f" ({result.attachments_failed} attachments failed)"
            self._finish(job_id, JobStatus.completed, message=message)
        except Exception as e:
            logger.exception("Sync job %s for %s failed", job_id, subject)
            self._finish(job_id, JobStatus.failed, message="Sync failed", error=str(e) or e.__class__.__name__)
        finally:
            self._threads.pop(job_id, None)

    def _on_progress(self, job_id: str, progress: SyncProgress) -> None:
        live = {
            "status": _STAGE_STATUS.get(progress.stage, JobStatus.syncing),
            "fetched": progress.fetched,
            "total": progress.total,
            "attachments_downloaded": progress.attachments_downloaded,
            "attachments_total": progress.attachments_total,
            "updated_at": utcnow(),
        }
        with self._live_lock:
            self._live[job_id] = live

    def _update(self, job_id: str, **fields) -> None:
        db = self._session_factory()
        try:
            row = db.get(SyncJob, job_id)
            if row is None:
                return
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            db.commit()
        finally:
            db.close()
        # Persisted state supersedes any earlier progress tick
        with self._live_lock:
            self._live.pop(job_id, None)

    def _finish(self, job_id: str, status: JobStatus, **fields) -> None:
        now = utcnow()
        self._update(job_id, status=status, finished_at=now, expires_at=now + self._retention, **fields)
