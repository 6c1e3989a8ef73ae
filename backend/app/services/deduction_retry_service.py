"""
Deduction Retry Queue
Replays stock deductions that failed on version conflicts or storage faults

Jobs are durable rows (``deduction_retry_jobs``) so a restart does not lose
them; on startup, jobs interrupted mid-attempt go back to pending and recent
retryable failed/partial outcomes from the sync audit log are
turned back into jobs. A background loop picks up due jobs, oldest first,
a few at a time, with exponential backoff between attempts.

Job lifecycle: pending -> processing -> completed | pending | failed
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.sync import (
    DeductionIdempotency,
    DeductionRetryJob,
    IdempotencyStatus,
    RetryStatus,
    SyncStatus,
)
from app.services.movement_log_service import MovementRecorder
from app.services.stock_deduction_service import (
    DeductionLine,
    DeductionRequest,
    StockDeductionService,
)
from app.services.sync_audit_service import SyncAuditLog

logger = logging.getLogger(__name__)

UNFINISHED_STATUSES = (RetryStatus.PENDING.value, RetryStatus.PROCESSING.value)


def compute_backoff_delay(attempts: int, base_delay: float, max_delay: float) -> float:
    """Seconds to wait after *attempts* attempts: base * 2^(attempts - 1), capped."""
    if attempts <= 0:
        return 0.0
    return min(max_delay, base_delay * (2 ** (attempts - 1)))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RetryConfig:
    """Retry tuning, defaulting to application settings."""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        base_delay_seconds: Optional[float] = None,
        max_delay_seconds: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
        reload_window_hours: Optional[int] = None,
        reload_limit: Optional[int] = None,
    ):
        self.max_attempts = max_attempts or settings.retry_max_attempts
        self.base_delay_seconds = (
            settings.retry_base_delay_seconds if base_delay_seconds is None else base_delay_seconds
        )
        self.max_delay_seconds = (
            settings.retry_max_delay_seconds if max_delay_seconds is None else max_delay_seconds
        )
        self.max_concurrent = max_concurrent or settings.retry_max_concurrent
        self.poll_interval_seconds = (
            settings.retry_poll_interval_seconds
            if poll_interval_seconds is None else poll_interval_seconds
        )
        self.reload_window_hours = reload_window_hours or settings.retry_reload_window_hours
        self.reload_limit = reload_limit or settings.retry_reload_limit


@dataclass
class RetryResult:
    """Outcome of one retry attempt."""
    job_id: Optional[str]
    sale_id: str
    success: bool
    status: str
    attempts: int = 0
    message: str = ""
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DeductionRetryQueue:
    """
    Durable retry queue for failed stock deductions.
    One instance per process, created in the application lifespan.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        recorder: Optional[MovementRecorder] = None,
        config: Optional[RetryConfig] = None,
    ):
        self.session_factory = session_factory
        self.recorder = recorder
        self.config = config or RetryConfig()
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._in_flight: set = set()
        self.stats = defaultdict(int)

    @contextmanager
    def _session(self, db: Optional[Session] = None) -> Iterator[Session]:
        if db is not None:
            yield db
            return
        own = self.session_factory()
        try:
            yield own
        finally:
            own.close()

    # ==================== ENQUEUE ====================

    def enqueue(
        self, request: DeductionRequest, reason: str = "", db: Optional[Session] = None
    ) -> str:
        """Queue *request* for replay; returns the job id.

        A sale that already has a pending or processing job keeps that job.
        """
        with self._session(db) as session:
            existing = (
                session.query(DeductionRetryJob)
                .filter(
                    DeductionRetryJob.sale_id == request.sale_id,
                    DeductionRetryJob.status.in_(UNFINISHED_STATUSES),
                )
                .first()
            )
            if existing is not None:
                logger.info(f"Sale {request.sale_id} already queued as job {existing.id}")
                return existing.id

            job = DeductionRetryJob(
                id=uuid.uuid4().hex,
                sale_id=request.sale_id,
                store_id=request.store_id,
                request=request.to_payload(),
                attempts=0,
                max_attempts=self.config.max_attempts,
                status=RetryStatus.PENDING.value,
                reason=reason or None,
                created_at=_utcnow(),
            )
            session.add(job)
            session.commit()
            job_id = job.id

            SyncAuditLog(session).record_sync_outcome(
                sale_id=request.sale_id,
                status=SyncStatus.RETRY_QUEUED,
                details={"job_id": job_id, "reason": reason},
                store_id=request.store_id,
            )

        self.stats["jobs_enqueued"] += 1
        logger.info(f"Queued retry job {job_id} for sale {request.sale_id}: {reason}")
        return job_id

    def enqueue_retry(
        self,
        sale_id: str,
        items: List[Dict[str, Any]],
        store_id: int,
        reason: str = "",
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        db: Optional[Session] = None,
    ) -> str:
        """Queue a retry from raw sale lines (``product_id`` and ``quantity``)."""
        request = DeductionRequest(
            sale_id=sale_id,
            store_id=store_id,
            lines=[
                DeductionLine(product_id=int(i["product_id"]), quantity=Decimal(str(i["quantity"])))
                for i in items
            ],
            actor_id=actor_id,
            idempotency_key=idempotency_key,
        )
        return self.enqueue(request, reason, db=db)

    # ==================== PROCESSING ====================

    def due_jobs(self, db: Session, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[DeductionRetryJob]:
        """Pending jobs whose backoff has elapsed, oldest first."""
        now = now or _utcnow()
        limit = limit or self.config.max_concurrent

        pending = (
            db.query(DeductionRetryJob)
            .filter(DeductionRetryJob.status == RetryStatus.PENDING.value)
            .order_by(DeductionRetryJob.created_at, DeductionRetryJob.id)
            .all()
        )

        due = []
        for job in pending:
            if job.id in self._in_flight:
                continue
            if job.attempts and job.last_attempt_at is not None:
                delay = compute_backoff_delay(
                    job.attempts, self.config.base_delay_seconds, self.config.max_delay_seconds
                )
                if _as_utc(job.last_attempt_at) + timedelta(seconds=delay) > now:
                    continue
            due.append(job)
            if len(due) >= limit:
                break
        return due

    def process_job(self, job_id: str, db: Optional[Session] = None) -> RetryResult:
        """Run one attempt of job *job_id* and move it to its next state."""
        with self._session(db) as session:
            job = session.query(DeductionRetryJob).filter(DeductionRetryJob.id == job_id).first()
            if job is None:
                return RetryResult(job_id, "-", False, "missing", message="Retry job not found")
            if job.status != RetryStatus.PENDING.value:
                return RetryResult(
                    job.id, job.sale_id, job.status == RetryStatus.COMPLETED.value, job.status,
                    attempts=job.attempts, message=f"Job is {job.status}",
                )

            job.status = RetryStatus.PROCESSING.value
            job.attempts += 1
            job.last_attempt_at = _utcnow()
            session.commit()
            self.stats["attempts"] += 1

            logger.info(
                f"Retrying sale {job.sale_id} (job {job.id}, attempt {job.attempts}/{job.max_attempts})"
            )

            try:
                request = DeductionRequest.from_payload(job.request)
                service = StockDeductionService(session, recorder=self.recorder)
                outcome = service.deduct(request, is_retry=True)
            except Exception as exc:
                session.rollback()
                logger.exception(f"Retry attempt for sale {job.sale_id} raised")
                return self._finish(session, job, success=False, retryable=True, error=str(exc))

            error = "; ".join(e.get("message", "") for e in outcome.errors) or None
            return self._finish(
                session, job,
                success=outcome.success,
                retryable=outcome.retryable,
                error=error,
                result=outcome.to_dict(),
            )

    def _finish(
        self,
        session: Session,
        job: DeductionRetryJob,
        success: bool,
        retryable: bool,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> RetryResult:
        if success:
            job.status = RetryStatus.COMPLETED.value
            job.last_error = None
            self.stats["jobs_completed"] += 1
            message = "Deduction completed"
        elif not retryable:
            job.status = RetryStatus.FAILED.value
            job.last_error = error
            self.stats["jobs_failed"] += 1
            message = "Failed with a non-retryable error"
        elif job.attempts >= job.max_attempts:
            job.status = RetryStatus.FAILED.value
            job.last_error = error
            self.stats["jobs_failed"] += 1
            message = f"Gave up after {job.attempts} attempts"
        else:
            job.status = RetryStatus.PENDING.value
            job.last_error = error
            delay = compute_backoff_delay(
                job.attempts, self.config.base_delay_seconds, self.config.max_delay_seconds
            )
            message = f"Will retry in {delay:.0f}s"

        session.commit()

        if job.status == RetryStatus.FAILED.value:
            logger.error(f"Retry job {job.id} for sale {job.sale_id} failed: {error}")
        else:
            logger.info(f"Retry job {job.id} for sale {job.sale_id}: {message}")

        return RetryResult(
            job_id=job.id,
            sale_id=job.sale_id,
            success=success,
            status=job.status,
            attempts=job.attempts,
            message=message,
            result=result,
        )

    def manual_retry(self, sale_id: str, db: Optional[Session] = None) -> RetryResult:
        """Attempt a sale's retry job now, ignoring backoff.

        An exhausted (failed) job is revived with a fresh attempt budget.
        """
        with self._session(db) as session:
            job = (
                session.query(DeductionRetryJob)
                .filter(DeductionRetryJob.sale_id == sale_id)
                .order_by(DeductionRetryJob.created_at.desc())
                .first()
            )
            if job is None:
                return RetryResult(None, sale_id, False, "missing", message="No retry job for this sale")
            if job.status == RetryStatus.COMPLETED.value:
                return RetryResult(
                    job.id, sale_id, True, job.status, attempts=job.attempts,
                    message="Already completed",
                )
            if job.id in self._in_flight:
                return RetryResult(
                    job.id, sale_id, False, job.status, attempts=job.attempts,
                    message="Retry already in progress",
                )

            if job.status == RetryStatus.FAILED.value:
                job.attempts = 0
                job.status = RetryStatus.PENDING.value
                session.commit()
            elif job.status == RetryStatus.PROCESSING.value:
                # Nothing here is running it, so the attempt was interrupted
                self._release_interrupted(job)
                session.commit()

            self.stats["manual_retries"] += 1
            logger.info(f"Manual retry requested for sale {sale_id}")
            self._in_flight.add(job.id)
            try:
                return self.process_job(job.id, db=session)
            finally:
                self._in_flight.discard(job.id)

    async def run_once(self) -> List[RetryResult]:
        """Process the jobs that are due now, up to the concurrency cap."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent)

        with self._session() as session:
            job_ids = [job.id for job in self.due_jobs(session)]

        if not job_ids:
            return []

        self._in_flight.update(job_ids)
        try:
            results = await asyncio.gather(
                *(self._process_guarded(job_id) for job_id in job_ids)
            )
        finally:
            self._in_flight.difference_update(job_ids)
        return list(results)

    async def _process_guarded(self, job_id: str) -> RetryResult:
        async with self._semaphore:
            return await asyncio.to_thread(self.process_job, job_id)

    # ==================== LIFECYCLE ====================

    @staticmethod
    def _release_interrupted(job: DeductionRetryJob) -> None:
        job.status = RetryStatus.PENDING.value
        job.last_error = job.last_error or "Attempt interrupted before it finished"
        logger.warning(
            f"Retry job {job.id} for sale {job.sale_id} was left processing "
            f"after attempt {job.attempts}; returned to pending"
        )

    def recover_interrupted(self, db: Optional[Session] = None) -> int:
        """Return jobs stuck in ``processing`` by a stopped process to ``pending``.

        Jobs this instance is running right now are left alone. The
        interrupted attempt still counts, and the idempotency record makes
        the replay deduct only what the attempt did not commit.
        """
        recovered = 0
        with self._session(db) as session:
            stuck = (
                session.query(DeductionRetryJob)
                .filter(DeductionRetryJob.status == RetryStatus.PROCESSING.value)
                .all()
            )
            for job in stuck:
                if job.id in self._in_flight:
                    continue
                self._release_interrupted(job)
                recovered += 1
            if recovered:
                session.commit()

        self.stats["jobs_recovered"] += recovered
        return recovered

    def reload_from_audit(self, db: Optional[Session] = None) -> int:
        """Turn recent retryable failed/partial audit outcomes into retry jobs.

        Newest entry per sale wins; sales that already have a job, or whose
        idempotency record shows they completed since, are skipped.
        """
        cutoff = _utcnow() - timedelta(hours=self.config.reload_window_hours)
        created = 0

        with self._session(db) as session:
            entries = SyncAuditLog(session).unresolved_since(cutoff, self.config.reload_limit)

            seen = set()
            for entry in entries:
                if entry.sale_id in seen:
                    continue
                seen.add(entry.sale_id)

                details = entry.details or {}
                payload = details.get("request")
                if not payload:
                    logger.warning(f"Audit entry {entry.id} for sale {entry.sale_id} has no request payload")
                    continue
                if details.get("retryable") is False:
                    # Shortages and missing mappings are never replayed
                    continue

                has_job = (
                    session.query(DeductionRetryJob.id)
                    .filter(DeductionRetryJob.sale_id == entry.sale_id)
                    .first()
                )
                if has_job:
                    continue

                request = DeductionRequest.from_payload(payload)
                completed = (
                    session.query(DeductionIdempotency.id)
                    .filter(
                        DeductionIdempotency.idempotency_key == request.key,
                        DeductionIdempotency.status == IdempotencyStatus.COMPLETED.value,
                    )
                    .first()
                )
                if completed:
                    continue

                self.enqueue(request, reason=f"Reloaded from audit ({entry.status})", db=session)
                created += 1

        self.stats["jobs_reloaded"] += created
        logger.info(f"Reloaded {created} retry jobs from the sync audit log")
        return created

    async def start(self) -> None:
        """Reload unresolved failures and start the background loop."""
        if self.running:
            return
        self.running = True
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        try:
            await asyncio.to_thread(self.recover_interrupted)
        except Exception:
            logger.exception("Failed to recover interrupted retry jobs")
        try:
            await asyncio.to_thread(self.reload_from_audit)
        except Exception:
            logger.exception("Failed to reload retry jobs from the audit log")
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"Deduction retry queue started (poll {self.config.poll_interval_seconds}s, "
            f"{self.config.max_concurrent} concurrent)"
        )

    async def stop(self) -> None:
        self.running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Deduction retry queue stopped")

    async def _loop(self) -> None:
        while self.running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                self.stats["loop_errors"] += 1
                logger.exception("Retry loop iteration failed")
            await asyncio.sleep(self.config.poll_interval_seconds)

    # ==================== REPORTING ====================

    def get_retry_stats(self, db: Optional[Session] = None) -> Dict[str, Any]:
        with self._session(db) as session:
            jobs = session.query(DeductionRetryJob).all()

        by_status: Dict[str, int] = defaultdict(int)
        for job in jobs:
            by_status[job.status] += 1

        pending = [j for j in jobs if j.status == RetryStatus.PENDING.value]
        oldest = min((_as_utc(j.created_at) for j in pending), default=None)

        return {
            "total_jobs": len(jobs),
            "pending": by_status[RetryStatus.PENDING.value],
            "processing": by_status[RetryStatus.PROCESSING.value],
            "completed": by_status[RetryStatus.COMPLETED.value],
            "failed": by_status[RetryStatus.FAILED.value],
            "oldest_pending_age_seconds": (
                int((_utcnow() - oldest).total_seconds()) if oldest else None
            ),
            "running": self.running,
            "counters": dict(self.stats),
        }

    def list_retry_jobs(
        self, status: Optional[str] = None, limit: int = 100, db: Optional[Session] = None
    ) -> List[DeductionRetryJob]:
        """Jobs newest first, optionally filtered by status."""
        with self._session(db) as session:
            query = session.query(DeductionRetryJob)
            if status:
                query = query.filter(DeductionRetryJob.status == status)
            return (
                query.order_by(DeductionRetryJob.created_at.desc(), DeductionRetryJob.id)
                .limit(limit)
                .all()
            )
