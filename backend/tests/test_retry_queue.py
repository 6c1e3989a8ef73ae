"""Tests for the durable deduction retry queue."""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from app.models.sync import DeductionRetryJob, RetryStatus
from app.services.deduction_retry_service import (
    DeductionRetryQueue,
    RetryConfig,
    compute_backoff_delay,
)
from app.services.stock_deduction_service import (
    DeductionLine,
    DeductionRequest,
    StockDeductionService,
)
from app.services.stock_ledger_service import StockLedger
from app.services.stock_sync_errors import StockSystemError
from app.services.sync_audit_service import SyncAuditLog


def _request(setup, sale_id, product, qty=1):
    return DeductionRequest(
        sale_id=sale_id,
        store_id=setup["store"].id,
        lines=[DeductionLine(product.id, qty)],
    )


@pytest.fixture
def retry_queue(session_factory):
    return DeductionRetryQueue(
        session_factory,
        config=RetryConfig(
            max_attempts=3,
            base_delay_seconds=2.0,
            max_delay_seconds=60.0,
            max_concurrent=1,
            poll_interval_seconds=0.01,
        ),
    )


class TestBackoff:
    def test_exponential_growth(self):
        assert compute_backoff_delay(1, 2.0, 300.0) == 2.0
        assert compute_backoff_delay(2, 2.0, 300.0) == 4.0
        assert compute_backoff_delay(3, 2.0, 300.0) == 8.0

    def test_capped(self):
        assert compute_backoff_delay(10, 2.0, 300.0) == 300.0

    def test_no_attempts_no_delay(self):
        assert compute_backoff_delay(0, 2.0, 300.0) == 0.0


class TestEnqueue:
    def test_enqueue_creates_pending_job(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(
            _request(stock_setup, "S-100", stock_setup["topping"]), reason="concurrent_update", db=db
        )

        job = db.get(DeductionRetryJob, job_id)
        assert job.status == RetryStatus.PENDING.value
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.request["sale_id"] == "S-100"
        assert SyncAuditLog(db).history("S-100")[-1].status == "retry_queued"

    def test_sale_is_queued_once(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        request = _request(stock_setup, "S-101", stock_setup["topping"])

        first = retry_queue.enqueue(request, db=db)
        second = retry_queue.enqueue(request, db=db)

        assert first == second
        assert db.query(DeductionRetryJob).count() == 1

    def test_enqueue_from_raw_items(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue_retry(
            "S-102",
            [{"product_id": stock_setup["croffle"].id, "quantity": "2"}],
            store_id=stock_setup["store"].id,
            reason="manual",
            db=db,
        )
        request = DeductionRequest.from_payload(db.get(DeductionRetryJob, job_id).request)
        assert request.lines[0].quantity == Decimal("2")
        assert request.key == f"sale:{stock_setup['store'].id}:S-102"


class TestProcessJob:
    def test_successful_retry_completes_job(self, stock_setup, retry_queue, stock_level):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-110", stock_setup["topping"]), db=db)

        result = retry_queue.process_job(job_id, db=db)

        assert result.success is True
        assert result.status == RetryStatus.COMPLETED.value
        assert result.attempts == 1
        assert stock_level(stock_setup["items"]["Whipped Cream"]) == Decimal("49")
        statuses = [e.status for e in SyncAuditLog(db).history("S-110")]
        assert statuses == ["retry_queued", "retry_success"]

    def test_non_retryable_failure_fails_job(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-111", stock_setup["blended"], 31), db=db)

        result = retry_queue.process_job(job_id, db=db)

        assert result.success is False
        assert result.status == RetryStatus.FAILED.value
        assert "Insufficient stock" in db.get(DeductionRetryJob, job_id).last_error

    def test_retryable_failure_until_exhausted(self, stock_setup, retry_queue, stock_level):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-112", stock_setup["topping"]), db=db)

        with patch.object(
            StockLedger, "conditional_decrement", side_effect=StockSystemError("storage unavailable")
        ):
            statuses = [retry_queue.process_job(job_id, db=db).status for _ in range(3)]

        assert statuses == ["pending", "pending", "failed"]
        job = db.get(DeductionRetryJob, job_id)
        assert job.attempts == 3
        assert "storage unavailable" in job.last_error
        assert stock_level(stock_setup["items"]["Whipped Cream"]) == Decimal("50")

    def test_unexpected_exception_counts_as_retryable(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-113", stock_setup["topping"]), db=db)

        with patch.object(StockDeductionService, "deduct", side_effect=RuntimeError("boom")):
            result = retry_queue.process_job(job_id, db=db)

        assert result.status == RetryStatus.PENDING.value
        assert db.get(DeductionRetryJob, job_id).last_error == "boom"

    def test_missing_job(self, db_session, retry_queue):
        assert retry_queue.process_job("does-not-exist", db=db_session).status == "missing"

    def test_finished_job_is_not_rerun(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-114", stock_setup["topping"]), db=db)
        retry_queue.process_job(job_id, db=db)

        again = retry_queue.process_job(job_id, db=db)
        assert again.success is True
        assert again.attempts == 1
        assert again.message == "Job is completed"


class TestDueJobs:
    def test_backoff_delays_next_attempt(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        now = datetime.now(timezone.utc)
        waiting_id = retry_queue.enqueue(_request(stock_setup, "S-120", stock_setup["topping"]), db=db)
        fresh_id = retry_queue.enqueue(_request(stock_setup, "S-121", stock_setup["croffle"]), db=db)

        waiting = db.get(DeductionRetryJob, waiting_id)
        waiting.attempts = 1
        waiting.last_attempt_at = now
        db.commit()

        assert [j.id for j in retry_queue.due_jobs(db, now=now, limit=10)] == [fresh_id]
        due_later = [j.id for j in retry_queue.due_jobs(db, now=now + timedelta(seconds=3), limit=10)]
        assert set(due_later) == {waiting_id, fresh_id}

    def test_limit_defaults_to_concurrency(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        for n in range(3):
            retry_queue.enqueue(_request(stock_setup, f"S-13{n}", stock_setup["topping"]), db=db)
        assert len(retry_queue.due_jobs(db)) == 1


class TestManualRetry:
    def test_no_job_for_sale(self, db_session, retry_queue):
        assert retry_queue.manual_retry("unknown", db=db_session).status == "missing"

    def test_failed_job_is_revived(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        oreo = stock_setup["items"]["Oreo Crushed"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-140", stock_setup["blended"], 31), db=db)
        assert retry_queue.process_job(job_id, db=db).status == "failed"

        ledger = StockLedger(db)
        snapshot = ledger.read_snapshots([oreo.id])[oreo.id]
        ledger.conditional_update(oreo.id, Decimal("40"), snapshot.version)
        db.commit()

        result = retry_queue.manual_retry("S-140", db=db)

        assert result.success is True
        assert result.status == RetryStatus.COMPLETED.value
        assert result.attempts == 1

    def test_completed_job(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-141", stock_setup["topping"]), db=db)
        retry_queue.process_job(job_id, db=db)

        result = retry_queue.manual_retry("S-141", db=db)
        assert result.success is True
        assert result.message == "Already completed"


class TestReloadFromAudit:
    def test_unresolved_failures_become_jobs(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        service = StockDeductionService(db)
        with patch.object(StockLedger, "conditional_decrement", side_effect=StockSystemError("timeout")):
            failed = service.deduct(_request(stock_setup, "S-150", stock_setup["topping"]))
        assert failed.retryable is True

        assert retry_queue.reload_from_audit(db=db) == 1
        job = db.query(DeductionRetryJob).filter(DeductionRetryJob.sale_id == "S-150").one()
        assert job.status == RetryStatus.PENDING.value

        # A second reload finds the job already there
        assert retry_queue.reload_from_audit(db=db) == 0

    def test_sale_completed_since_is_skipped(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        service = StockDeductionService(db)
        request = _request(stock_setup, "S-151", stock_setup["topping"])
        with patch.object(StockLedger, "conditional_decrement", side_effect=StockSystemError("timeout")):
            service.deduct(request)
        assert service.deduct(request).success is True

        assert retry_queue.reload_from_audit(db=db) == 0

    def test_entry_without_request_payload_is_skipped(self, db_session, retry_queue):
        SyncAuditLog(db_session).record_sync_outcome("S-152", "failed", details={"errors": []})
        assert retry_queue.reload_from_audit(db=db_session) == 0

    def test_non_retryable_failure_is_not_requeued(self, stock_setup, retry_queue, stock_level):
        db = stock_setup["db"]
        shortage = StockDeductionService(db).deduct(_request(stock_setup, "S-153", stock_setup["topping"], 51))
        assert shortage.errors[0]["code"] == "insufficient_stock"

        assert retry_queue.reload_from_audit(db=db) == 0
        assert db.query(DeductionRetryJob).count() == 0
        assert stock_level(stock_setup["items"]["Whipped Cream"]) == Decimal("50")

    def test_processing_job_recovered_after_restart(self, stock_setup, retry_queue, session_factory, stock_level):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-154", stock_setup["topping"]), db=db)
        job = db.get(DeductionRetryJob, job_id)
        job.status = RetryStatus.PROCESSING.value
        job.attempts = 1
        job.last_attempt_at = datetime.now(timezone.utc) - timedelta(minutes=10)
        db.commit()

        restarted = DeductionRetryQueue(session_factory, config=RetryConfig(max_attempts=3, max_concurrent=1))
        assert restarted.due_jobs(db) == []

        assert restarted.recover_interrupted(db=db) == 1
        assert [j.id for j in restarted.due_jobs(db)] == [job_id]

        result = restarted.process_job(job_id, db=db)
        assert result.status == RetryStatus.COMPLETED.value
        assert result.attempts == 2
        assert stock_level(stock_setup["items"]["Whipped Cream"]) == Decimal("49")

    def test_running_job_is_not_recovered(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-155", stock_setup["topping"]), db=db)
        db.get(DeductionRetryJob, job_id).status = RetryStatus.PROCESSING.value
        db.commit()

        retry_queue._in_flight.add(job_id)
        assert retry_queue.recover_interrupted(db=db) == 0
        assert retry_queue.manual_retry("S-155", db=db).message == "Retry already in progress"

        retry_queue._in_flight.discard(job_id)
        assert retry_queue.manual_retry("S-155", db=db).status == RetryStatus.COMPLETED.value


class TestBackgroundProcessing:
    @pytest.mark.asyncio
    async def test_run_once_processes_due_jobs(self, stock_setup, retry_queue, stock_level):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-160", stock_setup["topping"]), db=db)

        results = await retry_queue.run_once()

        assert [r.job_id for r in results] == [job_id]
        assert results[0].success is True
        assert stock_level(stock_setup["items"]["Whipped Cream"]) == Decimal("49")
        assert await retry_queue.run_once() == []

    @pytest.mark.asyncio
    async def test_start_and_stop(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        job_id = retry_queue.enqueue(_request(stock_setup, "S-161", stock_setup["topping"]), db=db)

        await retry_queue.start()
        assert retry_queue.running is True
        # The worker thread shares the test connection, so only in-memory state is polled
        for _ in range(300):
            if retry_queue.stats["jobs_completed"] and not retry_queue._in_flight:
                break
            await asyncio.sleep(0.01)
        await retry_queue.stop()

        assert retry_queue.running is False
        db.expire_all()
        assert db.get(DeductionRetryJob, job_id).status == RetryStatus.COMPLETED.value


class TestReporting:
    def test_stats_and_listing(self, stock_setup, retry_queue):
        db = stock_setup["db"]
        done_id = retry_queue.enqueue(_request(stock_setup, "S-170", stock_setup["topping"]), db=db)
        retry_queue.enqueue(_request(stock_setup, "S-171", stock_setup["croffle"]), db=db)
        retry_queue.process_job(done_id, db=db)

        stats = retry_queue.get_retry_stats(db=db)
        assert stats["total_jobs"] == 2
        assert stats["pending"] == 1
        assert stats["completed"] == 1
        assert stats["oldest_pending_age_seconds"] >= 0
        assert stats["counters"]["jobs_enqueued"] == 2
        assert stats["counters"]["jobs_completed"] == 1

        pending = retry_queue.list_retry_jobs(status="pending", db=db)
        assert [j.sale_id for j in pending] == ["S-171"]
        assert len(retry_queue.list_retry_jobs(db=db)) == 2
