"""Tests for the inventory sync audit log."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from app.models.sync import SyncAuditEntry, SyncStatus
from app.services.sync_audit_service import SyncAuditLog


class TestRecording:
    def test_record_and_history(self, db_session):
        audit = SyncAuditLog(db_session)
        first = audit.record_sync_outcome("S-1", SyncStatus.FAILED, details={"errors": ["x"]}, store_id=1)
        audit.record_sync_outcome("S-1", SyncStatus.RETRY_QUEUED, store_id=1)
        audit.record_sync_outcome("S-1", "retry_success", items_processed=3, duration_ms=12, store_id=1)
        audit.record_sync_outcome("S-2", SyncStatus.SUCCESS, store_id=1)

        assert first.id is not None
        history = audit.history("S-1")
        assert [e.status for e in history] == ["failed", "retry_queued", "retry_success"]
        assert history[0].details == {"errors": ["x"]}
        assert history[2].items_processed == 3

    def test_write_failure_is_not_raised(self, db_session):
        audit = SyncAuditLog(db_session)
        with patch.object(
            db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("database is locked"))
        ):
            assert audit.record_sync_outcome("S-3", SyncStatus.SUCCESS) is None

        assert audit.failed_writes == 1
        assert audit.history("S-3") == []
        assert audit.record_sync_outcome("S-3", SyncStatus.SUCCESS) is not None
        assert audit.sync_health()["audit_write_failures"] == 1


class TestQueries:
    def test_unresolved_since(self, db_session):
        audit = SyncAuditLog(db_session)
        db_session.add(SyncAuditEntry(
            sale_id="S-old",
            status=SyncStatus.FAILED.value,
            details={},
            created_at=datetime.now(timezone.utc) - timedelta(hours=48),
        ))
        db_session.commit()
        audit.record_sync_outcome("S-10", SyncStatus.FAILED)
        audit.record_sync_outcome("S-11", SyncStatus.SUCCESS)
        audit.record_sync_outcome("S-12", SyncStatus.PARTIAL)
        audit.record_sync_outcome("S-13", SyncStatus.RETRY_FAILED)

        cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
        unresolved = audit.unresolved_since(cutoff)

        assert [e.sale_id for e in unresolved] == ["S-12", "S-10"]

    def test_recent_filters(self, db_session):
        audit = SyncAuditLog(db_session)
        audit.record_sync_outcome("S-20", SyncStatus.SUCCESS, store_id=1)
        audit.record_sync_outcome("S-21", SyncStatus.FAILED, store_id=1)
        audit.record_sync_outcome("S-22", SyncStatus.FAILED, store_id=2)

        assert [e.sale_id for e in audit.recent(store_id=1)] == ["S-21", "S-20"]
        assert [e.sale_id for e in audit.recent(status="failed")] == ["S-22", "S-21"]
        assert len(audit.recent(limit=1)) == 1


class TestSyncHealth:
    def test_counts_and_success_rate(self, db_session):
        audit = SyncAuditLog(db_session)
        for n in range(3):
            audit.record_sync_outcome(f"S-3{n}", SyncStatus.SUCCESS, store_id=1)
        audit.record_sync_outcome("S-40", SyncStatus.FAILED, store_id=1)
        audit.record_sync_outcome("S-40", SyncStatus.RETRY_SUCCESS, store_id=1)
        audit.record_sync_outcome("S-50", SyncStatus.PARTIAL, store_id=2)

        store_one = audit.sync_health(store_id=1)
        assert store_one["total"] == 5
        assert store_one["by_status"] == {"success": 3, "failed": 1, "retry_success": 1}
        assert store_one["success_rate"] == 0.8
        assert store_one["unresolved"] == 1

        everything = audit.sync_health(hours=1)
        assert everything["total"] == 6
        assert everything["unresolved"] == 2
        assert everything["window_hours"] == 1

    def test_empty_window(self, db_session):
        health = SyncAuditLog(db_session).sync_health()
        assert health["total"] == 0
        assert health["success_rate"] == 1.0
