"""Inventory sync audit log.

Append-only record of every deduction attempt (success, partial, failure,
retries and compensations). The retry queue reads unresolved rows back on
startup, and operators use the health summary to spot stores that keep
failing.

A failed audit write never fails the deduction it describes: the error is
logged and counted, and the caller carries on.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.sync import SyncAuditEntry, SyncStatus, UNRESOLVED_SYNC_STATUSES

logger = logging.getLogger("audit")


class SyncAuditLog:
    """Writer and reader for ``inventory_sync_audit``."""

    def __init__(self, db: Session):
        self.db = db
        self.failed_writes = 0

    def record_sync_outcome(
        self,
        sale_id: str,
        status: SyncStatus | str,
        details: Optional[Dict[str, Any]] = None,
        items_processed: int = 0,
        duration_ms: int = 0,
        store_id: Optional[int] = None,
    ) -> Optional[SyncAuditEntry]:
        """Append one audit row and commit it. Returns None if the write failed."""
        status_value = status.value if isinstance(status, SyncStatus) else str(status)
        try:
            with self.db.begin_nested():
                entry = SyncAuditEntry(
                    sale_id=sale_id,
                    store_id=store_id,
                    status=status_value,
                    details=details or {},
                    items_processed=items_processed,
                    duration_ms=duration_ms,
                    created_at=datetime.now(timezone.utc),
                )
                self.db.add(entry)
            self.db.commit()
        except Exception:
            self.failed_writes += 1
            logger.exception(f"Failed to write sync audit entry for sale {sale_id} ({status_value})")
            self.db.rollback()
            return None

        logger.info(
            f"Sync outcome for sale {sale_id}: {status_value} "
            f"({items_processed} items, {duration_ms}ms)"
        )
        return entry

    def unresolved_since(self, cutoff: datetime, limit: int = 50) -> List[SyncAuditEntry]:
        """Failed or partial outcomes recorded at or after *cutoff*, newest first."""
        return (
            self.db.query(SyncAuditEntry)
            .filter(
                SyncAuditEntry.status.in_(UNRESOLVED_SYNC_STATUSES),
                SyncAuditEntry.created_at >= cutoff,
            )
            .order_by(SyncAuditEntry.created_at.desc(), SyncAuditEntry.id.desc())
            .limit(limit)
            .all()
        )

    def history(self, sale_id: str) -> List[SyncAuditEntry]:
        return (
            self.db.query(SyncAuditEntry)
            .filter(SyncAuditEntry.sale_id == sale_id)
            .order_by(SyncAuditEntry.created_at, SyncAuditEntry.id)
            .all()
        )

    def recent(
        self,
        store_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncAuditEntry]:
        query = self.db.query(SyncAuditEntry)
        if store_id is not None:
            query = query.filter(SyncAuditEntry.store_id == store_id)
        if status:
            query = query.filter(SyncAuditEntry.status == status)
        return (
            query.order_by(SyncAuditEntry.created_at.desc(), SyncAuditEntry.id.desc())
            .limit(limit)
            .all()
        )

    def sync_health(self, hours: int = 24, store_id: Optional[int] = None) -> Dict[str, Any]:
        """Counts by status and success rate over the last *hours*."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        query = self.db.query(
            SyncAuditEntry.status, func.count(SyncAuditEntry.id)
        ).filter(SyncAuditEntry.created_at >= cutoff)
        if store_id is not None:
            query = query.filter(SyncAuditEntry.store_id == store_id)

        counts = {status: count for status, count in query.group_by(SyncAuditEntry.status).all()}
        total = sum(counts.values())
        succeeded = counts.get(SyncStatus.SUCCESS.value, 0) + counts.get(
            SyncStatus.RETRY_SUCCESS.value, 0
        )
        unresolved = sum(counts.get(s, 0) for s in UNRESOLVED_SYNC_STATUSES)

        return {
            "window_hours": hours,
            "total": total,
            "by_status": counts,
            "success_rate": round(succeeded / total, 4) if total else 1.0,
            "unresolved": unresolved,
            "audit_write_failures": self.failed_writes,
        }
