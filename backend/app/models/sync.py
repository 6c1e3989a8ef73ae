"""
Inventory Sync Models - deduction audit trail, idempotency and retry jobs

Every deduction attempt leaves one append-only audit row. Idempotency records
let a re-submitted sale be recognised, and retry jobs survive restarts so
failed deductions keep being replayed.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class SyncStatus(str, enum.Enum):
    """Outcome recorded for a deduction attempt."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    RETRY_QUEUED = "retry_queued"
    RETRY_SUCCESS = "retry_success"
    RETRY_PARTIAL = "retry_partial"
    RETRY_FAILED = "retry_failed"
    COMPENSATED = "compensated"


# Outcomes that leave stock un-deducted and should be replayed
UNRESOLVED_SYNC_STATUSES = (SyncStatus.FAILED.value, SyncStatus.PARTIAL.value)


class RetryStatus(str, enum.Enum):
    """Retry job lifecycle: pending -> processing -> completed | pending | failed."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class IdempotencyStatus(str, enum.Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"


class SyncAuditEntry(Base):
    """Append-only outcome of one deduction attempt."""
    __tablename__ = "inventory_sync_audit"

    id: Mapped[int] = mapped_column(primary_key=True)
    sale_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    store_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    items_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )


class DeductionIdempotency(Base):
    """Marks an idempotency key as applied.

    ``applied`` maps inventory item id -> quantity already deducted under this
    key, so a partially applied request can resume without double-deducting.
    """
    __tablename__ = "deduction_idempotency"

    id: Mapped[int] = mapped_column(primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    sale_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    applied: Mapped[dict[str, str]] = mapped_column(JSON, default=dict, nullable=False)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class DeductionRetryJob(Base):
    """A deduction request queued for automatic replay."""
    __tablename__ = "deduction_retry_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sale_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False)
    request: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=RetryStatus.PENDING.value, nullable=False, index=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
