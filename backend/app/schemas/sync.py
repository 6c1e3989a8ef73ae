"""Retry queue and sync audit schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.schemas.stock import SaleLineInput


class RetryEnqueueRequest(BaseModel):
    """Queue a failed sale for automatic replay."""

    sale_id: str = Field(..., min_length=1, max_length=100)
    store_id: int
    items: list[SaleLineInput] = Field(..., min_length=1)
    reason: str = ""
    actor_id: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=255)


class RetryEnqueueResponse(BaseModel):
    job_id: str
    sale_id: str


class RetryResultResponse(BaseModel):
    job_id: Optional[str] = None
    sale_id: str
    success: bool
    status: str
    attempts: int = 0
    message: str = ""
    result: Optional[dict[str, Any]] = None


class RetryJobResponse(BaseModel):
    id: str
    sale_id: str
    store_id: int
    attempts: int
    max_attempts: int
    status: str
    reason: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    last_attempt_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RetryStatsResponse(BaseModel):
    total_jobs: int
    pending: int
    processing: int
    completed: int
    failed: int
    oldest_pending_age_seconds: Optional[int] = None
    running: bool
    counters: dict[str, int] = {}


class SyncAuditEntryResponse(BaseModel):
    id: int
    sale_id: str
    store_id: Optional[int] = None
    status: str
    details: Optional[dict[str, Any]] = None
    items_processed: int
    duration_ms: int
    created_at: datetime

    model_config = {"from_attributes": True}


class SyncHealthResponse(BaseModel):
    window_hours: int
    total: int
    by_status: dict[str, int]
    success_rate: float
    unresolved: int
    audit_write_failures: int = 0
