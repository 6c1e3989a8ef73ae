"""Sync routes - retry queue operations and the inventory sync audit trail."""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from app.api.deps import RetryQueue
from app.core.rate_limit import limiter
from app.db.session import DbSession
from app.schemas.sync import (
    RetryEnqueueRequest,
    RetryEnqueueResponse,
    RetryJobResponse,
    RetryResultResponse,
    RetryStatsResponse,
    SyncAuditEntryResponse,
    SyncHealthResponse,
)
from app.services.sync_audit_service import SyncAuditLog

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/retries", response_model=RetryEnqueueResponse, status_code=201)
@limiter.limit("30/minute")
def enqueue_retry(request: Request, body: RetryEnqueueRequest, db: DbSession, queue: RetryQueue):
    """Queue a failed sale for automatic replay."""
    job_id = queue.enqueue_retry(
        sale_id=body.sale_id,
        items=[item.model_dump() for item in body.items],
        store_id=body.store_id,
        reason=body.reason,
        actor_id=body.actor_id,
        idempotency_key=body.idempotency_key,
        db=db,
    )
    return {"job_id": job_id, "sale_id": body.sale_id}


@router.post("/retries/{sale_id}/manual", response_model=RetryResultResponse)
@limiter.limit("30/minute")
def manual_retry(request: Request, sale_id: str, db: DbSession, queue: RetryQueue):
    """Attempt a sale's retry job immediately."""
    result = queue.manual_retry(sale_id, db=db)
    if result.status == "missing":
        raise HTTPException(status_code=404, detail=result.message)
    return result.to_dict()


@router.get("/retries/stats", response_model=RetryStatsResponse)
@limiter.limit("60/minute")
def retry_stats(request: Request, db: DbSession, queue: RetryQueue):
    return queue.get_retry_stats(db=db)


@router.get("/retries", response_model=List[RetryJobResponse])
@limiter.limit("60/minute")
def list_retry_jobs(
    request: Request,
    db: DbSession,
    queue: RetryQueue,
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    """Retry jobs, newest first."""
    return queue.list_retry_jobs(status=status, limit=limit, db=db)


@router.get("/audit", response_model=List[SyncAuditEntryResponse])
@limiter.limit("60/minute")
def sync_audit(
    request: Request,
    db: DbSession,
    sale_id: Optional[str] = Query(None),
    store_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    """Audit history for one sale (oldest first) or recent outcomes (newest first)."""
    audit = SyncAuditLog(db)
    if sale_id is not None:
        return audit.history(sale_id)
    return audit.recent(store_id=store_id, status=status, limit=limit)


@router.get("/health", response_model=SyncHealthResponse)
@limiter.limit("60/minute")
def sync_health(
    request: Request,
    db: DbSession,
    hours: int = Query(24, ge=1, le=24 * 30),
    store_id: Optional[int] = Query(None),
):
    """Outcome counts and success rate over a recent window."""
    return SyncAuditLog(db).sync_health(hours=hours, store_id=store_id)
