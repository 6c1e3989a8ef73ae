"""Stock routes - sale deductions, availability checks, compensation and movements.

Flows:
- Deduction: POST a completed sale; conflicts and storage faults are queued
  for automatic retry and reported back with the retry job id
- Availability: the same sufficiency check without touching stock
- Compensation: restore what a voided sale deducted
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from app.api.deps import Recorder
from app.core.rate_limit import limiter
from app.db.session import DbSession
from app.schemas.stock import (
    AvailabilityRequest,
    AvailabilityResponse,
    CompensationRequest,
    DeductionRequestBody,
    DeductionResponse,
    InventoryMovementResponse,
)
from app.services.stock_deduction_service import (
    DeductionLine,
    DeductionRequest,
    StockDeductionService,
)
from app.services.stock_sync_errors import (
    InsufficientStockError,
    InvalidLineError,
    MappingIncompleteError,
    ResolutionError,
)

logger = logging.getLogger(__name__)

router = APIRouter()

UNPROCESSABLE_CODES = {
    MappingIncompleteError.code,
    ResolutionError.code,
    InvalidLineError.code,
}


@router.post("/deductions", response_model=DeductionResponse)
@limiter.limit("120/minute")
def deduct_stock(
    request: Request,
    body: DeductionRequestBody,
    db: DbSession,
    recorder: Recorder,
):
    """Deduct the ingredients of a completed sale."""
    sale = DeductionRequest(
        sale_id=body.sale_id,
        store_id=body.store_id,
        lines=[DeductionLine(product_id=l.product_id, quantity=l.quantity) for l in body.lines],
        actor_id=body.actor_id,
        idempotency_key=body.idempotency_key,
    )
    result = StockDeductionService(db, recorder=recorder).deduct(sale)
    payload = result.to_dict()

    if result.retryable:
        queue = getattr(request.app.state, "retry_queue", None)
        if queue is not None:
            reason = result.errors[0]["message"] if result.errors else "retryable failure"
            payload["retry_job_id"] = queue.enqueue(sale, reason=reason, db=db)
        else:
            logger.warning(f"Retry queue not running; sale {sale.sale_id} was not queued")

    codes = {e.get("code") for e in result.errors}
    if InsufficientStockError.code in codes:
        raise HTTPException(status_code=409, detail=payload)
    if not result.deducted_items and not result.retryable and codes & UNPROCESSABLE_CODES:
        raise HTTPException(status_code=422, detail=payload)

    return payload


@router.post("/availability", response_model=AvailabilityResponse)
@limiter.limit("120/minute")
def check_availability(request: Request, body: AvailabilityRequest, db: DbSession):
    """Check whether a store can fulfil a sale, without deducting anything."""
    lines = [DeductionLine(product_id=l.product_id, quantity=l.quantity) for l in body.lines]
    return StockDeductionService(db).check_availability(body.store_id, lines)


@router.post("/deductions/{sale_id}/compensate", response_model=DeductionResponse)
@limiter.limit("30/minute")
def compensate_sale(
    request: Request,
    sale_id: str,
    db: DbSession,
    recorder: Recorder,
    body: Optional[CompensationRequest] = None,
):
    """Restore the stock deducted for a voided sale."""
    actor_id = body.actor_id if body else None
    result = StockDeductionService(db, recorder=recorder).compensate(sale_id, actor_id=actor_id)
    if not result.deducted_items and not result.errors:
        raise HTTPException(status_code=404, detail=f"No deducted stock to restore for sale {sale_id}")
    return result.to_dict()


@router.get("/movements", response_model=List[InventoryMovementResponse])
@limiter.limit("60/minute")
def list_movements(
    request: Request,
    db: DbSession,
    sale_id: Optional[str] = Query(None),
    inventory_item_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    """List stock movements for a sale or an inventory item."""
    if sale_id is None and inventory_item_id is None:
        raise HTTPException(status_code=400, detail="Provide sale_id or inventory_item_id")
    return StockDeductionService(db).list_movements(
        sale_id=sale_id, inventory_item_id=inventory_item_id, limit=limit
    )
