"""Stock deduction schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field


class SaleLineInput(BaseModel):
    """One sold product."""

    product_id: int
    quantity: Decimal = Field(..., gt=0)


class DeductionRequestBody(BaseModel):
    """Deduct stock for a completed sale."""

    sale_id: str = Field(..., min_length=1, max_length=100)
    store_id: int
    lines: list[SaleLineInput] = Field(..., min_length=1)
    actor_id: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=255)


class DeductionResponse(BaseModel):
    """Outcome of a deduction, compensation or replay."""

    sale_id: str
    success: bool
    errors: list[dict[str, Any]] = []
    warnings: list[str] = []
    deducted_items: list[dict[str, Any]] = []
    failed_items: list[dict[str, Any]] = []
    retryable: bool = False
    duplicate: bool = False
    retry_job_id: Optional[str] = None


class AvailabilityRequest(BaseModel):
    """Check stock for a prospective sale."""

    store_id: int
    lines: list[SaleLineInput] = Field(..., min_length=1)


class AvailabilityResponse(BaseModel):
    available: bool
    shortages: list[dict[str, Any]] = []
    errors: list[dict[str, Any]] = []
    requirements: list[dict[str, Any]] = []


class CompensationRequest(BaseModel):
    actor_id: Optional[str] = None


class InventoryMovementResponse(BaseModel):
    """Stock movement response schema."""

    id: int
    ts: datetime
    inventory_item_id: int
    store_id: int
    sale_id: Optional[str] = None
    reason: str
    quantity_before: Decimal
    quantity_after: Decimal
    qty_delta: Decimal
    notes: Optional[str] = None
    created_by: Optional[str] = None

    model_config = {"from_attributes": True}
