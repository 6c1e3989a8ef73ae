"""Ingredient mapping schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class MappingRowInput(BaseModel):
    """A proposed requirement -> inventory item pairing."""

    requirement_id: int
    inventory_item_id: int
    quantity_per_unit: Decimal = Field(..., gt=0)
    unit: str = Field(..., min_length=1, max_length=20)


class MappingValidationRequest(BaseModel):
    product_id: int
    store_id: int
    mapping: list[MappingRowInput]


class MappingValidationResponse(BaseModel):
    valid: bool
    errors: list[str] = []
    warnings: list[str] = []
    score: int


class MappingResolveRequest(BaseModel):
    store_id: int
    force: bool = False


class RecipeMappingResponse(BaseModel):
    id: int
    recipe_id: int
    store_id: int
    requirement_id: int
    inventory_item_id: int
    quantity_per_unit: Decimal
    unit: str
    match_score: Optional[float] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class IngredientMatchResponse(BaseModel):
    inventory_item_id: int
    inventory_item_name: str
    unit: str
    score: float
    confidence: str
    method: str
