"""Recipe mapping routes - validate, (re)build and preview ingredient mappings."""

import logging
from typing import List

from fastapi import APIRouter, HTTPException, Query, Request

from app.core.rate_limit import limiter
from app.db.session import DbSession
from app.schemas.recipe import (
    IngredientMatchResponse,
    MappingResolveRequest,
    MappingValidationRequest,
    MappingValidationResponse,
    RecipeMappingResponse,
)
from app.services.ingredient_matching_service import IngredientMatchingService
from app.services.recipe_mapping_service import ProposedMapping, RecipeMappingService
from app.services.stock_sync_errors import MappingIncompleteError, ResolutionError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/mappings/validate", response_model=MappingValidationResponse)
@limiter.limit("60/minute")
def validate_mapping(request: Request, body: MappingValidationRequest, db: DbSession):
    """Check a proposed mapping before it is saved."""
    proposals = [
        ProposedMapping(
            requirement_id=row.requirement_id,
            inventory_item_id=row.inventory_item_id,
            quantity_per_unit=row.quantity_per_unit,
            unit=row.unit,
        )
        for row in body.mapping
    ]
    try:
        result = RecipeMappingService(db).validate_mapping(body.product_id, body.store_id, proposals)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except MappingIncompleteError as exc:
        raise HTTPException(status_code=422, detail=exc.to_dict())
    return result.to_dict()


@router.post("/{recipe_id}/mappings/resolve", response_model=List[RecipeMappingResponse])
@limiter.limit("30/minute")
def resolve_mapping(request: Request, recipe_id: int, body: MappingResolveRequest, db: DbSession):
    """Build a recipe's mapping for a store, or rebuild it with ``force``."""
    try:
        return RecipeMappingService(db).build_mapping(recipe_id, body.store_id, force=body.force)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ResolutionError as exc:
        raise HTTPException(status_code=422, detail=exc.to_dict())


@router.get("/ingredients/match", response_model=List[IngredientMatchResponse])
@limiter.limit("60/minute")
def match_ingredient(
    request: Request,
    db: DbSession,
    name: str = Query(..., min_length=1),
    store_id: int = Query(...),
    threshold: float = Query(0.6, ge=0.0, le=1.0),
    limit: int = Query(5, ge=1, le=50),
):
    """Preview which inventory items an ingredient name would resolve to."""
    matches = IngredientMatchingService(db).match_ingredient(
        name, store_id, threshold=threshold, limit=limit
    )
    return [m.to_dict() for m in matches]
