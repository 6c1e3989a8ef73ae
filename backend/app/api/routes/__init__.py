"""API routes."""

import logging
from fastapi import APIRouter

logger = logging.getLogger(__name__)

from app.api.routes import recipes, stock, sync

api_router = APIRouter()

api_router.include_router(stock.router, prefix="/stock", tags=["stock"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(recipes.router, prefix="/recipes", tags=["recipes", "mappings"])
