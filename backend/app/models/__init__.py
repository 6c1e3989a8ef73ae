"""SQLAlchemy models."""

from app.models.store import Store
from app.models.product import Product
from app.models.recipe import Recipe, IngredientRequirement, RecipeIngredientMapping
from app.models.stock import InventoryItem, InventoryMovement, MovementReason
from app.models.sync import (
    SyncAuditEntry,
    DeductionIdempotency,
    DeductionRetryJob,
    SyncStatus,
    RetryStatus,
    IdempotencyStatus,
)

__all__ = [
    "Store",
    "Product",
    "Recipe",
    "IngredientRequirement",
    "RecipeIngredientMapping",
    "InventoryItem",
    "InventoryMovement",
    "MovementReason",
    "SyncAuditEntry",
    "DeductionIdempotency",
    "DeductionRetryJob",
    "SyncStatus",
    "RetryStatus",
    "IdempotencyStatus",
]
