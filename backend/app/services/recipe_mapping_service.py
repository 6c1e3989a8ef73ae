"""Recipe Mapping Service - build, persist and load ingredient mappings.

A mapping ties every ingredient requirement of a recipe to one inventory row
of a store. It is built the first time a recipe is sold in a store (resolver
plus validator) and reused afterwards. The rows of one (recipe, store) are
written in a single savepoint, so a mapping set is either complete or absent.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from app.models.product import Product
from app.models.recipe import IngredientRequirement, Recipe, RecipeIngredientMapping
from app.models.stock import InventoryItem
from app.services.ingredient_matching_service import IngredientMatchingService
from app.services.mapping_validation_service import MappingValidationService, ValidationResult
from app.services.stock_ledger_service import StockLedger
from app.services.stock_sync_errors import (
    MappingIncompleteError,
    ResolutionError,
    StockSystemError,
)

logger = logging.getLogger(__name__)


@dataclass
class ProposedMapping:
    """An unsaved requirement -> inventory item pairing."""
    requirement_id: int
    inventory_item_id: int
    quantity_per_unit: Decimal
    unit: str
    match_score: Optional[float] = None


class RecipeMappingService:
    """Catalog lookups and the lifecycle of persisted ingredient mappings."""

    def __init__(
        self,
        db: Session,
        matcher: Optional[IngredientMatchingService] = None,
        validator: Optional[MappingValidationService] = None,
    ):
        self.db = db
        self.matcher = matcher or IngredientMatchingService(db)
        self.validator = validator or MappingValidationService()
        self.ledger = StockLedger(db)

    # ==================== Catalog ====================

    def get_recipe_for_product(self, product_id: int) -> Optional[int]:
        product = self.db.query(Product).filter(Product.id == product_id).first()
        return product.recipe_id if product else None

    def get_ingredient_requirements(self, recipe_id: int) -> List[IngredientRequirement]:
        return (
            self.db.query(IngredientRequirement)
            .filter(IngredientRequirement.recipe_id == recipe_id)
            .order_by(IngredientRequirement.id)
            .all()
        )

    def get_products(self, product_ids: Iterable[int]) -> Dict[int, Product]:
        """Bulk-load products by id."""
        ids = set(product_ids)
        if not ids:
            return {}
        products = self.db.query(Product).filter(Product.id.in_(ids)).all()
        return {p.id: p for p in products}

    # ==================== Mappings ====================

    def load_mappings(
        self, store_id: int, recipe_ids: Iterable[int]
    ) -> Dict[int, List[RecipeIngredientMapping]]:
        """Bulk-load complete mapping sets for *recipe_ids* in one store.

        A set pointing at an inactive inventory row is left out, as if the
        recipe had never been mapped.
        """
        ids = set(recipe_ids)
        if not ids:
            return {}

        rows = (
            self.db.query(RecipeIngredientMapping)
            .options(joinedload(RecipeIngredientMapping.inventory_item))
            .filter(
                RecipeIngredientMapping.store_id == store_id,
                RecipeIngredientMapping.recipe_id.in_(ids),
            )
            .order_by(RecipeIngredientMapping.id)
            .all()
        )

        by_recipe: Dict[int, List[RecipeIngredientMapping]] = {}
        for row in rows:
            by_recipe.setdefault(row.recipe_id, []).append(row)

        return {
            recipe_id: mapping
            for recipe_id, mapping in by_recipe.items()
            if all(m.inventory_item.active for m in mapping)
        }

    def build_mapping(
        self, recipe_id: int, store_id: int, force: bool = False
    ) -> List[RecipeIngredientMapping]:
        """Resolve and persist the mapping of *recipe_id* for *store_id*.

        An existing complete mapping is returned untouched unless *force* is
        set, in which case it is replaced. Raises ResolutionError when any
        requirement fails to resolve or the validator reports errors; nothing
        is written in that case.
        """
        recipe = self.db.query(Recipe).filter(Recipe.id == recipe_id).first()
        if recipe is None:
            raise LookupError(f"Recipe {recipe_id} not found")

        if not force:
            existing = self.load_mappings(store_id, [recipe_id]).get(recipe_id)
            if existing:
                return existing

        requirements = self.get_ingredient_requirements(recipe_id)
        candidates = self.ledger.list_active_inventory(store_id)

        resolved = self.matcher.resolve_recipe(recipe.name, requirements, candidates)
        proposals = [
            ProposedMapping(
                requirement_id=r.requirement.id,
                inventory_item_id=r.match.inventory_item.id,
                quantity_per_unit=Decimal(r.requirement.quantity),
                unit=r.requirement.unit,
                match_score=r.match.score,
            )
            for r in resolved
        ]

        product = recipe.products[0] if recipe.products else None
        validation = self.validator.validate(product, proposals, requirements, candidates)
        if not validation.valid:
            raise ResolutionError(
                recipe.name,
                [{"ingredient": recipe.name, "reason": error} for error in validation.errors],
            )
        for warning in validation.warnings:
            logger.warning(f"Mapping for recipe '{recipe.name}' (store {store_id}): {warning}")

        try:
            with self.db.begin_nested():
                self._delete_rows(recipe_id, store_id)
                rows = [
                    RecipeIngredientMapping(
                        recipe_id=recipe_id,
                        store_id=store_id,
                        requirement_id=p.requirement_id,
                        inventory_item_id=p.inventory_item_id,
                        quantity_per_unit=p.quantity_per_unit,
                        unit=p.unit,
                        match_score=p.match_score,
                    )
                    for p in proposals
                ]
                self.db.add_all(rows)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StockSystemError(
                f"Failed to persist mapping for recipe {recipe_id}: {exc}"
            ) from exc

        logger.info(
            f"Persisted {len(rows)} ingredient mappings for recipe '{recipe.name}' "
            f"in store {store_id}"
        )
        return rows

    def ensure_mapping(self, product: Product, store_id: int) -> List[RecipeIngredientMapping]:
        """Return the product's mapping, building it on first use.

        Raises MappingIncompleteError when the product has no recipe or the
        mapping cannot be built.
        """
        if product.recipe_id is None:
            raise MappingIncompleteError(product.id, product.name, "product has no recipe")

        try:
            return self.build_mapping(product.recipe_id, store_id)
        except ResolutionError as exc:
            raise MappingIncompleteError(product.id, product.name, str(exc)) from exc

    def invalidate(self, recipe_id: int, store_id: int) -> int:
        """Drop a recipe's mapping in one store; the next sale rebuilds it."""
        deleted = self._delete_rows(recipe_id, store_id)
        self.db.commit()
        logger.info(f"Invalidated {deleted} mappings for recipe {recipe_id} in store {store_id}")
        return deleted

    def _delete_rows(self, recipe_id: int, store_id: int) -> int:
        return (
            self.db.query(RecipeIngredientMapping)
            .filter(
                RecipeIngredientMapping.recipe_id == recipe_id,
                RecipeIngredientMapping.store_id == store_id,
            )
            .delete(synchronize_session="fetch")
        )

    def validate_mapping(
        self, product_id: int, store_id: int, mapping: Sequence
    ) -> ValidationResult:
        """Validate proposed mapping rows for a product against a store's inventory."""
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if product is None:
            raise LookupError(f"Product {product_id} not found")
        if product.recipe_id is None:
            raise MappingIncompleteError(product.id, product.name, "product has no recipe")

        requirements = self.get_ingredient_requirements(product.recipe_id)
        candidates = (
            self.db.query(InventoryItem)
            .filter(InventoryItem.store_id == store_id)
            .all()
        )
        return self.validator.validate(product, mapping, requirements, candidates)
