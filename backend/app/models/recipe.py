"""Recipe (Bill of Materials) models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Numeric, String, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin
from app.models.validators import positive


class Recipe(Base, TimestampMixin):
    """A recipe listing the raw ingredients one sold unit consumes."""

    __tablename__ = "recipes"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    requirements: Mapped[list["IngredientRequirement"]] = relationship(
        "IngredientRequirement",
        back_populates="recipe",
        cascade="all, delete-orphan",
        order_by="IngredientRequirement.id",
    )
    products: Mapped[list["Product"]] = relationship("Product", back_populates="recipe")


class IngredientRequirement(Base):
    """One named ingredient of a recipe, as entered by the catalog operator.

    The name is free text and is resolved to a store's inventory row by the
    ingredient matcher; rows are immutable once a sale has referenced them.
    """

    __tablename__ = "ingredient_requirements"

    id: Mapped[int] = mapped_column(primary_key=True)
    recipe_id: Mapped[int] = mapped_column(
        ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ingredient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="pieces", nullable=False)

    # Relationships
    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="requirements")

    @validates("quantity")
    def _validate_quantity(self, key, value):
        return positive(key, value)


class RecipeIngredientMapping(Base):
    """Persisted pairing of a requirement to a store's inventory row.

    Rows for a (recipe, store) are written together or not at all.
    """

    __tablename__ = "recipe_ingredient_mappings"
    __table_args__ = (
        UniqueConstraint("store_id", "requirement_id", name="uq_mapping_store_requirement"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    recipe_id: Mapped[int] = mapped_column(
        ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    requirement_id: Mapped[int] = mapped_column(
        ForeignKey("ingredient_requirements.id", ondelete="CASCADE"), nullable=False
    )
    inventory_item_id: Mapped[int] = mapped_column(
        ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity_per_unit: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    match_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # Relationships
    requirement: Mapped["IngredientRequirement"] = relationship("IngredientRequirement")
    inventory_item: Mapped["InventoryItem"] = relationship("InventoryItem")

    @validates("quantity_per_unit")
    def _validate_quantity_per_unit(self, key, value):
        return positive(key, value)


# Forward references
from app.models.product import Product
from app.models.stock import InventoryItem
