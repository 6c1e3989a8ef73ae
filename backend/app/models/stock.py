"""Stock models: InventoryItem (the versioned ledger row) and InventoryMovement."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey, Numeric, String, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin, VersionMixin
from app.models.validators import non_negative


class MovementReason(str, Enum):
    """Reasons for stock movements."""

    SALE = "sale"  # Deducted for a completed sale
    SALE_COMPENSATION = "sale_compensation"  # Restored after a sale was voided


class InventoryItem(Base, TimestampMixin, VersionMixin):
    """Current quantity of one raw material in one store.

    Only conditional writes (see StockLedger) may change ``quantity``; each one
    bumps ``version``.
    """

    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("store_id", "name", name="uq_inventory_store_name"),
        CheckConstraint("quantity >= 0", name="quantity_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String(20), default="pieces", nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    store: Mapped["Store"] = relationship("Store", back_populates="inventory_items")
    movements: Mapped[list["InventoryMovement"]] = relationship(
        "InventoryMovement", back_populates="inventory_item"
    )

    @validates("quantity")
    def _validate_quantity(self, key, value):
        return non_negative(key, value)


class InventoryMovement(Base):
    """Ledger of all stock changes. Rows are immutable once written."""

    __tablename__ = "inventory_movements"

    id: Mapped[int] = mapped_column(primary_key=True)
    ts: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    inventory_item_id: Mapped[int] = mapped_column(
        ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sale_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity_before: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    quantity_after: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    qty_delta: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Relationships
    inventory_item: Mapped["InventoryItem"] = relationship(
        "InventoryItem", back_populates="movements"
    )


# Forward references
from app.models.store import Store
