"""Stock Ledger - versioned inventory rows with conditional (compare-and-swap) writes.

Every quantity change goes through one UPDATE statement that only matches
when the row still carries the version the caller read. The database bumps
the version in the same statement, so two writers holding the same version
can never both succeed.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.stock import InventoryItem
from app.services.stock_sync_errors import StockSystemError

logger = logging.getLogger(__name__)

QUANTITY_STEP = Decimal("0.0001")


@dataclass(frozen=True)
class StockSnapshot:
    """Quantity and version of one inventory row as read at one instant."""
    id: int
    store_id: int
    name: str
    unit: str
    quantity: Decimal
    version: int
    active: bool


class StockLedger:
    """Reads and conditional writes against ``inventory_items``."""

    def __init__(self, db: Session):
        self.db = db

    def list_active_inventory(self, store_id: int) -> List[InventoryItem]:
        try:
            return (
                self.db.query(InventoryItem)
                .filter(InventoryItem.store_id == store_id, InventoryItem.active == True)  # noqa: E712
                .order_by(InventoryItem.name)
                .all()
            )
        except SQLAlchemyError as exc:
            raise StockSystemError(f"Failed to load inventory for store {store_id}: {exc}") from exc

    def read_snapshots(self, item_ids: Iterable[int]) -> Dict[int, StockSnapshot]:
        """Read quantity and version for *item_ids* straight from the database.

        Column reads bypass the session identity map, so the result reflects
        writes made through conditional updates by this or any other session.
        """
        ids = sorted(set(item_ids))
        if not ids:
            return {}

        stmt = select(
            InventoryItem.id,
            InventoryItem.store_id,
            InventoryItem.name,
            InventoryItem.unit,
            InventoryItem.quantity,
            InventoryItem.version,
            InventoryItem.active,
        ).where(InventoryItem.id.in_(ids))

        try:
            rows = self.db.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StockSystemError(f"Failed to read stock levels: {exc}") from exc

        return {
            row.id: StockSnapshot(
                id=row.id,
                store_id=row.store_id,
                name=row.name,
                unit=row.unit,
                quantity=Decimal(str(row.quantity)),
                version=row.version,
                active=row.active,
            )
            for row in rows
        }

    def conditional_update(self, item_id: int, new_quantity: Decimal, expected_version: int) -> bool:
        """Set quantity to *new_quantity* if the stored version is *expected_version*."""
        new_quantity = Decimal(new_quantity).quantize(QUANTITY_STEP)
        if new_quantity < 0:
            return False

        stmt = (
            update(InventoryItem)
            .where(InventoryItem.id == item_id, InventoryItem.version == expected_version)
            .values(
                quantity=new_quantity,
                version=InventoryItem.version + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        return self._execute_cas(stmt, item_id)

    def conditional_decrement(self, snapshot: StockSnapshot, amount: Decimal) -> bool:
        """Subtract *amount* from the quantity in *snapshot* if its version still holds.

        The new quantity is computed here in Decimal, never by the database,
        so fractional stock does not drift on backends that store floats.
        """
        new_quantity = (snapshot.quantity - amount).quantize(QUANTITY_STEP)
        if new_quantity < 0:
            logger.info(f"Decrement of {amount} refused for inventory item {snapshot.id}: {snapshot.quantity} on hand")
            return False
        return self.conditional_update(snapshot.id, new_quantity, snapshot.version)

    def conditional_increment(self, snapshot: StockSnapshot, amount: Decimal) -> bool:
        return self.conditional_update(
            snapshot.id, (snapshot.quantity + amount).quantize(QUANTITY_STEP), snapshot.version
        )

    def _execute_cas(self, stmt, item_id: int) -> bool:
        # Each write runs in its own savepoint so one failure leaves the others intact
        try:
            with self.db.begin_nested():
                result = self.db.execute(stmt)
                applied = result.rowcount == 1
        except SQLAlchemyError as exc:
            logger.error(f"Conditional write failed for inventory item {item_id}: {exc}")
            raise StockSystemError(f"Storage error updating item {item_id}: {exc}", item_id=item_id) from exc

        if not applied:
            logger.info(f"Conditional write rejected for inventory item {item_id} (version changed)")
        return applied
