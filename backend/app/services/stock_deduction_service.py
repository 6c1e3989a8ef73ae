"""Stock Deduction Service - deducts raw-material stock for completed sales.

Flow for one sale:
1. Idempotency check: a completed key returns the stored result, a partially
   applied key resumes with only the quantities still owed
2. Batch resolve: products and ingredient mappings are loaded in bulk; a
   product sold for the first time in a store gets its mapping built
3. Aggregate the required quantity per inventory item across all lines
4. Validate sufficiency for every item; any shortfall fails the whole sale
   before anything is written
5. Apply one conditional decrement per item (version must be unchanged)
6. Queue a movement per applied change, record the idempotency key
7. Append the outcome to the sync audit log

Sufficiency validation only avoids pointless writes. The conditional update in
step 5 is what keeps concurrent sales from overselling a row.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.stock import InventoryMovement, MovementReason
from app.models.sync import DeductionIdempotency, IdempotencyStatus, SyncStatus
from app.services.movement_log_service import MovementEntry, MovementRecorder, write_movements
from app.services.recipe_mapping_service import RecipeMappingService
from app.services.stock_ledger_service import QUANTITY_STEP, StockLedger, StockSnapshot
from app.services.stock_sync_errors import (
    ConcurrencyConflictError,
    InsufficientStockError,
    InvalidLineError,
    MappingIncompleteError,
    StockSyncError,
    StockSystemError,
    shortage_entry,
)
from app.services.sync_audit_service import SyncAuditLog

logger = logging.getLogger(__name__)

COMPENSATION_ATTEMPTS = 3


@dataclass
class DeductionLine:
    """One sold product and how many units of it."""
    product_id: int
    quantity: Decimal

    def __post_init__(self):
        self.quantity = Decimal(str(self.quantity))


@dataclass
class DeductionRequest:
    """A completed sale whose ingredients must be deducted from one store."""
    sale_id: str
    store_id: int
    lines: List[DeductionLine]
    actor_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    @property
    def key(self) -> str:
        return self.idempotency_key or f"sale:{self.store_id}:{self.sale_id}"

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe form, stored in audit details and retry jobs for replay."""
        return {
            "sale_id": self.sale_id,
            "store_id": self.store_id,
            "lines": [
                {"product_id": line.product_id, "quantity": str(line.quantity)}
                for line in self.lines
            ],
            "actor_id": self.actor_id,
            "idempotency_key": self.key,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DeductionRequest":
        return cls(
            sale_id=str(payload["sale_id"]),
            store_id=int(payload["store_id"]),
            lines=[
                DeductionLine(product_id=int(line["product_id"]), quantity=Decimal(str(line["quantity"])))
                for line in payload.get("lines", [])
            ],
            actor_id=payload.get("actor_id"),
            idempotency_key=payload.get("idempotency_key"),
        )


@dataclass
class DeductionResult:
    """Outcome of one deduct call."""
    sale_id: str
    success: bool = True
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    deducted_items: List[Dict[str, Any]] = field(default_factory=list)
    failed_items: List[Dict[str, Any]] = field(default_factory=list)
    retryable: bool = False
    duplicate: bool = False

    def add_error(self, error: StockSyncError, **context) -> None:
        entry = error.to_dict()
        entry.update(context)
        self.errors.append(entry)
        self.success = False
        if error.retryable:
            self.retryable = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeductionResult":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class _ItemNeed:
    inventory_item_id: int
    quantity: Decimal
    products: List[str] = field(default_factory=list)


class StockDeductionService:
    """Coordinates ingredient lookup, sufficiency checks and conditional decrements."""

    def __init__(
        self,
        db: Session,
        recorder: Optional[MovementRecorder] = None,
        mapping_service: Optional[RecipeMappingService] = None,
        audit: Optional[SyncAuditLog] = None,
        auto_build_mappings: Optional[bool] = None,
    ):
        self.db = db
        self.recorder = recorder
        self.ledger = StockLedger(db)
        self.mappings = mapping_service or RecipeMappingService(db)
        self.audit = audit or SyncAuditLog(db)
        self.auto_build_mappings = (
            settings.auto_build_mappings if auto_build_mappings is None else auto_build_mappings
        )
        self.movement_write_failures = 0

    # ===== CORE: SALE STOCK DEDUCTION =====

    def deduct(self, request: DeductionRequest, is_retry: bool = False) -> DeductionResult:
        """Deduct the ingredients of every line in *request* exactly once."""
        started = time.perf_counter()
        result = DeductionResult(sale_id=request.sale_id)

        record = self._get_idempotency_record(request.key)
        if record is not None and record.status == IdempotencyStatus.COMPLETED.value:
            original = DeductionResult.from_dict(record.result or {"sale_id": request.sale_id})
            original.duplicate = True
            original.warnings = list(original.warnings) + [
                f"Sale {request.sale_id} already processed"
            ]
            logger.info(f"Duplicate deduction for key {request.key} ignored")
            return original

        already_applied: Dict[int, Decimal] = {}
        if record is not None:
            already_applied = {int(k): Decimal(v) for k, v in (record.applied or {}).items()}
            result.warnings.append(
                f"Resuming partially applied sale {request.sale_id} "
                f"({len(already_applied)} items already deducted)"
            )

        needs = self._collect_needs(request.store_id, request.lines, result)

        remaining: Dict[int, _ItemNeed] = {}
        for item_id, need in needs.items():
            owed = need.quantity - already_applied.get(item_id, Decimal("0"))
            if owed > 0:
                remaining[item_id] = _ItemNeed(item_id, owed, need.products)

        newly_applied: Dict[int, Decimal] = {}
        entries: List[MovementEntry] = []

        if remaining:
            try:
                snapshots = self.ledger.read_snapshots(remaining)
            except StockSystemError as exc:
                result.add_error(exc)
                snapshots = None

            if snapshots is not None:
                shortages = self._find_shortages(remaining, snapshots)
                if shortages:
                    result.add_error(InsufficientStockError(shortages))
                else:
                    newly_applied, entries = self._apply(request, remaining, snapshots, result)
        elif not result.errors and not needs:
            result.warnings.append("Nothing to deduct")

        total_applied = dict(already_applied)
        for item_id, qty in newly_applied.items():
            total_applied[item_id] = total_applied.get(item_id, Decimal("0")) + qty

        if total_applied and not self._save_idempotency_record(request, record, total_applied, result):
            # The rollback took this attempt's stock writes with it
            self._discard_applied(result, newly_applied)
            total_applied = dict(already_applied)
            newly_applied = {}

        if newly_applied:
            self._record_movements(entries)

        if result.success:
            status = SyncStatus.RETRY_SUCCESS if is_retry else SyncStatus.SUCCESS
        elif total_applied:
            status = SyncStatus.RETRY_PARTIAL if is_retry else SyncStatus.PARTIAL
        else:
            status = SyncStatus.RETRY_FAILED if is_retry else SyncStatus.FAILED

        duration_ms = int((time.perf_counter() - started) * 1000)
        self.audit.record_sync_outcome(
            sale_id=request.sale_id,
            status=status,
            details={
                "request": request.to_payload(),
                "errors": result.errors,
                "deducted": len(result.deducted_items),
                "failed": len(result.failed_items),
                "retryable": result.retryable,
            },
            items_processed=len(result.deducted_items),
            duration_ms=duration_ms,
            store_id=request.store_id,
        )

        log = logger.info if result.success else logger.warning
        log(
            f"Deduction for sale {request.sale_id} ({status.value}): "
            f"{len(result.deducted_items)} deducted, {len(result.failed_items)} failed "
            f"in {duration_ms}ms"
        )
        return result

    def check_availability(self, store_id: int, lines: List[DeductionLine]) -> Dict[str, Any]:
        """Sufficiency check for a prospective sale, without touching stock."""
        result = DeductionResult(sale_id="-")
        needs = self._collect_needs(store_id, lines, result)
        snapshots = self.ledger.read_snapshots(needs) if needs else {}
        shortages = self._find_shortages(needs, snapshots)

        return {
            "available": not shortages and not result.errors,
            "shortages": shortages,
            "errors": result.errors,
            "requirements": [
                {
                    "inventory_item_id": item_id,
                    "name": snapshots[item_id].name if item_id in snapshots else None,
                    "needed": str(need.quantity),
                    "available": str(snapshots[item_id].quantity) if item_id in snapshots else "0",
                    "unit": snapshots[item_id].unit if item_id in snapshots else None,
                }
                for item_id, need in sorted(needs.items())
            ],
        }

    def compensate(self, sale_id: str, actor_id: Optional[str] = None) -> DeductionResult:
        """Restore the stock deducted for a voided sale.

        Quantities already restored by an earlier compensation are skipped,
        so calling this twice restores each item once.
        """
        started = time.perf_counter()
        result = DeductionResult(sale_id=sale_id)

        if self.recorder is not None:
            self.recorder.drain()

        outstanding = self._outstanding_for_compensation(sale_id)
        if not outstanding:
            result.warnings.append(f"Nothing to compensate for sale {sale_id}")
            return result

        store_id = None
        for item_id, (item_store_id, quantity) in sorted(outstanding.items()):
            store_id = item_store_id
            try:
                snapshot = self._restore_item(item_id, quantity)
            except StockSyncError as exc:
                result.add_error(exc, inventory_item_id=item_id)
                result.failed_items.append({"inventory_item_id": item_id, "quantity": str(quantity)})
                continue

            if snapshot is None:
                result.warnings.append(f"Inventory item {item_id} no longer exists")
                continue

            self.db.add(InventoryMovement(
                inventory_item_id=item_id,
                store_id=item_store_id,
                sale_id=sale_id,
                reason=MovementReason.SALE_COMPENSATION.value,
                quantity_before=snapshot.quantity,
                quantity_after=snapshot.quantity + quantity,
                qty_delta=quantity,
                notes=f"Compensation for voided sale {sale_id}",
                created_by=actor_id,
            ))
            result.deducted_items.append({
                "inventory_item_id": item_id,
                "name": snapshot.name,
                "quantity": str(quantity),
                "unit": snapshot.unit,
                "quantity_before": str(snapshot.quantity),
                "quantity_after": str(snapshot.quantity + quantity),
            })

        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StockSystemError(f"Failed to commit compensation for sale {sale_id}: {exc}") from exc

        self.audit.record_sync_outcome(
            sale_id=sale_id,
            status=SyncStatus.COMPENSATED,
            details={
                "restored": result.deducted_items,
                "errors": result.errors,
                "actor_id": actor_id,
            },
            items_processed=len(result.deducted_items),
            duration_ms=int((time.perf_counter() - started) * 1000),
            store_id=store_id,
        )
        logger.info(
            f"Compensated sale {sale_id}: {len(result.deducted_items)} items restored, "
            f"{len(result.failed_items)} failed"
        )
        return result

    def list_movements(
        self,
        sale_id: Optional[str] = None,
        inventory_item_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[InventoryMovement]:
        query = self.db.query(InventoryMovement)
        if sale_id is not None:
            query = query.filter(InventoryMovement.sale_id == sale_id)
        if inventory_item_id is not None:
            query = query.filter(InventoryMovement.inventory_item_id == inventory_item_id)
        return query.order_by(InventoryMovement.ts.desc(), InventoryMovement.id.desc()).limit(limit).all()

    # ===== HELPERS =====

    def _collect_needs(
        self, store_id: int, lines: Iterable[DeductionLine], result: DeductionResult
    ) -> Dict[int, _ItemNeed]:
        """Aggregate required quantity per inventory item across all lines.

        Lines that cannot be mapped are reported on *result* and skipped.
        """
        lines = list(lines)
        products = self.mappings.get_products(line.product_id for line in lines)
        recipe_ids = {p.recipe_id for p in products.values() if p.recipe_id is not None}
        mappings = self.mappings.load_mappings(store_id, recipe_ids)

        needs: Dict[int, _ItemNeed] = {}
        for line in lines:
            if line.quantity <= 0:
                result.add_error(
                    InvalidLineError(line.product_id, f"invalid quantity {line.quantity}"),
                    product_id=line.product_id,
                )
                continue

            product = products.get(line.product_id)
            if product is None:
                result.add_error(
                    InvalidLineError(line.product_id, "product not found"),
                    product_id=line.product_id,
                )
                continue

            mapping = mappings.get(product.recipe_id) if product.recipe_id is not None else None
            if mapping is None:
                try:
                    mapping = self._build_missing_mapping(product, store_id)
                except StockSyncError as exc:
                    result.add_error(exc, product_id=product.id)
                    continue
                mappings[product.recipe_id] = mapping

            for row in mapping:
                amount = Decimal(row.quantity_per_unit) * line.quantity
                need = needs.setdefault(row.inventory_item_id, _ItemNeed(row.inventory_item_id, Decimal("0")))
                need.quantity += amount
                if product.name not in need.products:
                    need.products.append(product.name)

        return needs

    def _build_missing_mapping(self, product, store_id: int):
        if product.recipe_id is None:
            raise MappingIncompleteError(product.id, product.name, "product has no recipe")
        if not self.auto_build_mappings:
            raise MappingIncompleteError(product.id, product.name, f"not mapped for store {store_id}")
        return self.mappings.ensure_mapping(product, store_id)

    def _find_shortages(
        self, needs: Dict[int, _ItemNeed], snapshots: Dict[int, StockSnapshot]
    ) -> List[Dict[str, Any]]:
        shortages = []
        for item_id, need in sorted(needs.items()):
            snapshot = snapshots.get(item_id)
            if snapshot is None or not snapshot.active:
                shortages.append(shortage_entry(item_id, f"item {item_id}", need.quantity, Decimal("0"), ""))
            elif snapshot.quantity < need.quantity:
                shortages.append(shortage_entry(
                    item_id, snapshot.name, need.quantity, snapshot.quantity, snapshot.unit
                ))
        return shortages

    def _apply(
        self,
        request: DeductionRequest,
        remaining: Dict[int, _ItemNeed],
        snapshots: Dict[int, StockSnapshot],
        result: DeductionResult,
    ) -> Tuple[Dict[int, Decimal], List[MovementEntry]]:
        applied: Dict[int, Decimal] = {}
        entries: List[MovementEntry] = []

        for item_id in sorted(remaining):
            need = remaining[item_id]
            snapshot = snapshots[item_id]
            try:
                ok = self.ledger.conditional_decrement(snapshot, need.quantity)
            except StockSystemError as exc:
                result.add_error(exc, inventory_item_id=item_id)
                result.failed_items.append(self._item_dict(snapshot, need.quantity))
                continue

            if not ok:
                conflict = ConcurrencyConflictError(item_id, snapshot.name, snapshot.version)
                result.add_error(conflict, inventory_item_id=item_id)
                result.failed_items.append(self._item_dict(snapshot, need.quantity))
                continue

            applied[item_id] = need.quantity
            result.deducted_items.append(self._item_dict(snapshot, need.quantity, applied=True))
            entries.append(MovementEntry(
                inventory_item_id=item_id,
                store_id=snapshot.store_id,
                sale_id=request.sale_id,
                reason=MovementReason.SALE.value,
                quantity_before=snapshot.quantity,
                quantity_after=snapshot.quantity - need.quantity,
                qty_delta=-need.quantity,
                notes=f"Sale: {', '.join(need.products)}",
                created_by=request.actor_id,
            ))

        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Commit failed for sale {request.sale_id}: {exc}")
            for item in result.deducted_items:
                result.failed_items.append(item)
                result.add_error(
                    StockSystemError(f"Commit failed: {exc}", item_id=item["inventory_item_id"]),
                    inventory_item_id=item["inventory_item_id"],
                )
            result.deducted_items = []
            return {}, []

        return applied, entries

    @staticmethod
    def _item_dict(snapshot: StockSnapshot, quantity: Decimal, applied: bool = False) -> Dict[str, Any]:
        data = {
            "inventory_item_id": snapshot.id,
            "name": snapshot.name,
            "quantity": str(quantity),
            "unit": snapshot.unit,
        }
        if applied:
            data["quantity_before"] = str(snapshot.quantity)
            data["quantity_after"] = str(snapshot.quantity - quantity)
        return data

    def _record_movements(self, entries: List[MovementEntry]) -> None:
        if self.recorder is not None:
            self.recorder.submit(entries)
            return
        try:
            write_movements(self.db, entries)
        except SQLAlchemyError:
            self.db.rollback()
            self.movement_write_failures += len(entries)
            logger.exception(f"Failed to write {len(entries)} stock movements")

    def _get_idempotency_record(self, key: str) -> Optional[DeductionIdempotency]:
        return (
            self.db.query(DeductionIdempotency)
            .filter(DeductionIdempotency.idempotency_key == key)
            .populate_existing()
            .first()
        )

    def _save_idempotency_record(
        self,
        request: DeductionRequest,
        record: Optional[DeductionIdempotency],
        applied: Dict[int, Decimal],
        result: DeductionResult,
    ) -> bool:
        """Commit the applied quantities together with the stock writes."""
        status = IdempotencyStatus.COMPLETED if result.success else IdempotencyStatus.PARTIAL
        try:
            if record is None:
                record = DeductionIdempotency(
                    idempotency_key=request.key,
                    sale_id=request.sale_id,
                )
                self.db.add(record)
            record.status = status.value
            record.applied = {str(k): str(v) for k, v in applied.items()}
            record.result = result.to_dict()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception(f"Failed to save idempotency record for key {request.key}")
            result.add_error(StockSystemError(f"Failed to commit deduction for sale {request.sale_id}: {exc}"))
            return False
        return True

    @staticmethod
    def _discard_applied(result: DeductionResult, rolled_back: Dict[int, Decimal]) -> None:
        result.failed_items.extend(
            item for item in result.deducted_items if item["inventory_item_id"] in rolled_back
        )
        result.deducted_items = [
            item for item in result.deducted_items if item["inventory_item_id"] not in rolled_back
        ]

    def _restore_item(self, item_id: int, quantity: Decimal) -> Optional[StockSnapshot]:
        """Increment *item_id*, re-reading on version conflicts.

        Returns the snapshot the successful write was based on, or None when
        the row no longer exists.
        """
        snapshot = None
        for _ in range(COMPENSATION_ATTEMPTS):
            snapshot = self.ledger.read_snapshots([item_id]).get(item_id)
            if snapshot is None:
                return None
            if self.ledger.conditional_increment(snapshot, quantity):
                return snapshot
        raise ConcurrencyConflictError(item_id, snapshot.name, snapshot.version)

    def _outstanding_for_compensation(self, sale_id: str) -> Dict[int, Tuple[int, Decimal]]:
        """Per item: (store id, deducted minus already restored) for *sale_id*."""
        rows = (
            self.db.query(
                InventoryMovement.inventory_item_id,
                InventoryMovement.store_id,
                InventoryMovement.reason,
                func.sum(InventoryMovement.qty_delta),
            )
            .filter(
                InventoryMovement.sale_id == sale_id,
                InventoryMovement.reason.in_([
                    MovementReason.SALE.value,
                    MovementReason.SALE_COMPENSATION.value,
                ]),
            )
            .group_by(
                InventoryMovement.inventory_item_id,
                InventoryMovement.store_id,
                InventoryMovement.reason,
            )
            .all()
        )

        totals: Dict[int, Tuple[int, Decimal]] = {}
        for item_id, store_id, reason, delta in rows:
            _, current = totals.get(item_id, (store_id, Decimal("0")))
            # Sale deltas are negative, compensation deltas positive
            totals[item_id] = (store_id, current - Decimal(str(delta)).quantize(QUANTITY_STEP))

        return {item_id: value for item_id, value in totals.items() if value[1] > 0}
