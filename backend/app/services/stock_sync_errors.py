"""Errors raised while resolving ingredients and deducting stock for sales.

Each error carries a stable ``code`` (used in API payloads and audit details)
and a ``retryable`` flag that decides whether the retry queue may replay the
failed request.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional


class StockSyncError(Exception):
    """Base class for stock sync failures."""

    code = "stock_sync_error"
    retryable = False

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), "retryable": self.retryable}


class ResolutionError(StockSyncError):
    """No candidate above threshold, or several candidates too close to call.

    ``problems`` holds one entry per requirement that failed to resolve.
    """

    code = "resolution_failed"

    def __init__(self, recipe_name: str, problems: List[Dict[str, Any]]):
        self.recipe_name = recipe_name
        self.problems = problems
        summary = "; ".join(f"{p['ingredient']}: {p['reason']}" for p in problems)
        super().__init__(f"Cannot resolve ingredients for '{recipe_name}': {summary}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["problems"] = self.problems
        return data


class InvalidLineError(StockSyncError):
    """A sale line that can never be deducted (unknown product, bad quantity)."""

    code = "invalid_line"

    def __init__(self, product_id: int, detail: str):
        self.product_id = product_id
        super().__init__(f"Line for product {product_id}: {detail}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["product_id"] = self.product_id
        return data


class MappingIncompleteError(StockSyncError):
    """A sold product has no persisted (or buildable) ingredient mapping."""

    code = "mapping_incomplete"

    def __init__(self, product_id: int, product_name: Optional[str] = None, detail: str = ""):
        self.product_id = product_id
        self.product_name = product_name
        label = product_name or f"product {product_id}"
        message = f"No ingredient mapping for '{label}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["product_id"] = self.product_id
        return data


class InsufficientStockError(StockSyncError):
    """Aggregate requirement exceeds available stock for one or more items."""

    code = "insufficient_stock"

    def __init__(self, shortages: List[Dict[str, Any]]):
        self.shortages = shortages
        summary = ", ".join(
            f"{s['name']}: need {s['needed']}, have {s['available']}" for s in shortages
        )
        super().__init__(f"Insufficient stock - {summary}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["shortages"] = self.shortages
        return data


class ConcurrencyConflictError(StockSyncError):
    """The row's version changed between read and conditional write."""

    code = "concurrent_update"
    retryable = True

    def __init__(self, item_id: int, item_name: str, expected_version: int):
        self.item_id = item_id
        self.item_name = item_name
        self.expected_version = expected_version
        super().__init__(f"{item_name}: concurrent update detected")


class StockSystemError(StockSyncError):
    """Transport or storage failure while reading or writing stock."""

    code = "system_error"
    retryable = True

    def __init__(self, message: str, item_id: Optional[int] = None):
        self.item_id = item_id
        super().__init__(message)


def shortage_entry(item_id: int, name: str, needed: Decimal, available: Decimal, unit: str) -> Dict[str, Any]:
    """Build one ``InsufficientStockError`` shortage row."""
    return {
        "inventory_item_id": item_id,
        "name": name,
        "needed": str(needed),
        "available": str(available),
        "shortage": str(needed - available),
        "unit": unit,
    }
