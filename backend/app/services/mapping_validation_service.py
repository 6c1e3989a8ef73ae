"""Mapping Validation Service - sanity checks before an ingredient mapping is reused.

Resolution only proves that names look alike. Before a mapping is persisted
it is checked independently for completeness, unit compatibility, plausible
quantities, stock on hand and the ingredients a product family is expected
to consume. Errors block persistence; warnings are reported to the operator.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from app.models.product import Product
from app.models.recipe import IngredientRequirement
from app.models.stock import InventoryItem

logger = logging.getLogger(__name__)


ERROR_PENALTY = 25
WARNING_PENALTY = 5

# Canonical unit -> accepted spellings
UNIT_GROUPS: Dict[str, Tuple[str, ...]] = {
    "pieces": ("pieces", "piece", "pcs", "pc", "each", "ea", "unit", "units"),
    "serving": ("serving", "servings", "portion", "portions"),
    "bottles": ("bottles", "bottle", "btl", "btls"),
    "cups": ("cups", "cup"),
    "grams": ("grams", "gram", "g", "gr", "gm", "gms"),
    "ml": ("ml", "milliliter", "milliliters", "millilitre", "millilitres"),
    "liters": ("liters", "liter", "litres", "litre", "l", "ltr"),
}

# Plausible quantity of one canonical unit consumed per unit sold
QUANTITY_RANGES: Dict[str, Tuple[Decimal, Decimal]] = {
    "pieces": (Decimal("1"), Decimal("10")),
    "serving": (Decimal("0.5"), Decimal("5")),
    "bottles": (Decimal("1"), Decimal("3")),
    "cups": (Decimal("1"), Decimal("2")),
    "grams": (Decimal("5"), Decimal("500")),
    "ml": (Decimal("10"), Decimal("1000")),
}

# Product name keyword -> ingredient keywords expected among mapped items
PRODUCT_ARCHETYPES: Dict[str, Tuple[str, ...]] = {
    "croffle": ("croissant", "wax paper", "chopstick"),
    "blended": ("cup", "lid", "straw"),
    "iced tea": ("cup", "lid", "straw", "tea"),
    "lemonade": ("cup", "lid", "straw"),
}

_UNIT_LOOKUP = {
    spelling: canonical
    for canonical, spellings in UNIT_GROUPS.items()
    for spelling in spellings
}


def normalize_unit(unit: Optional[str]) -> str:
    """Map a unit spelling to its canonical group name (unknown units pass through)."""
    if not unit:
        return ""
    cleaned = unit.strip().lower().rstrip(".")
    return _UNIT_LOOKUP.get(cleaned, cleaned)


def units_compatible(a: Optional[str], b: Optional[str]) -> bool:
    return normalize_unit(a) == normalize_unit(b)


@dataclass
class ValidationResult:
    """Outcome of validating one proposed mapping."""
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    score: int = 100

    def to_dict(self) -> Dict:
        return {
            "valid": self.valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "score": self.score,
        }


class MappingValidationService:
    """Validate proposed requirement -> inventory item mappings."""

    def validate(
        self,
        product: Optional[Product],
        mapping: Sequence,
        requirements: Sequence[IngredientRequirement],
        candidates: Iterable[InventoryItem],
    ) -> ValidationResult:
        """Validate *mapping* rows against a product's requirements.

        Mapping rows only need ``requirement_id``, ``inventory_item_id``,
        ``quantity_per_unit`` and ``unit`` attributes, so both persisted
        ``RecipeIngredientMapping`` rows and unsaved proposals are accepted.
        """
        result = ValidationResult()
        requirements_by_id = {r.id: r for r in requirements}
        items_by_id = {item.id: item for item in candidates}

        if len(mapping) != len(requirements):
            result.errors.append(
                f"Mapping has {len(mapping)} rows but the recipe has "
                f"{len(requirements)} ingredient requirements"
            )

        mapped_requirement_ids = set()
        mapped_items: List[InventoryItem] = []

        for row in mapping:
            requirement = requirements_by_id.get(row.requirement_id)
            if requirement is None:
                result.errors.append(
                    f"Mapping references unknown requirement {row.requirement_id}"
                )
                continue
            if requirement.id in mapped_requirement_ids:
                result.errors.append(
                    f"Requirement '{requirement.ingredient_name}' is mapped more than once"
                )
                continue
            mapped_requirement_ids.add(requirement.id)

            item = items_by_id.get(row.inventory_item_id)
            if item is None:
                result.errors.append(
                    f"'{requirement.ingredient_name}' references unknown inventory item "
                    f"{row.inventory_item_id}"
                )
                continue
            mapped_items.append(item)

            self._check_unit(result, requirement, row, item)
            self._check_quantity(result, requirement, row)
            self._check_stock(result, requirement, row, item)

        for requirement in requirements:
            if requirement.id not in mapped_requirement_ids:
                result.errors.append(
                    f"Requirement '{requirement.ingredient_name}' has no mapping"
                )

        if product is not None:
            self._check_archetype(result, product, mapped_items)

        result.valid = not result.errors
        result.score = max(
            0,
            100 - ERROR_PENALTY * len(result.errors) - WARNING_PENALTY * len(result.warnings),
        )

        if not result.valid:
            label = product.name if product is not None else "mapping"
            logger.info(
                f"Mapping validation for '{label}' failed with "
                f"{len(result.errors)} errors, {len(result.warnings)} warnings"
            )
        return result

    def _check_unit(self, result, requirement, row, item):
        if not units_compatible(row.unit, item.unit):
            result.warnings.append(
                f"'{requirement.ingredient_name}': unit '{row.unit}' does not match "
                f"inventory unit '{item.unit}' of '{item.name}'"
            )

    def _check_quantity(self, result, requirement, row):
        quantity = Decimal(str(row.quantity_per_unit))
        if quantity <= 0:
            result.errors.append(
                f"'{requirement.ingredient_name}': quantity must be positive, got {quantity}"
            )
            return

        bounds = QUANTITY_RANGES.get(normalize_unit(row.unit))
        if bounds is None:
            return
        low, high = bounds
        if quantity < low or quantity > high:
            result.warnings.append(
                f"'{requirement.ingredient_name}': quantity {quantity} {row.unit} is outside "
                f"the usual range {low}-{high}"
            )

    def _check_stock(self, result, requirement, row, item):
        quantity = Decimal(str(row.quantity_per_unit))
        if Decimal(item.quantity) < quantity:
            result.warnings.append(
                f"'{item.name}' has {item.quantity} {item.unit} on hand, "
                f"less than the {quantity} needed for one '{requirement.ingredient_name}'"
            )

    def _check_archetype(self, result, product, mapped_items):
        product_name = product.name.lower()
        mapped_names = " | ".join(item.name.lower() for item in mapped_items)
        for keyword, expected in PRODUCT_ARCHETYPES.items():
            if keyword not in product_name:
                continue
            missing = [ingredient for ingredient in expected if ingredient not in mapped_names]
            if missing:
                result.warnings.append(
                    f"'{product.name}' usually needs {', '.join(missing)} "
                    f"but none is mapped"
                )
