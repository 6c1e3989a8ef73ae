"""ORM-level quantity validators.

Stock quantities and recipe amounts are checked when they are assigned on a
model, so a bad value fails in the service that set it instead of at flush.
Conditional UPDATE statements bypass these; the CHECK constraint on
``inventory_items.quantity`` covers that path.
"""

from decimal import Decimal, InvalidOperation


def _as_decimal(key: str, value) -> Decimal:
    if isinstance(value, Decimal):
        v = value
    else:
        try:
            v = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"{key} must be a number, got {value!r}")
    if not v.is_finite():
        raise ValueError(f"{key} must be finite, got {value}")
    return v


def non_negative(key: str, value):
    """Validate that a quantity is >= 0."""
    if value is not None and _as_decimal(key, value) < 0:
        raise ValueError(f"{key} cannot be negative, got {value}")
    return value


def positive(key: str, value):
    """Validate that a quantity is > 0."""
    if value is not None and _as_decimal(key, value) <= 0:
        raise ValueError(f"{key} must be positive, got {value}")
    return value
