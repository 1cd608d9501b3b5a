"""
tokenbank/features/plans/pricing.py

Custom plan pricing.

price = ceil(rate(grade) * tokens), in whole UZS. Rates are at least 1 per
token, so each extra token raises the price by at least one unit.
"""

from decimal import Decimal, ROUND_CEILING
from typing import Optional

from tokenbank.core.errors import InvalidQuantityError, ValidationError
from tokenbank.features.plans.catalog import PlanCatalog, get_catalog
from tokenbank.models.plan import Grade


def _coerce_grade(grade) -> Optional[Grade]:
    if grade is None:
        return None
    try:
        return Grade(grade)
    except ValueError:
        raise ValidationError(f"Unknown grade: {grade}", reason="invalid_grade")


def min_tokens_for_grade(grade=None, catalog: Optional[PlanCatalog] = None) -> int:
    """Smallest purchasable custom quantity for a grade (absolute floor when grade is None)."""
    catalog = catalog or get_catalog()
    return catalog.min_tokens_for(_coerce_grade(grade))


def calculate_custom_price(tokens: int, grade=None, catalog: Optional[PlanCatalog] = None) -> Decimal:
    """
    Price a custom token quantity.

    Raises:
        ValidationError: tokens is not an integer
        InvalidQuantityError: tokens below the grade minimum
    """
    catalog = catalog or get_catalog()
    if isinstance(tokens, bool) or not isinstance(tokens, int):
        raise ValidationError("Token quantity must be an integer")

    resolved = _coerce_grade(grade)
    minimum = catalog.min_tokens_for(resolved)
    if tokens < minimum:
        label = resolved.value if resolved else "custom plan"
        raise InvalidQuantityError(
            f"Minimum {minimum:,} tokens required for {label}, got {tokens:,}"
        )

    raw = catalog.rate_for(resolved) * Decimal(tokens)
    return raw.to_integral_value(rounding=ROUND_CEILING)
