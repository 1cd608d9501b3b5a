"""
tokenbank/models/plan.py

Plan catalog models.

A plan is a capability tier: how many tokens it grants, how many
generation jobs (assignments) it allows and which output grades it unlocks.
"""

from decimal import Decimal
from enum import Enum
from typing import Tuple
from pydantic import BaseModel, ConfigDict


class Grade(str, Enum):
    """Output grade levels, ordered from lowest to highest."""
    PASS = "PASS"
    MERIT = "MERIT"
    DISTINCTION = "DISTINCTION"


GRADE_ORDER: Tuple[Grade, ...] = (Grade.PASS, Grade.MERIT, Grade.DISTINCTION)


class PlanType(str, Enum):
    """
    Plan identifiers.

    P, PM, PMD and CUSTOM are purchasable through manual card payments.
    FREE, BASIC, PRO and UNLIMITED are account plans assigned at signup
    or by an operator.
    """
    P = "P"
    PM = "PM"
    PMD = "PMD"
    CUSTOM = "CUSTOM"
    FREE = "FREE"
    BASIC = "BASIC"
    PRO = "PRO"
    UNLIMITED = "UNLIMITED"


PURCHASABLE_PLAN_TYPES = (PlanType.P, PlanType.PM, PlanType.PMD, PlanType.CUSTOM)
ACCOUNT_PLAN_TYPES = (PlanType.FREE, PlanType.BASIC, PlanType.PRO, PlanType.UNLIMITED)

UNLIMITED_ASSIGNMENTS = -1


def sort_grades(grades) -> Tuple[Grade, ...]:
    """Deduplicate and order grades PASS < MERIT < DISTINCTION."""
    wanted = {Grade(g) for g in grades}
    return tuple(g for g in GRADE_ORDER if g in wanted)


class PlanDefinition(BaseModel):
    """
    Catalog entry for a plan.

    For the CUSTOM tier `price` is 0 and `tokens_per_month` is 0: both are
    chosen by the buyer and priced by the pricing calculator.
    """
    model_config = ConfigDict(frozen=True)

    type: PlanType
    name: str
    price: Decimal
    currency: str = "UZS"
    tokens_per_month: int
    duration_days: int
    assignments_allowed: int
    allowed_grades: Tuple[Grade, ...]
    is_custom: bool = False
    purchasable: bool = True

    @property
    def price_formatted(self) -> str:
        return f"{self.price:,.0f} {self.currency}"

    @property
    def is_unlimited(self) -> bool:
        return self.type == PlanType.UNLIMITED
