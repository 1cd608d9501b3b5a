"""
tokenbank/features/plans/catalog.py

Plan catalog.

Handles:
- Purchasable tiers (P, PM, PMD) and the quantity-priced CUSTOM tier
- Account plans (FREE, BASIC, PRO, UNLIMITED) assigned at signup or by an operator
- Custom pricing constants (per-grade rate and minimum quantity)

The catalog is built once from settings and passed by reference to the
pricing calculator and the payment service. Nothing in it is mutable.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from tokenbank.core.config import Settings, settings
from tokenbank.core.errors import ValidationError
from tokenbank.models.plan import (
    Grade,
    GRADE_ORDER,
    PlanDefinition,
    PlanType,
    UNLIMITED_ASSIGNMENTS,
)


# Purchasable tiers, priced in UZS
PAYMENT_PLANS = {
    PlanType.P: {
        "name": "Pass Only",
        "price": Decimal("30000"),
        "tokens_per_month": 100_000,
        "assignments_allowed": 5,
        "allowed_grades": (Grade.PASS,),
        "duration_days": 3,
    },
    PlanType.PM: {
        "name": "Pass + Merit",
        "price": Decimal("50000"),
        "tokens_per_month": 150_000,
        "assignments_allowed": 7,
        "allowed_grades": (Grade.PASS, Grade.MERIT),
        "duration_days": 5,
    },
    PlanType.PMD: {
        "name": "Pass + Merit + Distinction",
        "price": Decimal("100000"),
        "tokens_per_month": 200_000,
        "assignments_allowed": 10,
        "allowed_grades": GRADE_ORDER,
        "duration_days": 7,
    },
    PlanType.CUSTOM: {
        "name": "Custom Plan (One-Time)",
        "price": Decimal("0"),  # priced per token
        "tokens_per_month": 0,  # chosen by the buyer
        "assignments_allowed": 1,
        "allowed_grades": (),  # chosen by the buyer
        "duration_days": 7,
        "is_custom": True,
    },
}

# Account plans (monthly), not sold through card payments
ACCOUNT_PLANS = {
    PlanType.FREE: {
        "name": "Free",
        "price": Decimal("0"),
        "assignments_allowed": 1,
        "allowed_grades": (Grade.PASS,),
    },
    PlanType.BASIC: {
        "name": "Basic",
        "price": Decimal("9.99"),
        "tokens_per_month": 50_000,
        "assignments_allowed": 5,
        "allowed_grades": (Grade.PASS,),
    },
    PlanType.PRO: {
        "name": "Pro",
        "price": Decimal("29.99"),
        "tokens_per_month": 200_000,
        "assignments_allowed": 10,
        "allowed_grades": (Grade.PASS, Grade.MERIT),
    },
    PlanType.UNLIMITED: {
        "name": "Unlimited",
        "price": Decimal("99.99"),
        "tokens_per_month": 0,  # not tracked
        "assignments_allowed": UNLIMITED_ASSIGNMENTS,
        "allowed_grades": GRADE_ORDER,
    },
}

ACCOUNT_PLAN_CURRENCY = "USD"
ACCOUNT_PLAN_DURATION_DAYS = 30

# Custom plan floors by grade; DISTINCTION costs more to fulfil downstream
CUSTOM_MIN_TOKENS = {
    Grade.PASS: 20_000,
    Grade.MERIT: 20_000,
    Grade.DISTINCTION: 25_000,
}
MIN_CUSTOM_TOKENS = 20_000  # Absolute minimum when no grade is given

CUSTOM_PLAN_WARNING = (
    "Custom plan applies to ONE assignment only. "
    "Leftover tokens remain in wallet. No refunds."
)


@dataclass(frozen=True)
class PlanCatalog:
    """Immutable plan catalog plus custom pricing and payment constants."""

    plans: Tuple[PlanDefinition, ...]
    custom_rates: Mapping[Grade, Decimal]
    custom_min_tokens: Mapping[Grade, int]
    min_custom_tokens: int = MIN_CUSTOM_TOKENS
    default_custom_rate: Decimal = Decimal("1")
    payment_window: timedelta = timedelta(hours=24)
    payment_card: str = ""
    currency: str = "UZS"
    _index: Mapping[PlanType, PlanDefinition] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        for grade, rate in self.custom_rates.items():
            # rate >= 1 keeps whole-unit prices strictly increasing in quantity
            if rate < 1:
                raise ValueError(f"Custom rate for {grade.value} must be at least 1, got {rate}")
        if self.default_custom_rate < 1:
            raise ValueError("Default custom rate must be at least 1")
        if self.payment_window <= timedelta(0):
            raise ValueError("Payment window must be positive")
        index = MappingProxyType({plan.type: plan for plan in self.plans})
        object.__setattr__(self, "_index", index)

    def get(self, plan_type) -> PlanDefinition:
        """Look up a plan; unknown identifiers are a validation error."""
        try:
            key = PlanType(plan_type)
        except ValueError:
            raise ValidationError(f"Unknown plan type: {plan_type}", reason="invalid_plan")
        plan = self._index.get(key)
        if plan is None:
            raise ValidationError(f"Unknown plan type: {plan_type}", reason="invalid_plan")
        return plan

    def purchasable_plans(self) -> Tuple[PlanDefinition, ...]:
        return tuple(p for p in self.plans if p.purchasable)

    def account_plans(self) -> Tuple[PlanDefinition, ...]:
        return tuple(p for p in self.plans if not p.purchasable)

    def custom_plan(self) -> PlanDefinition:
        return self.get(PlanType.CUSTOM)

    def rate_for(self, grade: Optional[Grade]) -> Decimal:
        if grade is None:
            return self.default_custom_rate
        return self.custom_rates.get(Grade(grade), self.default_custom_rate)

    def min_tokens_for(self, grade: Optional[Grade]) -> int:
        if grade is None:
            return self.min_custom_tokens
        return self.custom_min_tokens.get(Grade(grade), self.min_custom_tokens)


def _build_plans(cfg: Settings) -> Tuple[PlanDefinition, ...]:
    plans = []
    for plan_type, config in PAYMENT_PLANS.items():
        plans.append(
            PlanDefinition(
                type=plan_type,
                name=config["name"],
                price=config["price"],
                currency=cfg.PAYMENT_CURRENCY,
                tokens_per_month=config["tokens_per_month"],
                duration_days=config["duration_days"],
                assignments_allowed=config["assignments_allowed"],
                allowed_grades=config["allowed_grades"],
                is_custom=config.get("is_custom", False),
                purchasable=True,
            )
        )
    for plan_type, config in ACCOUNT_PLANS.items():
        tokens = config.get("tokens_per_month")
        if plan_type == PlanType.FREE:
            tokens = cfg.FREE_TOKENS_PER_MONTH
        plans.append(
            PlanDefinition(
                type=plan_type,
                name=config["name"],
                price=config["price"],
                currency=ACCOUNT_PLAN_CURRENCY,
                tokens_per_month=tokens,
                duration_days=ACCOUNT_PLAN_DURATION_DAYS,
                assignments_allowed=config["assignments_allowed"],
                allowed_grades=config["allowed_grades"],
                purchasable=False,
            )
        )
    return tuple(plans)


def build_catalog(settings_obj: Optional[Settings] = None) -> PlanCatalog:
    """Construct the catalog from settings."""
    cfg = settings_obj or settings
    default_rate = Decimal(cfg.CUSTOM_PLAN_RATE)
    rates = {grade: default_rate for grade in GRADE_ORDER}
    if cfg.CUSTOM_PLAN_RATE_DISTINCTION is not None:
        rates[Grade.DISTINCTION] = Decimal(cfg.CUSTOM_PLAN_RATE_DISTINCTION)

    return PlanCatalog(
        plans=_build_plans(cfg),
        custom_rates=MappingProxyType(rates),
        custom_min_tokens=MappingProxyType(dict(CUSTOM_MIN_TOKENS)),
        min_custom_tokens=MIN_CUSTOM_TOKENS,
        default_custom_rate=default_rate,
        payment_window=timedelta(hours=cfg.PAYMENT_EXPIRATION_HOURS),
        payment_card=cfg.PAYMENT_CARD,
        currency=cfg.PAYMENT_CURRENCY,
    )


@lru_cache(maxsize=1)
def get_catalog() -> PlanCatalog:
    """Process-wide catalog, built on first use."""
    return build_catalog()
