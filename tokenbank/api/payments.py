"""
Payment endpoints for users: plan catalog, custom price preview,
create / view / cancel manual card payments.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from tokenbank.core.auth import Actor, get_current_actor
from tokenbank.features.payments import service as payments
from tokenbank.features.plans.catalog import CUSTOM_PLAN_WARNING, get_catalog
from tokenbank.features.plans.pricing import calculate_custom_price, min_tokens_for_grade
from tokenbank.models.payment import PaymentMethod, PaymentTransaction
from tokenbank.models.plan import Grade, GRADE_ORDER, PlanDefinition, PlanType

router = APIRouter(prefix="/api/payments", tags=["payments"])


class CustomPriceRequest(BaseModel):
    tokens: int = Field(..., description="Token quantity to buy")
    grade: Grade


class CreatePaymentRequest(BaseModel):
    plan_type: PlanType
    payment_method: PaymentMethod
    custom_tokens: Optional[int] = None
    custom_grade: Optional[Grade] = None

    @field_validator("custom_tokens")
    @classmethod
    def _non_negative(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("custom_tokens must not be negative")
        return value


def plan_to_dict(plan: PlanDefinition) -> Dict:
    return {
        "type": plan.type.value,
        "name": plan.name,
        "price": str(plan.price),
        "price_formatted": plan.price_formatted,
        "currency": plan.currency,
        "tokens_per_month": plan.tokens_per_month,
        "duration_days": plan.duration_days,
        "assignments_allowed": plan.assignments_allowed,
        "allowed_grades": [g.value for g in plan.allowed_grades],
        "is_custom": plan.is_custom,
    }


def payment_to_dict(payment: PaymentTransaction) -> Dict:
    return payment.model_dump(mode="json")


@router.get("/plans")
def list_plans() -> Dict:
    """Purchasable plans plus custom plan pricing rules."""
    catalog = get_catalog()
    return {
        "plans": [plan_to_dict(p) for p in catalog.purchasable_plans()],
        "custom": {
            "rates": {g.value: str(catalog.rate_for(g)) for g in GRADE_ORDER},
            "min_tokens": {g.value: catalog.min_tokens_for(g) for g in GRADE_ORDER},
            "warning": CUSTOM_PLAN_WARNING,
        },
        "payment_card": catalog.payment_card,
        "expiration_hours": int(catalog.payment_window.total_seconds() // 3600),
        "warnings": list(payments.PAYMENT_WARNINGS),
    }


@router.post("/calculate-custom")
def calculate_custom(body: CustomPriceRequest, actor: Actor = Depends(get_current_actor)) -> Dict:
    catalog = get_catalog()
    price = calculate_custom_price(body.tokens, body.grade, catalog)
    return {
        "tokens": body.tokens,
        "grade": body.grade.value,
        "price": str(price),
        "price_formatted": f"{price:,.0f} {catalog.currency}",
        "min_tokens": min_tokens_for_grade(body.grade, catalog),
    }


@router.post("/create", status_code=201)
def create_payment(body: CreatePaymentRequest, actor: Actor = Depends(get_current_actor)) -> Dict:
    payment = payments.create_payment(
        actor.user_id,
        body.plan_type,
        body.payment_method,
        custom_tokens=body.custom_tokens,
        custom_grade=body.custom_grade,
    )
    return {
        "payment": payment_to_dict(payment),
        "instructions": payments.payment_instructions(payment),
    }


@router.get("/active")
def get_active_payment(actor: Actor = Depends(get_current_actor)) -> Dict:
    payment = payments.get_active_payment(actor.user_id)
    if payment is None:
        return {"payment": None, "instructions": None}
    return {
        "payment": payment_to_dict(payment),
        "instructions": payments.payment_instructions(payment),
    }


@router.get("/history")
def payment_history(
    limit: int = Query(50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
) -> Dict:
    history = payments.list_user_payments(actor.user_id, limit=limit)
    return {"payments": [payment_to_dict(p) for p in history], "count": len(history)}


@router.post("/{payment_id}/cancel")
def cancel_payment(payment_id: str, actor: Actor = Depends(get_current_actor)) -> Dict:
    payment = payments.cancel_payment(payment_id, actor)
    return {"payment": payment_to_dict(payment)}


@router.get("/{payment_id}")
def get_payment(payment_id: str, actor: Actor = Depends(get_current_actor)) -> Dict:
    payment = payments.get_payment_for_actor(payment_id, actor)
    return {"payment": payment_to_dict(payment)}
