"""
Token balance endpoints, plus operator token adjustments.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from tokenbank.core.admin_auth import require_operator
from tokenbank.core.auth import Actor, get_current_actor
from tokenbank.features.tokens import ledger
from tokenbank.models.plan import PlanType
from tokenbank.models.token_balance import TokenBalance

router = APIRouter(prefix="/api/tokens", tags=["tokens"])


class AdjustRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("reason")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class AssignPlanRequest(BaseModel):
    plan_type: PlanType


def balance_to_dict(balance: TokenBalance) -> Dict:
    data = balance.model_dump(mode="json")
    data["is_unlimited"] = balance.is_unlimited
    data["assignments_remaining"] = balance.assignments_remaining
    return data


@router.get("/balance")
def get_balance(actor: Actor = Depends(get_current_actor)) -> Dict:
    return balance_to_dict(ledger.get_balance(actor.user_id))


@router.get("/history")
def get_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
) -> Dict:
    entries = ledger.get_history(actor.user_id, limit=limit, offset=offset)
    return {"transactions": [e.model_dump(mode="json") for e in entries], "count": len(entries)}


@router.post("/admin/{user_id}/add")
def admin_add_tokens(user_id: str, body: AdjustRequest, actor: Actor = Depends(require_operator)) -> Dict:
    entry = ledger.admin_adjust(user_id, body.amount, actor=actor.user_id, reason=body.reason)
    return {"transaction": entry.model_dump(mode="json")}


@router.post("/admin/{user_id}/deduct")
def admin_deduct_tokens(user_id: str, body: AdjustRequest, actor: Actor = Depends(require_operator)) -> Dict:
    entry = ledger.admin_adjust(user_id, -body.amount, actor=actor.user_id, reason=body.reason)
    return {"transaction": entry.model_dump(mode="json")}


@router.post("/admin/{user_id}/reset")
def admin_reset_tokens(user_id: str, actor: Actor = Depends(require_operator)) -> Dict:
    entry = ledger.admin_reset(user_id, actor=actor.user_id)
    return {"transaction": entry.model_dump(mode="json")}


@router.post("/admin/{user_id}/plan")
def admin_assign_plan(user_id: str, body: AssignPlanRequest, actor: Actor = Depends(require_operator)) -> Dict:
    balance = ledger.assign_token_plan(user_id, body.plan_type, actor=actor.user_id)
    return balance_to_dict(balance)
