"""
Consumption gate endpoint, called by the generation pipeline before a job starts.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tokenbank.core.auth import Actor, get_current_actor
from tokenbank.features.gate.service import authorize_generation
from tokenbank.models.plan import Grade

router = APIRouter(prefix="/api/generation", tags=["generation"])


class AuthorizeRequest(BaseModel):
    grade: Grade
    estimated_tokens: int = Field(..., gt=0)
    assignment_id: Optional[str] = None


@router.post("/authorize")
def authorize(body: AuthorizeRequest, actor: Actor = Depends(get_current_actor)) -> Dict:
    gate_pass = authorize_generation(
        actor.user_id,
        body.grade,
        body.estimated_tokens,
        assignment_id=body.assignment_id,
    )
    return gate_pass.model_dump(mode="json")
