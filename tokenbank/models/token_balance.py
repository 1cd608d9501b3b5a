"""
tokenbank/models/token_balance.py

Snapshot of a user's token balance and plan entitlements.
"""

from datetime import datetime
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict

from tokenbank.models.plan import Grade, PlanType, UNLIMITED_ASSIGNMENTS


class TokenBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_type: PlanType
    tokens_per_month: int
    tokens_remaining: int
    next_reset_at: datetime
    allowed_grades: Tuple[Grade, ...]
    assignments_allowed: int
    assignments_used: int
    plan_activated_at: Optional[datetime] = None
    plan_expires_at: Optional[datetime] = None

    @property
    def is_unlimited(self) -> bool:
        return self.plan_type == PlanType.UNLIMITED

    @property
    def assignments_remaining(self) -> Optional[int]:
        """Remaining generation jobs, None when the plan has no cap."""
        if self.assignments_allowed == UNLIMITED_ASSIGNMENTS:
            return None
        return max(0, self.assignments_allowed - self.assignments_used)
