"""
tokenbank/models/token_transaction.py

Immutable ledger entry. One is written for every balance mutation.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class TokenTransactionType(str, Enum):
    ASSIGNMENT_GENERATION = "ASSIGNMENT_GENERATION"
    PLAN_UPGRADE = "PLAN_UPGRADE"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"
    MONTHLY_RESET = "MONTHLY_RESET"


class TokenTransaction(BaseModel):
    """
    Amount is signed: negative for debits, positive for credits.
    balance_after is None when the user is on an UNLIMITED plan.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    type: TokenTransactionType
    amount: int
    balance_after: Optional[int] = None
    description: str
    reference_id: Optional[str] = None
    created_at: datetime
