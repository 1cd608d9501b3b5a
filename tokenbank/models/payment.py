"""
tokenbank/models/payment.py

Payment transaction model for manually reconciled card transfers.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict

from tokenbank.models.plan import Grade, PlanType


class PaymentStatus(str, Enum):
    WAITING_PAYMENT = "WAITING_PAYMENT"
    PAID = "PAID"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({
    PaymentStatus.PAID,
    PaymentStatus.REJECTED,
    PaymentStatus.EXPIRED,
    PaymentStatus.CANCELLED,
})


class SettlementOutcome(str, Enum):
    PAID = "PAID"
    REJECTED = "REJECTED"


class PaymentMethod(str, Enum):
    HUMO = "HUMO"
    UZCARD = "UZCARD"


class PaymentTransaction(BaseModel):
    """
    One purchase attempt.

    final_amount = base_amount + unique_suffix / 100, so the operator can
    match an incoming transfer to exactly one pending payment.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_type: PlanType
    payment_method: PaymentMethod
    base_amount: Decimal
    unique_suffix: int
    final_amount: Decimal
    status: PaymentStatus
    created_at: datetime
    expires_at: datetime
    custom_tokens: Optional[int] = None
    custom_grade: Optional[Grade] = None
    settled_at: Optional[datetime] = None
    settled_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    tokens_granted: Optional[int] = None
    assignments_granted: Optional[int] = None
    grades_granted: Optional[Tuple[Grade, ...]] = None
    plan_expires_at: Optional[datetime] = None
