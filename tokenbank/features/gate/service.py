"""
tokenbank/features/gate/service.py

Consumption gate: the checks a generation job must pass before it starts.

Order:
1. Requested grade must be in the balance's allowed grades
2. Assignment quota must not be used up (-1 = unlimited)
3. Estimated tokens are debited from the ledger

All three run in one database transaction. A failure at any step rolls
back every effect, so a denied request leaves the balance untouched.
Refunds for jobs that fail downstream are explicit ledger credits.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import update

from tokenbank.core.database import get_db_session, token_balances, utc_now
from tokenbank.core.errors import GradeNotAllowedError, QuotaExhaustedError, ValidationError
from tokenbank.core.logging import log_event
from tokenbank.features.tokens import ledger
from tokenbank.models.plan import Grade, UNLIMITED_ASSIGNMENTS
from tokenbank.models.token_transaction import TokenTransactionType


class GatePass(BaseModel):
    """Receipt for an authorized generation job."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str
    user_id: str
    grade: Grade
    tokens_debited: int
    tokens_remaining: Optional[int] = None  # None on UNLIMITED
    assignments_remaining: Optional[int] = None  # None when uncapped


def _deny(user_id: str, reason: str, grade: Grade, estimated_tokens: int) -> None:
    log_event(
        "warning",
        "gate.denied",
        user_id=user_id,
        event_type="gate.denied",
        error_code=reason,
        extra={"grade": grade.value, "estimated_tokens": estimated_tokens},
    )


def authorize_generation(
    user_id: str,
    grade,
    estimated_tokens: int,
    assignment_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> GatePass:
    """
    Authorize a generation job and debit its estimated cost.

    Raises:
        GradeNotAllowedError: grade not unlocked by the current plan
        QuotaExhaustedError: assignment quota used up
        InsufficientBalanceError: not enough tokens
        NotFoundError: user has no balance
    """
    try:
        grade = Grade(grade)
    except ValueError:
        raise ValidationError(f"Unknown grade: {grade}", reason="invalid_grade")
    now = now or utc_now()

    try:
        with get_db_session() as session:
            row = ledger.load_current(session, user_id, now)

            if grade.value not in (row.allowed_grades or []):
                raise GradeNotAllowedError(
                    f"Grade {grade.value} is not included in your {row.plan_type} plan",
                    details={"grade": grade.value, "allowed_grades": list(row.allowed_grades or [])},
                )

            if row.assignments_allowed != UNLIMITED_ASSIGNMENTS:
                claimed = session.execute(
                    update(token_balances)
                    .where(
                        token_balances.c.user_id == user_id,
                        token_balances.c.assignments_used < token_balances.c.assignments_allowed,
                    )
                    .values(assignments_used=token_balances.c.assignments_used + 1, updated_at=now)
                )
                if claimed.rowcount == 0:
                    raise QuotaExhaustedError(
                        f"Assignment limit reached ({row.assignments_allowed}). Purchase a plan to continue.",
                        details={"assignments_allowed": row.assignments_allowed},
                    )
                assignments_remaining = row.assignments_allowed - row.assignments_used - 1
            else:
                assignments_remaining = None

            entry = ledger.debit_in_session(
                session,
                user_id,
                estimated_tokens,
                TokenTransactionType.ASSIGNMENT_GENERATION,
                f"Assignment generation ({grade.value})",
                reference_id=assignment_id,
                now=now,
            )
    except (GradeNotAllowedError, QuotaExhaustedError) as exc:
        _deny(user_id, exc.code, grade, estimated_tokens)
        raise

    gate_pass = GatePass(
        transaction_id=entry.id,
        user_id=user_id,
        grade=grade,
        tokens_debited=estimated_tokens,
        tokens_remaining=entry.balance_after,
        assignments_remaining=max(0, assignments_remaining) if assignments_remaining is not None else None,
    )
    log_event(
        "info",
        "gate.authorized",
        user_id=user_id,
        event_type="gate.authorized",
        extra={
            "grade": grade.value,
            "tokens_debited": estimated_tokens,
            "assignment_id": assignment_id,
            "assignments_remaining": gate_pass.assignments_remaining,
        },
    )
    return gate_pass
