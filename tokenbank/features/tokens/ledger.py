"""
tokenbank/features/tokens/ledger.py

Token ledger.

Owns per-user balances, assignment quotas and the monthly reset schedule.

Rules:
- Every balance mutation appends exactly one TokenTransaction in the same
  database transaction as the balance update.
- tokens_remaining never goes below zero: debits are a single conditional
  UPDATE guarded by `tokens_remaining >= :amount`.
- UNLIMITED balances are never decremented, but debits are still recorded
  (balance_after is NULL).
- Resets forfeit unused tokens and advance next_reset_at by whole calendar
  months; a reset that is not yet due is a no-op.
- A purchased plan is a single period: next_reset_at is pinned to
  plan_expires_at, and the lapse back to FREE resumes the calendar schedule.

Functions prefixed with an underscore take an open session so the payment
and gate services can compose them into their own transaction.
"""

from datetime import datetime
from typing import List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import select, insert, update

from tokenbank.core.database import (
    get_db_session,
    token_balances,
    token_transactions,
    utc_now,
    as_utc,
)
from tokenbank.core.errors import (
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from tokenbank.core.logging import log_event
from tokenbank.features.audit.service import record_admin_audit
from tokenbank.features.plans.catalog import PlanCatalog, get_catalog
from tokenbank.models.plan import (
    ACCOUNT_PLAN_TYPES,
    PlanType,
    sort_grades,
)
from tokenbank.models.token_balance import TokenBalance
from tokenbank.models.token_transaction import TokenTransaction, TokenTransactionType


HISTORY_MAX_LIMIT = 200


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------

def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        following = datetime(year + 1, 1, 1)
    else:
        following = datetime(year, month + 1, 1)
    return (following - datetime(year, month, 1)).days


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, _days_in_month(year, month))
    return value.replace(year=year, month=month, day=day)


def next_month_start(now: datetime) -> datetime:
    """Midnight on the first day of the month after `now`."""
    first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return add_months(first, 1)


def _advance_reset(next_reset_at: datetime, now: datetime) -> datetime:
    advanced = next_reset_at
    while advanced <= now:
        advanced = add_months(advanced, 1)
    return advanced


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def _validate_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Token amount must be an integer", reason="invalid_amount")
    if amount <= 0:
        raise ValidationError("Token amount must be positive", reason="invalid_amount")
    return amount


def _load_row(session, user_id: str, *, for_update: bool = False):
    stmt = select(token_balances).where(token_balances.c.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    if row is None:
        raise NotFoundError(f"Token balance not found for user: {user_id}", reason="balance_not_found")
    return row


def _current_remaining(session, user_id: str) -> int:
    return session.execute(
        select(token_balances.c.tokens_remaining).where(token_balances.c.user_id == user_id)
    ).scalar_one()


def _is_unlimited(row) -> bool:
    return row.plan_type == PlanType.UNLIMITED.value


def _row_to_balance(row) -> TokenBalance:
    return TokenBalance(
        user_id=row.user_id,
        plan_type=row.plan_type,
        tokens_per_month=row.tokens_per_month,
        tokens_remaining=row.tokens_remaining,
        next_reset_at=as_utc(row.next_reset_at),
        allowed_grades=sort_grades(row.allowed_grades or []),
        assignments_allowed=row.assignments_allowed,
        assignments_used=row.assignments_used,
        plan_activated_at=as_utc(row.plan_activated_at),
        plan_expires_at=as_utc(row.plan_expires_at),
    )


def _row_to_transaction(row) -> TokenTransaction:
    return TokenTransaction(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        amount=row.amount,
        balance_after=row.balance_after,
        description=row.description,
        reference_id=row.reference_id,
        created_at=as_utc(row.created_at),
    )


def _append_transaction(
    session,
    *,
    user_id: str,
    tx_type: TokenTransactionType,
    amount: int,
    balance_after: Optional[int],
    description: str,
    reference_id: Optional[str],
    now: datetime,
) -> TokenTransaction:
    entry = TokenTransaction(
        id=str(uuid4()),
        user_id=user_id,
        type=tx_type,
        amount=amount,
        balance_after=balance_after,
        description=description,
        reference_id=reference_id,
        created_at=now,
    )
    session.execute(
        insert(token_transactions).values(
            id=entry.id,
            user_id=entry.user_id,
            type=entry.type.value,
            amount=entry.amount,
            balance_after=entry.balance_after,
            description=entry.description,
            reference_id=entry.reference_id,
            created_at=entry.created_at,
        )
    )
    return entry


# ---------------------------------------------------------------------------
# Session-level operations
# ---------------------------------------------------------------------------

def credit_in_session(
    session,
    user_id: str,
    amount: int,
    tx_type: TokenTransactionType,
    description: str,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TokenTransaction:
    amount = _validate_amount(amount)
    now = now or utc_now()
    row = load_current(session, user_id, now)

    if _is_unlimited(row):
        balance_after = None
    else:
        session.execute(
            update(token_balances)
            .where(token_balances.c.user_id == user_id)
            .values(
                tokens_remaining=token_balances.c.tokens_remaining + amount,
                updated_at=now,
            )
        )
        balance_after = _current_remaining(session, user_id)

    entry = _append_transaction(
        session,
        user_id=user_id,
        tx_type=tx_type,
        amount=amount,
        balance_after=balance_after,
        description=description,
        reference_id=reference_id,
        now=now,
    )
    log_event(
        "info",
        "ledger.credit",
        user_id=user_id,
        event_type="ledger.credit",
        extra={"amount": amount, "type": tx_type.value, "balance_after": balance_after, "reference_id": reference_id},
    )
    return entry


def debit_in_session(
    session,
    user_id: str,
    amount: int,
    tx_type: TokenTransactionType,
    description: str,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TokenTransaction:
    amount = _validate_amount(amount)
    now = now or utc_now()
    row = load_current(session, user_id, now)

    if _is_unlimited(row):
        balance_after = None
    else:
        result = session.execute(
            update(token_balances)
            .where(
                token_balances.c.user_id == user_id,
                token_balances.c.tokens_remaining >= amount,
            )
            .values(
                tokens_remaining=token_balances.c.tokens_remaining - amount,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            available = _current_remaining(session, user_id)
            log_event(
                "warning",
                "ledger.debit_rejected",
                user_id=user_id,
                event_type="ledger.debit_rejected",
                error_code="insufficient_balance",
                extra={"amount": amount, "available": available},
            )
            raise InsufficientBalanceError(
                f"Insufficient tokens. You have {available} tokens remaining, but need {amount}",
                available=available,
                requested=amount,
            )
        balance_after = _current_remaining(session, user_id)

    entry = _append_transaction(
        session,
        user_id=user_id,
        tx_type=tx_type,
        amount=-amount,
        balance_after=balance_after,
        description=description,
        reference_id=reference_id,
        now=now,
    )
    log_event(
        "info",
        "ledger.debit",
        user_id=user_id,
        event_type="ledger.debit",
        extra={"amount": amount, "type": tx_type.value, "balance_after": balance_after, "reference_id": reference_id},
    )
    return entry


def _reset(session, row, now: datetime, *, force: bool = False) -> Optional[TokenTransaction]:
    """Apply the monthly reset to `row` if due (or forced). Returns the ledger entry, or None."""
    observed_reset_at = as_utc(row.next_reset_at)
    if not force and now < observed_reset_at:
        return None

    if force and observed_reset_at > now:
        # A purchased plan keeps its single period until it lapses
        new_reset_at = as_utc(row.plan_expires_at) or next_month_start(now)
    else:
        new_reset_at = _advance_reset(observed_reset_at, now)

    values = {"next_reset_at": new_reset_at, "updated_at": now}
    unlimited = _is_unlimited(row)
    if not unlimited:
        values["tokens_remaining"] = token_balances.c.tokens_per_month

    result = session.execute(
        update(token_balances)
        .where(
            token_balances.c.user_id == row.user_id,
            token_balances.c.next_reset_at == observed_reset_at,
        )
        .values(**values)
    )
    if result.rowcount == 0:
        # Another caller already reset this period
        return None

    if unlimited:
        amount, balance_after = 0, None
    else:
        balance_after = _current_remaining(session, row.user_id)
        amount = balance_after - row.tokens_remaining

    entry = _append_transaction(
        session,
        user_id=row.user_id,
        tx_type=TokenTransactionType.MONTHLY_RESET,
        amount=amount,
        balance_after=balance_after,
        description=f"Monthly reset to {row.tokens_per_month} tokens",
        reference_id=None,
        now=now,
    )
    log_event(
        "info",
        "ledger.reset",
        user_id=row.user_id,
        event_type="ledger.reset",
        extra={"amount": amount, "next_reset_at": new_reset_at.isoformat(), "forced": force},
    )
    return entry


def _lapse_plan(session, row, now: datetime, catalog: PlanCatalog) -> bool:
    """Fall back to FREE entitlements once a purchased plan's window has passed."""
    expires_at = as_utc(row.plan_expires_at)
    if expires_at is None or expires_at > now:
        return False

    free = catalog.get(PlanType.FREE)
    result = session.execute(
        update(token_balances)
        .where(
            token_balances.c.user_id == row.user_id,
            token_balances.c.plan_expires_at.isnot(None),
            token_balances.c.plan_expires_at <= now,
        )
        .values(
            plan_type=free.type.value,
            tokens_per_month=free.tokens_per_month,
            allowed_grades=[g.value for g in free.allowed_grades],
            assignments_allowed=free.assignments_allowed,
            assignments_used=0,
            plan_expires_at=None,
            next_reset_at=next_month_start(expires_at),
            updated_at=now,
        )
    )
    if result.rowcount:
        log_event(
            "info",
            "ledger.plan_lapsed",
            user_id=row.user_id,
            event_type="ledger.plan_lapsed",
            extra={"previous_plan": row.plan_type, "tokens_remaining": row.tokens_remaining},
        )
    return bool(result.rowcount)


def _load_unlapsed(session, user_id: str, now: datetime, catalog: Optional[PlanCatalog] = None):
    row = _load_row(session, user_id, for_update=True)
    if _lapse_plan(session, row, now, catalog or get_catalog()):
        row = _load_row(session, user_id, for_update=True)
    return row


def load_current(session, user_id: str, now: datetime, catalog: Optional[PlanCatalog] = None):
    """
    Load the balance row with any due lapse and reset applied.

    Balance mutations load through here, so a due reset always precedes the
    credit or debit and never overwrites it.
    """
    row = _load_unlapsed(session, user_id, now, catalog)
    if _reset(session, row, now) is not None:
        row = _load_row(session, user_id, for_update=True)
    return row


def insert_balance(session, user_id: str, now: datetime, catalog: Optional[PlanCatalog] = None) -> None:
    catalog = catalog or get_catalog()
    free = catalog.get(PlanType.FREE)
    session.execute(
        insert(token_balances).values(
            user_id=user_id,
            plan_type=free.type.value,
            tokens_per_month=free.tokens_per_month,
            tokens_remaining=free.tokens_per_month,
            next_reset_at=next_month_start(now),
            allowed_grades=[g.value for g in free.allowed_grades],
            assignments_allowed=free.assignments_allowed,
            assignments_used=0,
            plan_activated_at=now,
            plan_expires_at=None,
            updated_at=now,
        )
    )


def apply_plan_purchase(
    session,
    user_id: str,
    *,
    plan_type: PlanType,
    tokens: int,
    allowed_grades: Sequence,
    assignments_allowed: int,
    plan_expires_at: datetime,
    reference_id: str,
    description: str,
    now: datetime,
) -> TokenTransaction:
    """Credit a purchased allotment and switch entitlements in one mutation."""
    tokens = _validate_amount(tokens)
    load_current(session, user_id, now)

    session.execute(
        update(token_balances)
        .where(token_balances.c.user_id == user_id)
        .values(
            plan_type=PlanType(plan_type).value,
            tokens_per_month=tokens,
            tokens_remaining=token_balances.c.tokens_remaining + tokens,
            allowed_grades=[g.value for g in sort_grades(allowed_grades)],
            assignments_allowed=assignments_allowed,
            assignments_used=0,
            plan_activated_at=now,
            plan_expires_at=plan_expires_at,
            next_reset_at=plan_expires_at,
            updated_at=now,
        )
    )
    balance_after = _current_remaining(session, user_id)
    entry = _append_transaction(
        session,
        user_id=user_id,
        tx_type=TokenTransactionType.PLAN_UPGRADE,
        amount=tokens,
        balance_after=balance_after,
        description=description,
        reference_id=reference_id,
        now=now,
    )
    log_event(
        "info",
        "ledger.plan_purchase",
        user_id=user_id,
        payment_id=reference_id,
        event_type="ledger.plan_purchase",
        extra={"plan_type": PlanType(plan_type).value, "amount": tokens, "balance_after": balance_after},
    )
    return entry


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def initialize_balance(user_id: str, now: Optional[datetime] = None) -> TokenBalance:
    """Create a FREE balance for the user if none exists (idempotent)."""
    now = now or utc_now()
    with get_db_session() as session:
        existing = session.execute(
            select(token_balances).where(token_balances.c.user_id == user_id)
        ).first()
        if existing is None:
            insert_balance(session, user_id, now)
            existing = _load_row(session, user_id)
        return _row_to_balance(existing)


def get_balance(user_id: str, now: Optional[datetime] = None) -> TokenBalance:
    """
    Current balance for a user.

    Applies a lapsed plan and a due monthly reset before returning.

    Raises:
        NotFoundError: user has no balance
    """
    now = now or utc_now()
    with get_db_session() as session:
        row = load_current(session, user_id, now)
        return _row_to_balance(row)


def credit(
    user_id: str,
    amount: int,
    tx_type: TokenTransactionType,
    description: str,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TokenTransaction:
    """Add tokens to a balance. UNLIMITED balances keep their number; the entry is still written."""
    with get_db_session() as session:
        return credit_in_session(session, user_id, amount, TokenTransactionType(tx_type), description, reference_id, now)


def debit(
    user_id: str,
    amount: int,
    tx_type: TokenTransactionType,
    description: str,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TokenTransaction:
    """
    Remove tokens from a balance.

    Raises:
        InsufficientBalanceError: balance lower than amount (non-UNLIMITED)
        ValidationError: amount is not a positive integer
        NotFoundError: user has no balance
    """
    with get_db_session() as session:
        return debit_in_session(session, user_id, amount, TokenTransactionType(tx_type), description, reference_id, now)


def reset(user_id: str, now: Optional[datetime] = None) -> Optional[TokenTransaction]:
    """Run the monthly reset if due. Returns None when nothing was reset."""
    now = now or utc_now()
    with get_db_session() as session:
        row = _load_unlapsed(session, user_id, now)
        return _reset(session, row, now)


def get_history(user_id: str, limit: int = 50, offset: int = 0) -> List[TokenTransaction]:
    """Ledger entries for a user, newest first."""
    limit = max(1, min(limit, HISTORY_MAX_LIMIT))
    offset = max(0, offset)
    with get_db_session() as session:
        _load_row(session, user_id)
        rows = session.execute(
            select(token_transactions)
            .where(token_transactions.c.user_id == user_id)
            .order_by(token_transactions.c.created_at.desc(), token_transactions.c.id.desc())
            .limit(limit)
            .offset(offset)
        ).fetchall()
        return [_row_to_transaction(r) for r in rows]


def assign_token_plan(
    user_id: str,
    plan_type: PlanType,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> TokenBalance:
    """
    Move a user onto an account plan (FREE, BASIC, PRO, UNLIMITED).

    tokens_remaining is set to the plan's monthly quota; the net change is
    recorded as one PLAN_UPGRADE entry.
    """
    catalog = catalog or get_catalog()
    plan = catalog.get(plan_type)
    if plan.type not in ACCOUNT_PLAN_TYPES:
        raise ValidationError(
            f"Plan {plan.type.value} is sold through payments, not assigned",
            reason="invalid_plan",
        )
    now = now or utc_now()

    with get_db_session() as session:
        row = _load_row(session, user_id, for_update=True)
        values = {
            "plan_type": plan.type.value,
            "tokens_per_month": plan.tokens_per_month,
            "allowed_grades": [g.value for g in plan.allowed_grades],
            "assignments_allowed": plan.assignments_allowed,
            "assignments_used": 0,
            "next_reset_at": next_month_start(now),
            "plan_activated_at": now,
            "plan_expires_at": None,
            "updated_at": now,
        }
        if not plan.is_unlimited:
            values["tokens_remaining"] = plan.tokens_per_month
        session.execute(
            update(token_balances).where(token_balances.c.user_id == user_id).values(**values)
        )

        if plan.is_unlimited:
            amount, balance_after = 0, None
        else:
            balance_after = plan.tokens_per_month
            amount = balance_after - row.tokens_remaining
        _append_transaction(
            session,
            user_id=user_id,
            tx_type=TokenTransactionType.PLAN_UPGRADE,
            amount=amount,
            balance_after=balance_after,
            description=f"Plan changed from {row.plan_type} to {plan.type.value}",
            reference_id=None,
            now=now,
        )

        if actor:
            record_admin_audit(
                actor=actor,
                action="token_plan_assigned",
                target_user_id=user_id,
                target_resource=plan.type.value,
                payload={"previous_plan": row.plan_type, "amount": amount},
                session=session,
            )

        log_event(
            "info",
            "ledger.plan_assigned",
            user_id=user_id,
            event_type="ledger.plan_assigned",
            extra={"plan_type": plan.type.value, "previous_plan": row.plan_type, "amount": amount},
        )
        return _row_to_balance(_load_row(session, user_id))


def admin_adjust(
    user_id: str,
    amount: int,
    *,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TokenTransaction:
    """
    Operator adjustment. Positive amounts credit, negative amounts debit.

    Both directions are ADMIN_ADJUSTMENT entries and are audited.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise ValidationError("Adjustment must be a non-zero integer", reason="invalid_amount")

    description = reason or ("Admin credit" if amount > 0 else "Admin deduction")
    with get_db_session() as session:
        if amount > 0:
            entry = credit_in_session(session, user_id, amount, TokenTransactionType.ADMIN_ADJUSTMENT, description, None, now)
            action = "tokens_added"
        else:
            entry = debit_in_session(session, user_id, -amount, TokenTransactionType.ADMIN_ADJUSTMENT, description, None, now)
            action = "tokens_deducted"
        record_admin_audit(
            actor=actor,
            action=action,
            target_user_id=user_id,
            target_resource=entry.id,
            payload={"amount": amount, "reason": reason},
            session=session,
        )
        return entry


def admin_reset(user_id: str, *, actor: str, now: Optional[datetime] = None) -> TokenTransaction:
    """Force a monthly reset now, regardless of the schedule."""
    now = now or utc_now()
    with get_db_session() as session:
        row = _load_unlapsed(session, user_id, now)
        entry = _reset(session, row, now, force=True)
        if entry is None:
            # Lost a race with a concurrent reset; the balance is already fresh
            raise ConflictError("Balance was reset concurrently, retry")
        record_admin_audit(
            actor=actor,
            action="tokens_reset",
            target_user_id=user_id,
            target_resource=entry.id,
            payload={"amount": entry.amount},
            session=session,
        )
        return entry
