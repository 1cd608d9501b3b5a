"""
tokenbank/features/payments/service.py

Manual card-transfer payments.

Lifecycle: WAITING_PAYMENT -> PAID | REJECTED | EXPIRED | CANCELLED (all terminal).

Handles:
- Creating a payment with a unique amount suffix so an operator can match
  the incoming bank transfer to exactly one pending payment
- Lazy expiry on every read path, plus a bulk sweep for the worker
- Owner cancellation and operator settlement
- Operator listings, stats and amount lookup

Every status transition is a compare-and-set UPDATE on `status`, so
settle/expire/cancel races resolve to exactly one winner. A PAID
settlement credits the ledger in the same database transaction.
"""

import random
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, func
from sqlalchemy.exc import IntegrityError

from tokenbank.core.auth import Actor
from tokenbank.core.database import (
    get_db_session,
    payment_transactions,
    utc_now,
    as_utc,
)
from tokenbank.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PaymentSlotsExhaustedError,
    UnauthorizedError,
    ValidationError,
)
from tokenbank.core.logging import log_event
from tokenbank.features.audit.service import record_admin_audit
from tokenbank.features.plans.catalog import CUSTOM_PLAN_WARNING, PlanCatalog, get_catalog
from tokenbank.features.plans.pricing import calculate_custom_price
from tokenbank.features.tokens import ledger
from tokenbank.models.payment import (
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    SettlementOutcome,
)
from tokenbank.models.plan import Grade, PlanType, sort_grades


SUFFIX_MIN = 1
SUFFIX_MAX = 99
MAX_SUFFIX_ATTEMPTS = 3
LIST_MAX_LIMIT = 100

PAYMENT_WARNINGS = (
    "Pay the EXACT amount shown (including decimal)",
    "No refunds after payment",
    "One payment = one plan activation",
    "Manual approval may take up to 12 hours",
    "This is for educational assistance only",
)

_CENT = Decimal("0.01")


# ---------------------------------------------------------------------------
# Amount helpers
# ---------------------------------------------------------------------------

def to_minor(amount: Decimal) -> int:
    """UZS -> tiyin."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(minor: int) -> Decimal:
    """tiyin -> UZS, exact to two places."""
    return (Decimal(minor) / 100).quantize(_CENT)


def _row_to_payment(row) -> PaymentTransaction:
    return PaymentTransaction(
        id=row.id,
        user_id=row.user_id,
        plan_type=row.plan_type,
        payment_method=row.payment_method,
        base_amount=from_minor(row.base_amount_minor),
        unique_suffix=row.unique_suffix,
        final_amount=from_minor(row.final_amount_minor),
        status=row.status,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        custom_tokens=row.custom_tokens,
        custom_grade=row.custom_grade,
        settled_at=as_utc(row.settled_at),
        settled_by=row.settled_by,
        rejection_reason=row.rejection_reason,
        tokens_granted=row.tokens_granted,
        assignments_granted=row.assignments_granted,
        grades_granted=tuple(row.grades_granted) if row.grades_granted is not None else None,
        plan_expires_at=as_utc(row.plan_expires_at),
    )


# ---------------------------------------------------------------------------
# Session-level helpers
# ---------------------------------------------------------------------------

def _expire_overdue(
    session,
    now: datetime,
    *,
    user_id: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> int:
    """WAITING_PAYMENT -> EXPIRED for overdue rows matching the filters."""
    stmt = (
        update(payment_transactions)
        .where(
            payment_transactions.c.status == PaymentStatus.WAITING_PAYMENT.value,
            payment_transactions.c.expires_at <= now,
        )
        .values(status=PaymentStatus.EXPIRED.value, updated_at=now)
    )
    if user_id is not None:
        stmt = stmt.where(payment_transactions.c.user_id == user_id)
    if payment_id is not None:
        stmt = stmt.where(payment_transactions.c.id == payment_id)
    expired = session.execute(stmt).rowcount or 0
    if expired:
        log_event(
            "info",
            "payment.expired",
            user_id=user_id,
            payment_id=payment_id,
            event_type="payment.expired",
            extra={"count": expired},
        )
    return expired


def _load_payment(session, payment_id: str):
    row = session.execute(
        select(payment_transactions).where(payment_transactions.c.id == payment_id)
    ).first()
    if row is None:
        raise NotFoundError(f"Payment not found: {payment_id}", reason="payment_not_found")
    return row


def _pending_for_user(session, user_id: str):
    return session.execute(
        select(payment_transactions).where(
            payment_transactions.c.user_id == user_id,
            payment_transactions.c.status == PaymentStatus.WAITING_PAYMENT.value,
        )
    ).first()


def _pick_suffix(session, rng: random.Random) -> int:
    used = {
        r.unique_suffix
        for r in session.execute(
            select(payment_transactions.c.unique_suffix).where(
                payment_transactions.c.status == PaymentStatus.WAITING_PAYMENT.value
            )
        ).fetchall()
    }
    available = [s for s in range(SUFFIX_MIN, SUFFIX_MAX + 1) if s not in used]
    if not available:
        raise PaymentSlotsExhaustedError("No available payment slots. Please try again later.")
    return rng.choice(available)


def _quote(plan_type: PlanType, custom_tokens: Optional[int], custom_grade, catalog: PlanCatalog):
    """Returns (base_amount, custom_tokens, custom_grade) for a purchase."""
    plan = catalog.get(plan_type)
    if not plan.purchasable:
        raise ValidationError(f"Plan {plan.type.value} cannot be purchased", reason="invalid_plan")

    if plan.is_custom:
        if custom_tokens is None or custom_grade is None:
            raise ValidationError("Custom plan requires token amount and grade")
        try:
            grade = Grade(custom_grade)
        except ValueError:
            raise ValidationError(f"Unknown grade: {custom_grade}", reason="invalid_grade")
        return calculate_custom_price(custom_tokens, grade, catalog), custom_tokens, grade

    return plan.price, None, None


# ---------------------------------------------------------------------------
# User operations
# ---------------------------------------------------------------------------

def create_payment(
    user_id: str,
    plan_type,
    payment_method,
    custom_tokens: Optional[int] = None,
    custom_grade=None,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
    rng: Optional[random.Random] = None,
) -> PaymentTransaction:
    """
    Start a purchase.

    Raises:
        ConflictError: user already has a live pending payment
        PaymentSlotsExhaustedError: all 99 amount suffixes are in use
        InvalidQuantityError: custom quantity below the grade minimum
        ValidationError: unknown plan, method or grade
    """
    catalog = catalog or get_catalog()
    rng = rng or random.SystemRandom()
    try:
        method = PaymentMethod(payment_method)
    except ValueError:
        raise ValidationError(f"Unknown payment method: {payment_method}", reason="invalid_payment_method")

    plan = catalog.get(plan_type)
    base_amount, tokens, grade = _quote(plan.type, custom_tokens, custom_grade, catalog)

    for attempt in range(1, MAX_SUFFIX_ATTEMPTS + 1):
        created_at = now or utc_now()
        payment_id = str(uuid4())
        try:
            with get_db_session() as session:
                _expire_overdue(session, created_at)
                if _pending_for_user(session, user_id) is not None:
                    raise ConflictError("You already have a pending payment. Cancel it or wait for it to expire.")

                suffix = _pick_suffix(session, rng)
                base_minor = to_minor(base_amount)
                session.execute(
                    insert(payment_transactions).values(
                        id=payment_id,
                        user_id=user_id,
                        plan_type=plan.type.value,
                        payment_method=method.value,
                        custom_tokens=tokens,
                        custom_grade=grade.value if grade else None,
                        base_amount_minor=base_minor,
                        unique_suffix=suffix,
                        final_amount_minor=base_minor + suffix,
                        status=PaymentStatus.WAITING_PAYMENT.value,
                        created_at=created_at,
                        expires_at=created_at + catalog.payment_window,
                        updated_at=created_at,
                    )
                )
                row = _load_payment(session, payment_id)
        except IntegrityError:
            # Lost a race on the pending-user or pending-amount index
            with get_db_session() as session:
                if _pending_for_user(session, user_id) is not None:
                    raise ConflictError("You already have a pending payment. Cancel it or wait for it to expire.")
            log_event(
                "warning",
                "payment.suffix_collision",
                user_id=user_id,
                event_type="payment.suffix_collision",
                extra={"attempt": attempt},
            )
            continue

        payment = _row_to_payment(row)
        log_event(
            "info",
            "payment.created",
            user_id=user_id,
            payment_id=payment.id,
            event_type="payment.created",
            extra={
                "plan_type": payment.plan_type.value,
                "final_amount": str(payment.final_amount),
                "expires_at": payment.expires_at.isoformat(),
            },
        )
        return payment

    raise PaymentSlotsExhaustedError("Could not reserve a payment amount. Please try again.")


def cancel_payment(payment_id: str, actor: Actor, *, now: Optional[datetime] = None) -> PaymentTransaction:
    """
    Owner cancels a pending payment.

    Raises:
        NotFoundError: unknown payment
        UnauthorizedError: actor does not own the payment
        InvalidStateError: payment is no longer pending (including lazily expired)
    """
    now = now or utc_now()
    with get_db_session() as session:
        row = _load_payment(session, payment_id)
        if row.user_id != actor.user_id:
            raise UnauthorizedError("You can only cancel your own payments")

        # Lazy expiry commits even when the cancel below is refused
        _expire_overdue(session, now, payment_id=payment_id)

    with get_db_session() as session:
        result = session.execute(
            update(payment_transactions)
            .where(
                payment_transactions.c.id == payment_id,
                payment_transactions.c.status == PaymentStatus.WAITING_PAYMENT.value,
            )
            .values(status=PaymentStatus.CANCELLED.value, updated_at=now)
        )
        row = _load_payment(session, payment_id)
        if result.rowcount == 0:
            raise InvalidStateError(f"Cannot cancel payment in status {row.status}")

    log_event("info", "payment.cancelled", user_id=actor.user_id, payment_id=payment_id, event_type="payment.cancelled")
    return _row_to_payment(row)


def get_payment(payment_id: str, *, now: Optional[datetime] = None) -> PaymentTransaction:
    now = now or utc_now()
    with get_db_session() as session:
        _load_payment(session, payment_id)
        _expire_overdue(session, now, payment_id=payment_id)
        return _row_to_payment(_load_payment(session, payment_id))


def get_payment_for_actor(payment_id: str, actor: Actor, *, now: Optional[datetime] = None) -> PaymentTransaction:
    """Payment detail visible to its owner or an operator."""
    payment = get_payment(payment_id, now=now)
    if payment.user_id != actor.user_id and not actor.is_operator:
        raise UnauthorizedError("You can only view your own payments")
    return payment


def get_active_payment(user_id: str, *, now: Optional[datetime] = None) -> Optional[PaymentTransaction]:
    """The user's live pending payment, if any."""
    now = now or utc_now()
    with get_db_session() as session:
        _expire_overdue(session, now, user_id=user_id)
        row = _pending_for_user(session, user_id)
        return _row_to_payment(row) if row else None


def list_user_payments(user_id: str, limit: int = 50, *, now: Optional[datetime] = None) -> List[PaymentTransaction]:
    """Payment history for a user, newest first."""
    now = now or utc_now()
    limit = max(1, min(limit, LIST_MAX_LIMIT))
    with get_db_session() as session:
        _expire_overdue(session, now, user_id=user_id)
        rows = session.execute(
            select(payment_transactions)
            .where(payment_transactions.c.user_id == user_id)
            .order_by(payment_transactions.c.created_at.desc(), payment_transactions.c.id.desc())
            .limit(limit)
        ).fetchall()
        return [_row_to_payment(r) for r in rows]


def payment_instructions(payment: PaymentTransaction, catalog: Optional[PlanCatalog] = None) -> Dict:
    """What the user needs to make the transfer."""
    catalog = catalog or get_catalog()
    plan = catalog.get(payment.plan_type)
    instructions = {
        "card_number": catalog.payment_card,
        "amount": str(payment.final_amount),
        "amount_formatted": f"{payment.final_amount:,.2f} {catalog.currency}",
        "currency": catalog.currency,
        "payment_method": payment.payment_method.value,
        "plan_name": plan.name,
        "expires_at": payment.expires_at.isoformat(),
        "warnings": list(PAYMENT_WARNINGS),
    }
    if plan.is_custom:
        instructions["warnings"].append(CUSTOM_PLAN_WARNING)
    return instructions


# ---------------------------------------------------------------------------
# Operator operations
# ---------------------------------------------------------------------------

def _grant_for(row, catalog: PlanCatalog):
    """Returns (tokens, assignments, grades, duration_days) a PAID payment grants."""
    plan = catalog.get(row.plan_type)
    if plan.is_custom:
        grades = sort_grades([row.custom_grade]) if row.custom_grade else ()
        return row.custom_tokens, plan.assignments_allowed, grades, plan.duration_days
    return plan.tokens_per_month, plan.assignments_allowed, plan.allowed_grades, plan.duration_days


def settle_payment(
    payment_id: str,
    outcome,
    actor: Actor,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> PaymentTransaction:
    """
    Operator confirms (PAID) or rejects (REJECTED) a pending payment.

    PAID credits the plan allotment as one PLAN_UPGRADE ledger entry and
    switches the user's entitlements, all in the same transaction as the
    status change. Settlement does not apply lazy expiry: an overdue
    payment nobody has read yet can still be settled.

    Raises:
        UnauthorizedError: actor is not an operator
        NotFoundError: unknown payment
        InvalidStateError: payment already left WAITING_PAYMENT
    """
    if not actor.is_operator:
        raise UnauthorizedError("Operator privilege required to settle payments")
    try:
        outcome = SettlementOutcome(outcome)
    except ValueError:
        raise ValidationError(f"Unknown settlement outcome: {outcome}", reason="invalid_outcome")
    catalog = catalog or get_catalog()
    now = now or utc_now()

    with get_db_session() as session:
        row = _load_payment(session, payment_id)
        values = {
            "status": outcome.value,
            "settled_at": now,
            "settled_by": actor.user_id,
            "updated_at": now,
        }
        if outcome == SettlementOutcome.PAID:
            tokens, assignments, grades, duration_days = _grant_for(row, catalog)
            plan_expires_at = now + timedelta(days=duration_days)
            values.update(
                tokens_granted=tokens,
                assignments_granted=assignments,
                grades_granted=[g.value for g in grades],
                plan_expires_at=plan_expires_at,
            )
        else:
            values["rejection_reason"] = reason

        result = session.execute(
            update(payment_transactions)
            .where(
                payment_transactions.c.id == payment_id,
                payment_transactions.c.status == PaymentStatus.WAITING_PAYMENT.value,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            current = _load_payment(session, payment_id)
            raise InvalidStateError(f"Payment is not awaiting settlement (status {current.status})")

        if outcome == SettlementOutcome.PAID:
            ledger.apply_plan_purchase(
                session,
                row.user_id,
                plan_type=row.plan_type,
                tokens=tokens,
                allowed_grades=grades,
                assignments_allowed=assignments,
                plan_expires_at=plan_expires_at,
                reference_id=payment_id,
                description=f"Payment activation: {catalog.get(row.plan_type).name}",
                now=now,
            )

        record_admin_audit(
            actor=actor.user_id,
            action="payment_approved" if outcome == SettlementOutcome.PAID else "payment_rejected",
            target_user_id=row.user_id,
            target_resource=payment_id,
            payload={
                "previous_status": PaymentStatus.WAITING_PAYMENT.value,
                "status": outcome.value,
                "tokens_granted": values.get("tokens_granted"),
                "reason": reason,
            },
            session=session,
        )
        settled = _row_to_payment(_load_payment(session, payment_id))

    log_event(
        "info",
        "payment.settled",
        user_id=settled.user_id,
        payment_id=payment_id,
        event_type="payment.settled",
        extra={"outcome": outcome.value, "settled_by": actor.user_id, "tokens_granted": settled.tokens_granted},
    )
    return settled


def expire_overdue_payments(now: Optional[datetime] = None) -> int:
    """Bulk sweep: expire every overdue pending payment. Returns the count."""
    now = now or utc_now()
    with get_db_session() as session:
        return _expire_overdue(session, now)


def list_payments(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    *,
    now: Optional[datetime] = None,
) -> Dict:
    """Operator listing with filters and pagination."""
    now = now or utc_now()
    page = max(1, page)
    limit = max(1, min(limit, LIST_MAX_LIMIT))
    if status is not None:
        try:
            status = PaymentStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown payment status: {status}", reason="invalid_status")

    with get_db_session() as session:
        _expire_overdue(session, now)
        filters = []
        if status is not None:
            filters.append(payment_transactions.c.status == status.value)
        if user_id:
            filters.append(payment_transactions.c.user_id == user_id)

        total = session.execute(
            select(func.count()).select_from(payment_transactions).where(*filters)
        ).scalar_one()
        rows = session.execute(
            select(payment_transactions)
            .where(*filters)
            .order_by(payment_transactions.c.created_at.desc(), payment_transactions.c.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).fetchall()

    return {
        "payments": [_row_to_payment(r) for r in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


def list_pending(*, now: Optional[datetime] = None) -> List[PaymentTransaction]:
    """Live pending payments, oldest first (the operator's work queue)."""
    now = now or utc_now()
    with get_db_session() as session:
        _expire_overdue(session, now)
        rows = session.execute(
            select(payment_transactions)
            .where(payment_transactions.c.status == PaymentStatus.WAITING_PAYMENT.value)
            .order_by(payment_transactions.c.created_at.asc())
        ).fetchall()
        return [_row_to_payment(r) for r in rows]


def find_payment_by_amount(amount, *, now: Optional[datetime] = None) -> Optional[PaymentTransaction]:
    """Match a bank transfer amount to the live pending payment it pays for."""
    now = now or utc_now()
    try:
        minor = to_minor(Decimal(str(amount)))
    except ArithmeticError:
        raise ValidationError(f"Invalid amount: {amount}", reason="invalid_amount")

    with get_db_session() as session:
        _expire_overdue(session, now)
        row = session.execute(
            select(payment_transactions).where(
                payment_transactions.c.status == PaymentStatus.WAITING_PAYMENT.value,
                payment_transactions.c.final_amount_minor == minor,
            )
        ).first()
        return _row_to_payment(row) if row else None


def payment_stats(*, now: Optional[datetime] = None) -> Dict:
    """Counts per status and revenue from PAID base amounts."""
    now = now or utc_now()
    with get_db_session() as session:
        _expire_overdue(session, now)
        rows = session.execute(
            select(payment_transactions.c.status, func.count())
            .group_by(payment_transactions.c.status)
        ).fetchall()
        revenue_minor = session.execute(
            select(func.coalesce(func.sum(payment_transactions.c.base_amount_minor), 0)).where(
                payment_transactions.c.status == PaymentStatus.PAID.value
            )
        ).scalar_one()

    counts = {status.value: 0 for status in PaymentStatus}
    for status, count in rows:
        counts[status] = count
    return {
        "total": sum(counts.values()),
        "by_status": counts,
        "revenue": from_minor(int(revenue_minor)),
    }
