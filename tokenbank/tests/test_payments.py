"""Tests for the manual payment lifecycle."""
import random
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError

from tokenbank.core.auth import Actor
from tokenbank.core.database import get_db_session, payment_transactions
from tokenbank.core.errors import (
    ConflictError,
    InvalidQuantityError,
    InvalidStateError,
    NotFoundError,
    PaymentSlotsExhaustedError,
    UnauthorizedError,
    ValidationError,
)
from tokenbank.features.audit.service import list_admin_audit
from tokenbank.features.payments import service as payments
from tokenbank.features.tokens import ledger
from tokenbank.models.payment import PaymentMethod, PaymentStatus, SettlementOutcome
from tokenbank.models.plan import Grade, PlanType
from tokenbank.models.token_transaction import TokenTransactionType


def _create(uid, plan=PlanType.P, now=None, **kwargs):
    return payments.create_payment(uid, plan, PaymentMethod.HUMO, now=now, rng=random.Random(7), **kwargs)


def test_create_payment_prices_and_schedules(make_user, now):
    uid = make_user()
    payment = _create(uid, PlanType.PM, now=now)

    assert payment.status == PaymentStatus.WAITING_PAYMENT
    assert payment.base_amount == Decimal("50000")
    assert 1 <= payment.unique_suffix <= 99
    assert payment.final_amount == Decimal("50000") + Decimal(payment.unique_suffix) / 100
    assert payment.created_at == now
    assert payment.expires_at == now + timedelta(hours=24)
    # Creating a payment never touches the ledger
    assert ledger.get_history(uid) == []


def test_second_pending_payment_conflicts(make_user, now):
    uid = make_user()
    _create(uid, now=now)
    with pytest.raises(ConflictError):
        _create(uid, PlanType.PMD, now=now + timedelta(minutes=1))


def test_cancel_then_create_again(make_user, now):
    uid = make_user()
    first = _create(uid, now=now)
    cancelled = payments.cancel_payment(first.id, Actor(user_id=uid), now=now)
    assert cancelled.status == PaymentStatus.CANCELLED

    second = _create(uid, PlanType.PM, now=now + timedelta(minutes=1))
    assert second.status == PaymentStatus.WAITING_PAYMENT


def test_cancel_by_other_user_is_unauthorized(make_user, now):
    owner, other = make_user(), make_user()
    payment = _create(owner, now=now)
    with pytest.raises(UnauthorizedError):
        payments.cancel_payment(payment.id, Actor(user_id=other), now=now)
    assert payments.get_payment(payment.id, now=now).status == PaymentStatus.WAITING_PAYMENT


def test_cancel_terminal_payment_changes_nothing(make_user, now, operator):
    uid = make_user()
    payment = _create(uid, now=now)
    payments.settle_payment(payment.id, SettlementOutcome.REJECTED, operator, now=now)
    with pytest.raises(InvalidStateError):
        payments.cancel_payment(payment.id, Actor(user_id=uid), now=now)
    assert payments.get_payment(payment.id, now=now).status == PaymentStatus.REJECTED


def test_paid_settlement_credits_plan_once(make_user, now, operator):
    uid = make_user()
    payment = _create(uid, PlanType.PM, now=now)

    settled = payments.settle_payment(payment.id, SettlementOutcome.PAID, operator, now=now)
    assert settled.status == PaymentStatus.PAID
    assert settled.settled_by == operator.user_id
    assert settled.tokens_granted == 150_000
    assert settled.assignments_granted == 7
    assert settled.grades_granted == (Grade.PASS, Grade.MERIT)
    assert settled.plan_expires_at == now + timedelta(days=5)

    balance = ledger.get_balance(uid, now=now)
    assert balance.tokens_remaining == 5000 + 150_000
    assert balance.plan_type == PlanType.PM
    assert balance.allowed_grades == (Grade.PASS, Grade.MERIT)
    assert balance.assignments_allowed == 7
    assert balance.assignments_used == 0

    upgrades = [e for e in ledger.get_history(uid) if e.type == TokenTransactionType.PLAN_UPGRADE]
    assert len(upgrades) == 1
    assert upgrades[0].amount == 150_000
    assert upgrades[0].reference_id == payment.id

    with pytest.raises(InvalidStateError):
        payments.settle_payment(payment.id, SettlementOutcome.PAID, operator, now=now)
    with pytest.raises(InvalidStateError):
        payments.settle_payment(payment.id, SettlementOutcome.REJECTED, operator, now=now)
    assert ledger.get_balance(uid, now=now).tokens_remaining == 155_000

    audit = list_admin_audit(target_user_id=uid)
    assert [row["action"] for row in audit] == ["payment_approved"]
    assert audit[0]["target_resource"] == payment.id


def test_rejection_stores_reason_without_credit(make_user, now, operator):
    uid = make_user()
    payment = _create(uid, now=now)
    settled = payments.settle_payment(payment.id, "REJECTED", operator, reason="amount mismatch", now=now)
    assert settled.status == PaymentStatus.REJECTED
    assert settled.rejection_reason == "amount mismatch"
    assert settled.tokens_granted is None
    assert ledger.get_balance(uid, now=now).tokens_remaining == 5000
    assert ledger.get_history(uid) == []


def test_settlement_requires_operator(make_user, now):
    uid = make_user()
    payment = _create(uid, now=now)
    with pytest.raises(UnauthorizedError):
        payments.settle_payment(payment.id, SettlementOutcome.PAID, Actor(user_id=uid), now=now)
    assert payments.get_payment(payment.id, now=now).status == PaymentStatus.WAITING_PAYMENT


def test_settle_unknown_payment(operator):
    with pytest.raises(NotFoundError):
        payments.settle_payment("missing", SettlementOutcome.PAID, operator)


def test_overdue_payment_reads_as_expired(make_user, now, operator):
    uid = make_user()
    payment = _create(uid, now=now)
    later = now + timedelta(hours=25)

    assert payments.get_payment(payment.id, now=later).status == PaymentStatus.EXPIRED
    assert payments.get_active_payment(uid, now=later) is None
    with pytest.raises(InvalidStateError):
        payments.settle_payment(payment.id, SettlementOutcome.PAID, operator, now=later)
    assert ledger.get_balance(uid, now=now).tokens_remaining == 5000


def test_settle_before_expiry_is_observed_wins(make_user, now, operator):
    uid = make_user()
    payment = _create(uid, now=now)
    later = now + timedelta(hours=25)

    settled = payments.settle_payment(payment.id, SettlementOutcome.PAID, operator, now=later)
    assert settled.status == PaymentStatus.PAID
    assert payments.get_payment(payment.id, now=later).status == PaymentStatus.PAID
    assert payments.expire_overdue_payments(now=later) == 0


def test_expired_payment_frees_the_user(make_user, now):
    uid = make_user()
    first = _create(uid, now=now)
    second = _create(uid, PlanType.PMD, now=now + timedelta(hours=24))
    assert second.id != first.id
    assert payments.get_payment(first.id, now=now + timedelta(hours=24)).status == PaymentStatus.EXPIRED


def test_custom_plan_requires_tokens_and_grade(make_user, now):
    uid = make_user()
    with pytest.raises(ValidationError):
        _create(uid, PlanType.CUSTOM, now=now, custom_tokens=30_000)
    with pytest.raises(InvalidQuantityError):
        _create(uid, PlanType.CUSTOM, now=now, custom_tokens=3_000, custom_grade=Grade.DISTINCTION)
    assert payments.get_active_payment(uid, now=now) is None


def test_custom_plan_settlement_grants_one_assignment(make_user, now, operator):
    uid = make_user()
    payment = _create(uid, PlanType.CUSTOM, now=now, custom_tokens=30_000, custom_grade="MERIT")
    assert payment.base_amount == Decimal("30000")
    assert payment.custom_grade == Grade.MERIT

    settled = payments.settle_payment(payment.id, SettlementOutcome.PAID, operator, now=now)
    assert settled.tokens_granted == 30_000
    assert settled.grades_granted == (Grade.MERIT,)
    assert settled.assignments_granted == 1
    assert settled.plan_expires_at == now + timedelta(days=7)

    balance = ledger.get_balance(uid, now=now)
    assert balance.tokens_remaining == 35_000
    assert balance.plan_type == PlanType.CUSTOM


def test_account_plans_are_not_purchasable(make_user, now):
    uid = make_user()
    with pytest.raises(ValidationError):
        _create(uid, PlanType.PRO, now=now)


def test_suffixes_unique_across_pending(make_user, now):
    users = [make_user() for _ in range(6)]
    created = [_create(uid, now=now) for uid in users]
    assert len({p.unique_suffix for p in created}) == len(created)
    assert len({p.final_amount for p in created}) == len(created)


def test_slots_exhausted(make_user, now, monkeypatch):
    monkeypatch.setattr(payments, "SUFFIX_MAX", 2)
    _create(make_user(), now=now)
    _create(make_user(), now=now)
    with pytest.raises(PaymentSlotsExhaustedError):
        _create(make_user(), now=now)


def test_pending_singleton_enforced_by_index(make_user, now):
    uid = make_user()
    payment = _create(uid, now=now)
    with pytest.raises(IntegrityError):
        with get_db_session() as session:
            session.execute(
                insert(payment_transactions).values(
                    id="duplicate",
                    user_id=uid,
                    plan_type="P",
                    payment_method="HUMO",
                    base_amount_minor=3_000_000,
                    unique_suffix=(payment.unique_suffix % 99) + 1,
                    final_amount_minor=3_000_000 + (payment.unique_suffix % 99) + 1,
                    status="WAITING_PAYMENT",
                    created_at=now,
                    expires_at=now + timedelta(hours=24),
                    updated_at=now,
                )
            )


def test_find_payment_by_amount(make_user, now):
    uid = make_user()
    payment = _create(uid, now=now)
    found = payments.find_payment_by_amount(str(payment.final_amount), now=now)
    assert found.id == payment.id
    assert payments.find_payment_by_amount("30000.00", now=now) is None
    assert payments.find_payment_by_amount(payment.final_amount, now=now + timedelta(hours=25)) is None


def test_operator_listings_and_stats(make_user, now, operator):
    paid_user, rejected_user, pending_user = make_user(), make_user(), make_user()
    paid = _create(paid_user, now=now)
    rejected = _create(rejected_user, PlanType.PM, now=now)
    pending = _create(pending_user, PlanType.PMD, now=now)
    payments.settle_payment(paid.id, SettlementOutcome.PAID, operator, now=now)
    payments.settle_payment(rejected.id, SettlementOutcome.REJECTED, operator, now=now)

    stats = payments.payment_stats(now=now)
    assert stats["total"] == 3
    assert stats["by_status"]["PAID"] == 1
    assert stats["by_status"]["REJECTED"] == 1
    assert stats["by_status"]["WAITING_PAYMENT"] == 1
    assert stats["revenue"] == Decimal("30000.00")

    assert [p.id for p in payments.list_pending(now=now)] == [pending.id]

    page = payments.list_payments(page=1, limit=2, now=now)
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}
    assert len(page["payments"]) == 2

    only_paid = payments.list_payments(status="PAID", now=now)
    assert [p.id for p in only_paid["payments"]] == [paid.id]

    with pytest.raises(ValidationError):
        payments.list_payments(status="SETTLED", now=now)


def test_sweep_expires_in_bulk(make_user, now):
    for _ in range(3):
        _create(make_user(), now=now)
    assert payments.expire_overdue_payments(now=now + timedelta(hours=1)) == 0
    assert payments.expire_overdue_payments(now=now + timedelta(hours=24)) == 3
    assert payments.list_pending(now=now + timedelta(hours=24)) == []


def test_history_newest_first(make_user, now):
    uid = make_user()
    first = _create(uid, now=now)
    payments.cancel_payment(first.id, Actor(user_id=uid), now=now)
    second = _create(uid, PlanType.PM, now=now + timedelta(minutes=5))
    history = payments.list_user_payments(uid, now=now + timedelta(minutes=5))
    assert [p.id for p in history] == [second.id, first.id]


def test_instructions_include_card_and_warnings(make_user, now):
    uid = make_user()
    payment = _create(uid, PlanType.CUSTOM, now=now, custom_tokens=20_000, custom_grade=Grade.PASS)
    instructions = payments.payment_instructions(payment)
    assert instructions["card_number"] == "9680 3501 4687 8359"
    assert instructions["amount"] == str(payment.final_amount)
    assert "Pay the EXACT amount shown (including decimal)" in instructions["warnings"]
    assert any("ONE assignment" in w for w in instructions["warnings"])


def test_plan_lapses_back_to_free(make_user, now, operator):
    uid = make_user()
    payment = _create(uid, PlanType.P, now=now)
    payments.settle_payment(payment.id, SettlementOutcome.PAID, operator, now=now)
    ledger.debit(uid, 10_000, TokenTransactionType.ASSIGNMENT_GENERATION, "job", now=now)

    lapsed = ledger.get_balance(uid, now=now + timedelta(days=3, minutes=1))
    assert lapsed.plan_type == PlanType.FREE
    assert lapsed.allowed_grades == (Grade.PASS,)
    assert lapsed.plan_expires_at is None
    assert lapsed.tokens_remaining == 95_000


@pytest.mark.parametrize(
    "plan, extra",
    [
        (PlanType.PM, {}),
        (PlanType.CUSTOM, {"custom_tokens": 30_000, "custom_grade": Grade.MERIT}),
    ],
)
def test_purchased_plan_is_not_refilled_at_month_start(make_user, operator, plan, extra):
    uid = make_user(created_at=datetime(2026, 3, 10, tzinfo=timezone.utc))
    bought_at = datetime(2026, 3, 30, 12, 0, tzinfo=timezone.utc)
    payment = _create(uid, plan, now=bought_at, **extra)
    settled = payments.settle_payment(payment.id, SettlementOutcome.PAID, operator, now=bought_at)

    spendable = ledger.get_balance(uid, now=bought_at).tokens_remaining
    ledger.debit(uid, spendable, TokenTransactionType.ASSIGNMENT_GENERATION, "job", now=bought_at)

    month_start = datetime(2026, 4, 1, 0, 0, 1, tzinfo=timezone.utc)
    balance = ledger.get_balance(uid, now=month_start)
    assert balance.plan_type == plan
    assert balance.tokens_remaining == 0
    assert balance.next_reset_at == settled.plan_expires_at
    assert TokenTransactionType.MONTHLY_RESET not in {e.type for e in ledger.get_history(uid)}

    # Lapse returns to FREE on the calendar schedule without a refill
    lapsed = ledger.get_balance(uid, now=settled.plan_expires_at + timedelta(minutes=1))
    assert lapsed.plan_type == PlanType.FREE
    assert lapsed.tokens_remaining == 0
    assert lapsed.next_reset_at == datetime(2026, 5, 1, tzinfo=timezone.utc)

    refilled = ledger.get_balance(uid, now=datetime(2026, 5, 1, tzinfo=timezone.utc))
    assert refilled.tokens_remaining == 5000


def _run_concurrently(callables):
    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(callables))

    def worker(fn):
        barrier.wait()
        try:
            fn()
            outcome = "ok"
        except (InvalidStateError, ConflictError) as exc:
            outcome = type(exc).__name__
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(fn,)) for fn in callables]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


def test_concurrent_paid_settlements_credit_once(make_user, now, operator):
    uid = make_user()
    payment = _create(uid, PlanType.PMD, now=now)

    outcomes = _run_concurrently(
        [lambda: payments.settle_payment(payment.id, SettlementOutcome.PAID, operator, now=now)] * 8
    )

    assert outcomes.count("ok") == 1
    assert outcomes.count("InvalidStateError") == 7
    upgrades = [e for e in ledger.get_history(uid) if e.type == TokenTransactionType.PLAN_UPGRADE]
    assert len(upgrades) == 1
    assert ledger.get_balance(uid, now=now).tokens_remaining == 5000 + 200_000
    assert [row["action"] for row in list_admin_audit(target_user_id=uid)] == ["payment_approved"]


def test_settle_racing_cancel_has_one_winner(make_user, now, operator):
    uid = make_user()
    payment = _create(uid, PlanType.P, now=now)

    outcomes = _run_concurrently([
        lambda: payments.settle_payment(payment.id, SettlementOutcome.PAID, operator, now=now),
        lambda: payments.cancel_payment(payment.id, Actor(user_id=uid), now=now),
    ])

    assert sorted(outcomes) == ["InvalidStateError", "ok"]
    status = payments.get_payment(payment.id, now=now).status
    upgrades = [e for e in ledger.get_history(uid) if e.type == TokenTransactionType.PLAN_UPGRADE]
    if status == PaymentStatus.PAID:
        assert len(upgrades) == 1
        assert ledger.get_balance(uid, now=now).tokens_remaining == 105_000
    else:
        assert status == PaymentStatus.CANCELLED
        assert upgrades == []
        assert ledger.get_balance(uid, now=now).tokens_remaining == 5000


def test_concurrent_creates_leave_one_pending_payment(make_user, now):
    uid = make_user()

    def create(seed):
        return lambda: payments.create_payment(
            uid, PlanType.P, PaymentMethod.HUMO, now=now, rng=random.Random(seed)
        )

    outcomes = _run_concurrently([create(seed) for seed in range(6)])

    assert outcomes.count("ok") == 1
    assert outcomes.count("ConflictError") == 5
    assert len(payments.list_user_payments(uid, now=now)) == 1
    assert payments.get_active_payment(uid, now=now) is not None
