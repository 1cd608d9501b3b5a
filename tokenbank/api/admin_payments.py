"""
Operator payment endpoints.

Operators match incoming card transfers to pending payments (by the
unique amount) and approve or reject them. Every settlement is audited.
"""
from decimal import Decimal
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tokenbank.api.payments import payment_to_dict
from tokenbank.core.admin_auth import require_operator
from tokenbank.core.auth import Actor
from tokenbank.features.audit.service import record_admin_audit
from tokenbank.features.payments import service as payments
from tokenbank.models.payment import PaymentStatus, SettlementOutcome

router = APIRouter(prefix="/api/payments/admin", tags=["admin-payments"])


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


@router.get("/all")
def list_all_payments(
    status: Optional[PaymentStatus] = None,
    user_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    actor: Actor = Depends(require_operator),
) -> Dict:
    result = payments.list_payments(status=status, user_id=user_id, page=page, limit=limit)
    return {
        "payments": [payment_to_dict(p) for p in result["payments"]],
        "pagination": result["pagination"],
    }


@router.get("/pending")
def list_pending_payments(actor: Actor = Depends(require_operator)) -> Dict:
    pending = payments.list_pending()
    return {"payments": [payment_to_dict(p) for p in pending], "count": len(pending)}


@router.get("/stats")
def get_payment_stats(actor: Actor = Depends(require_operator)) -> Dict:
    stats = payments.payment_stats()
    return {**stats, "revenue": str(stats["revenue"])}


@router.get("/find-by-amount")
def find_by_amount(
    amount: Decimal = Query(..., gt=0, description="Exact transferred amount, e.g. 50000.37"),
    actor: Actor = Depends(require_operator),
) -> Dict:
    payment = payments.find_payment_by_amount(amount)
    return {"payment": payment_to_dict(payment) if payment else None}


@router.post("/expire-old")
def expire_old_payments(actor: Actor = Depends(require_operator)) -> Dict:
    expired = payments.expire_overdue_payments()
    record_admin_audit(
        actor=actor.user_id,
        action="payments_expired",
        payload={"count": expired},
    )
    return {"expired": expired}


@router.get("/{payment_id}")
def get_payment_detail(payment_id: str, actor: Actor = Depends(require_operator)) -> Dict:
    payment = payments.get_payment(payment_id)
    return {"payment": payment_to_dict(payment)}


@router.post("/{payment_id}/approve")
def approve_payment(payment_id: str, actor: Actor = Depends(require_operator)) -> Dict:
    payment = payments.settle_payment(payment_id, SettlementOutcome.PAID, actor)
    return {"payment": payment_to_dict(payment)}


@router.post("/{payment_id}/reject")
def reject_payment(
    payment_id: str,
    body: Optional[RejectRequest] = None,
    actor: Actor = Depends(require_operator),
) -> Dict:
    reason = body.reason if body else None
    payment = payments.settle_payment(payment_id, SettlementOutcome.REJECTED, actor, reason=reason)
    return {"payment": payment_to_dict(payment)}
