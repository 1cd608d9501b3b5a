"""
Health and diagnostics API.

Lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from tokenbank.core.database import check_connection, get_engine
from tokenbank.core.logging import latency_bucket_ms, get_request_id

logger = logging.getLogger("tokenbank")

router = APIRouter(prefix="/api/health", tags=["health"])

REQUIRED_TABLES = [
    "app_users",
    "token_balances",
    "token_transactions",
    "payment_transactions",
    "admin_audit",
]


class DBHealth(BaseModel):
    connected: bool
    latency_ms: Optional[float] = None  # None when `now` is pinned (tests)
    tables_missing: List[str] = []


class HealthResponse(BaseModel):
    ok: bool
    db: DBHealth
    computed_at: str  # UTC ISO format


@router.get("", response_model=HealthResponse)
def health(now: Optional[str] = Query(None, description="Pinned timestamp for deterministic tests")):
    """Liveness plus database connectivity and schema presence."""
    start = time.perf_counter()
    is_connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    missing: List[str] = []
    if is_connected:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]

    ok = is_connected and not missing
    logger.info(
        "health.check",
        extra={
            "request_id": get_request_id(),
            "ok": ok,
            "latency_bucket": latency_bucket_ms(latency_ms if now is None else None),
        },
    )
    response = HealthResponse(
        ok=ok,
        db=DBHealth(
            connected=is_connected,
            latency_ms=None if now else latency_ms,
            tables_missing=missing,
        ),
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
    if not ok:
        return JSONResponse(status_code=503, content=response.model_dump())
    return response
