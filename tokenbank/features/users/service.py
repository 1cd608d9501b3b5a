"""
User domain service.
- get_or_create_user(user_id): creates the user and a FREE token balance together
- get_user(user_id)
- list_users_without_balance(): users the bootstrap worker still has to initialize
"""

from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError

from tokenbank.core.database import get_db_session, users as app_users, token_balances, utc_now, as_utc
from tokenbank.core.logging import log_event
from tokenbank.features.tokens.ledger import insert_balance
from tokenbank.models.user import User


def normalize_display_name(user_id: str, display_name: Optional[str]) -> str:
    return User.normalized_display_name(user_id, display_name)


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        created_at=as_utc(row.created_at),
        display_name=row.display_name or normalize_display_name(row.user_id, None),
        status=row.status,
    )


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_user(row)


def get_or_create_user(user_id: str, display_name: Optional[str] = None, now: Optional[datetime] = None) -> User:
    existing = get_user(user_id)
    if existing:
        return existing

    now = now or utc_now()
    display = normalize_display_name(user_id, display_name)
    try:
        with get_db_session() as session:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    display_name=display,
                    status="active",
                    created_at=now,
                )
            )
            insert_balance(session, user_id, now)
    except IntegrityError:
        # Concurrent first request created the user
        created = get_user(user_id)
        if created is None:
            raise
        return created

    log_event("info", "user.created", user_id=user_id, event_type="user.created")
    return User(user_id=user_id, created_at=now, display_name=display, status="active")


def list_users_without_balance(limit: int = 500) -> List[str]:
    with get_db_session() as session:
        rows = session.execute(
            select(app_users.c.user_id)
            .outerjoin(token_balances, token_balances.c.user_id == app_users.c.user_id)
            .where(token_balances.c.user_id.is_(None))
            .order_by(app_users.c.created_at)
            .limit(limit)
        ).fetchall()
        return [r.user_id for r in rows]
