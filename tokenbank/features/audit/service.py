import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select

from tokenbank.core.database import admin_audit, get_db_session, utc_now
from tokenbank.core.logging import truncate_value

logger = logging.getLogger("tokenbank")


def record_admin_audit(
    *,
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    session=None,
) -> None:
    """
    Record an operator action in the audit log.

    Pass `session` to write inside the caller's transaction, so the audit
    row commits or rolls back together with the action it describes.
    Payload values are truncated; secrets must never be passed in.
    """
    payload_json = None
    if payload:
        payload_json = json.dumps({k: truncate_value(v) for k, v in payload.items()}, default=str)

    stmt = insert(admin_audit).values(
        actor=actor,
        action=action,
        target_user_id=target_user_id,
        target_resource=target_resource,
        payload_json=payload_json,
        created_at=utc_now(),
    )
    if session is not None:
        session.execute(stmt)
    else:
        with get_db_session() as own_session:
            own_session.execute(stmt)
    logger.info(
        "admin.audit",
        extra={"actor": actor, "action": action, "target_user_id": target_user_id, "target_resource": target_resource},
    )


def list_admin_audit(
    target_user_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 100,
) -> List[dict]:
    """Audit rows, newest first."""
    limit = min(limit, 500)
    with get_db_session() as session:
        query = select(admin_audit)
        if target_user_id:
            query = query.where(admin_audit.c.target_user_id == target_user_id)
        if action:
            query = query.where(admin_audit.c.action == action)
        query = query.order_by(admin_audit.c.created_at.desc(), admin_audit.c.id.desc()).limit(limit)
        rows = session.execute(query).fetchall()
        return [
            {
                "id": r.id,
                "actor": r.actor,
                "action": r.action,
                "target_user_id": r.target_user_id,
                "target_resource": r.target_resource,
                "payload": json.loads(r.payload_json) if r.payload_json else None,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]
