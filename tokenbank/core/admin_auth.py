"""
Operator authentication.

Supports:
- Bearer JWT with role ADMIN (preferred)
- X-User-Role: ADMIN header when no JWT_SECRET is configured (development)
- Legacy X-Admin-Key: shared secret, blocked in prod unless ALLOW_LEGACY_ADMIN_KEY

All operator actions are audited with the actor identity produced here.
"""
import hashlib
import os
from typing import Optional

from fastapi import Request

from tokenbank.core.auth import Actor, ROLE_ADMIN, resolve_actor
from tokenbank.core.config import settings
from tokenbank.core.errors import UnauthorizedError


def get_admin_api_key() -> Optional[str]:
    """Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY."""
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def _legacy_key_allowed() -> bool:
    if settings.ENVIRONMENT.lower() != "prod":
        return True
    return os.getenv("ALLOW_LEGACY_ADMIN_KEY", "").lower() in {"1", "true", "yes"}


def verify_legacy_key(request: Request) -> Optional[Actor]:
    """Returns an operator Actor for a valid X-Admin-Key header, else None."""
    expected_key = get_admin_api_key()
    if not expected_key or not _legacy_key_allowed():
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or header_key != expected_key:
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return Actor(user_id=f"legacy:{key_hash}", role=ROLE_ADMIN, auth_mechanism="x_admin_key")


def get_operator_actor(request: Request) -> Optional[Actor]:
    """Authenticated operator or None (does not raise for non-operators)."""
    actor = resolve_actor(request)
    if actor is not None and actor.is_operator:
        return actor
    return verify_legacy_key(request)


def require_operator(request: Request) -> Actor:
    """
    FastAPI dependency: require operator privilege.

    Usage:
        @router.post("/admin/{payment_id}/approve")
        def approve(payment_id: str, actor: Actor = Depends(require_operator)):
            ...
    """
    actor = get_operator_actor(request)
    if actor is None:
        raise UnauthorizedError("Operator privilege required")
    return actor
