"""
Auth utilities for the tokenbank API.

Validates bearer JWTs (HS256, JWT_SECRET) carrying `sub` and `role` and
builds the Actor that the services authorize against.
Falls back to X-User-Id / X-User-Role headers when no JWT_SECRET is
configured (local development and tests).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

import jwt
import logging
from fastapi import Header, HTTPException, Request

from tokenbank.core.config import settings
from tokenbank.core.logging import bind_user_id

logger = logging.getLogger("tokenbank")

ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller: a platform user or an operator."""
    user_id: str
    role: str = ROLE_USER
    auth_mechanism: Literal["jwt", "header", "x_admin_key", "system"] = "jwt"

    @property
    def is_operator(self) -> bool:
        return self.role == ROLE_ADMIN


SYSTEM_ACTOR = Actor(user_id="system_job", role=ROLE_ADMIN, auth_mechanism="system")


def create_access_token(user_id: str, role: str = ROLE_USER, expires_in: timedelta = timedelta(hours=12)) -> str:
    """Issue an HS256 token. Used by the login flow and by tests."""
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET is not configured")
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "role": role, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Verify a bearer token and return its claims.

    Raises:
        HTTPException 401: Invalid, expired or subject-less token
    """
    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return claims


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def resolve_actor(request: Request) -> Optional[Actor]:
    """
    Build the Actor for a request without raising for missing credentials.

    Priority:
    1. Bearer JWT (when JWT_SECRET is configured)
    2. X-User-Id header, with X-User-Role honoured only when no JWT_SECRET is set
    """
    token = _bearer_token(request)
    if token and settings.JWT_SECRET:
        claims = decode_access_token(token)
        role = str(claims.get("role") or ROLE_USER).upper()
        return Actor(user_id=claims["sub"], role=role, auth_mechanism="jwt")

    x_user_id = request.headers.get("X-User-Id", "").strip()
    if x_user_id:
        role = ROLE_USER
        if not settings.JWT_SECRET:
            role = request.headers.get("X-User-Role", ROLE_USER).strip().upper() or ROLE_USER
        return Actor(user_id=x_user_id, role=role, auth_mechanism="header")

    return None


async def get_current_actor(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test user ID"),
) -> Actor:
    """
    FastAPI dependency: authenticated caller.

    The user (and its FREE balance) is created on first sight.

    Raises:
        HTTPException 401: Missing authentication
    """
    actor = resolve_actor(request)
    if actor is None:
        raise HTTPException(
            status_code=401,
            detail="Missing Authorization (Bearer JWT) or X-User-Id header",
        )

    if actor.auth_mechanism in ("jwt", "header"):
        from tokenbank.features.users.service import get_or_create_user
        get_or_create_user(actor.user_id)

    bind_user_id(actor.user_id)
    return actor

