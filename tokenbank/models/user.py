"""
tokenbank/models/user.py

Platform user. Each user owns exactly one token balance, created together
with the user row.
"""

import hashlib
import re
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

DISPLAY_NAME_MAX_CHARS = 80
_WHITESPACE = re.compile(r"\s+")


def fallback_handle(user_id: str) -> str:
    """Stable handle for users who never set a display name."""
    digest = hashlib.sha1(user_id.encode("utf-8")).hexdigest()
    return f"student_{digest[-6:]}"


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    display_name: str
    status: str = "active"

    @staticmethod
    def normalized_display_name(user_id: str, display_name: Optional[str] = None) -> str:
        cleaned = _WHITESPACE.sub(" ", display_name or "").strip()
        if not cleaned:
            return fallback_handle(user_id)
        return cleaned[:DISPLAY_NAME_MAX_CHARS]
