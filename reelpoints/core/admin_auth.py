"""
Admin authentication: shared X-Admin-Key.

Admin actions are audited with a non-reversible actor id derived from the key.
"""
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from reelpoints.core.config import settings
from reelpoints.core.errors import AppError, PermissionError


@dataclass(frozen=True)
class AdminActor:
    actor_id: str
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> Optional[str]:
    """ADMIN_API_KEY env var wins over settings.ADMIN_KEY."""
    return os.getenv("ADMIN_API_KEY") or settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    expected = get_admin_api_key()
    provided = request.headers.get("X-Admin-Key", "").strip()
    if not expected or not provided or not hmac.compare_digest(provided, expected):
        return None
    return AdminActor(actor_id=f"admin:{hashlib.sha256(provided.encode()).hexdigest()[:16]}")


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency for admin-only routes."""
    if not get_admin_api_key():
        raise AppError(
            "Admin authentication not configured",
            code="admin_auth_unconfigured",
            status_code=503,
        )
    actor = verify_admin_key(request)
    if actor is None:
        raise PermissionError("Invalid or missing admin credentials")
    return actor
