"""
Identity resolution.

Tokens are issued by the external auth service; this module only verifies
them. Priority:
1. Bearer JWT (sub = user id) from the Authorization header
2. X-User-Id header, when ALLOW_HEADER_AUTH is on (dev/tests)
3. Anonymous
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from reelpoints.core.config import settings
from reelpoints.core.database import get_db
from reelpoints.core.errors import UnauthenticatedError
from reelpoints.features.ledger.service import get_user

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: int
    points: int


def _parse_user_id(raw) -> int:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        raise UnauthenticatedError("Invalid user identity")


def verify_jwt(token: str) -> int:
    """
    Verify a Bearer token and return its user id.

    Raises:
        UnauthenticatedError: expired, malformed or unverifiable token
    """
    if not settings.JWT_SECRET_KEY:
        raise UnauthenticatedError("Token authentication is not configured")
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthenticatedError("Invalid token")

    sub = payload.get("sub")
    if sub is None:
        raise UnauthenticatedError("Token has no subject")
    return _parse_user_id(sub)


def get_optional_identity(request: Request, db: Session = Depends(get_db)) -> Optional[Identity]:
    """Resolve the caller, or None for anonymous requests."""
    user_id: Optional[int] = None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:].strip())
    elif settings.ALLOW_HEADER_AUTH and request.headers.get("X-User-Id"):
        user_id = _parse_user_id(request.headers["X-User-Id"])

    if user_id is None:
        return None

    user = get_user(db, user_id)
    if user is None:
        raise UnauthenticatedError("Unknown user")
    return Identity(user_id=user.id, points=user.points)


def get_current_identity(identity: Optional[Identity] = Depends(get_optional_identity)) -> Identity:
    if identity is None:
        raise UnauthenticatedError("Login required")
    return identity
