"""
reelpoints/models/entitlement.py

Entitlement (order) record: durable proof that a user may access a scope.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PurchaseScope(str, Enum):
    """Granularity of a purchase."""
    CONTENT = "content"
    PARENT = "parent"
    LEAF = "leaf"


class Entitlement(BaseModel):
    """
    chapter_id None means content-wide (one-time payment).
    points_charged is 0 for free and owner grants.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    family: str
    user_id: int
    content_id: int
    chapter_id: Optional[int]
    scope: PurchaseScope
    points_charged: int
    created_at: Optional[datetime] = None
