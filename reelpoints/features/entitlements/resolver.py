"""
reelpoints/features/entitlements/resolver.py

Entitlement resolver: read-only access decision for (user, content, chapter).

Resolution priority, first match wins:
1. Free chapter (its own points are 0)
2. Content-wide entitlement
3. Owner bypass
4. Group (parent bundle) pricing
5. Content-wide pricing
6. Leaf pricing

Every decision also carries the price quote the purchase path would charge,
so the orchestrator never re-derives pricing on its own.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

from sqlalchemy.orm import Session

from reelpoints.features.catalog.families import ContentFamily
from reelpoints.features.catalog.hierarchy import get_parent, require_content_and_chapter
from reelpoints.features.entitlements.store import find_entitlement
from reelpoints.models.catalog import Chapter, Content
from reelpoints.models.entitlement import Entitlement, PurchaseScope


logger = logging.getLogger(__name__)


class AccessStatus(str, Enum):
    """Outcome of an access check."""
    GRANTED = "GRANTED"
    NEEDS_FREE_GRANT = "NEEDS_FREE_GRANT"
    REQUIRED = "REQUIRED"


class GrantReason(str, Enum):
    FREE = "free"
    CONTENT = "content"
    OWNER = "owner"
    PARENT = "parent"
    LEAF = "leaf"


@dataclass(frozen=True)
class PriceQuote:
    """Scope a purchase would record and its price. chapter_id is None for content scope."""
    scope: PurchaseScope
    chapter_id: Optional[int]
    points: int


@dataclass(frozen=True)
class AccessDecision:
    status: AccessStatus
    content: Content
    chapter: Chapter
    quote: PriceQuote
    reason: Optional[GrantReason] = None
    free: bool = False
    entitlement: Optional[Entitlement] = None

    @property
    def granted(self) -> bool:
        return self.status == AccessStatus.GRANTED

    @property
    def required_points(self) -> Optional[int]:
        return self.quote.points if self.status == AccessStatus.REQUIRED else None

    def message(self, family: ContentFamily) -> Optional[str]:
        if self.status != AccessStatus.REQUIRED:
            return None
        points = self.quote.points
        if self.quote.scope == PurchaseScope.PARENT:
            return f"This chapter is sold with its group: {points} points required"
        if self.quote.scope == PurchaseScope.CONTENT:
            return f"This {family.name} is sold as a whole: {points} points required"
        return f"{points} points required to unlock this chapter"


def quote_price(content: Content, chapter: Chapter, parent: Optional[Chapter]) -> PriceQuote:
    """
    Effective price of a chapter.

    A group bundle (the parent, or the chapter itself when it is a top-level
    group) beats content-wide pricing, which beats the leaf's own points.
    """
    group = parent if parent is not None else chapter
    if group.sells_bundle:
        return PriceQuote(PurchaseScope.PARENT, group.id, group.total_points)
    if content.has_content_price:
        return PriceQuote(PurchaseScope.CONTENT, None, content.one_time_point)
    return PriceQuote(PurchaseScope.LEAF, chapter.id, chapter.points)


def resolve(
    db: Session,
    family: ContentFamily,
    user_id: Optional[int],
    content_id: int,
    chapter_id: int,
) -> AccessDecision:
    """
    Decide whether user_id (None = anonymous) may watch chapter_id.

    Raises NotFoundError when the content or chapter is missing, or the chapter
    belongs to another content item. Never writes.
    """
    content, chapter = require_content_and_chapter(db, family, content_id, chapter_id)
    parent = get_parent(db, family, chapter.id) if chapter.parent_id is not None else None
    if chapter.points == 0:
        # Free chapters are granted at leaf scope whatever the surrounding pricing
        quote = PriceQuote(PurchaseScope.LEAF, chapter.id, 0)
    else:
        quote = quote_price(content, chapter, parent)

    def decide(status: AccessStatus, **kwargs) -> AccessDecision:
        decision = AccessDecision(status=status, content=content, chapter=chapter, quote=quote, **kwargs)
        logger.info(
            f"[resolver] {status.value}",
            extra={
                "family": family.name,
                "user_id": user_id,
                "content_id": content.id,
                "chapter_id": chapter.id,
                "scope": quote.scope.value,
                "points": quote.points,
                "reason": decision.reason.value if decision.reason else None,
            },
        )
        return decision

    # 1. Free chapter
    if chapter.points == 0:
        if user_id is None:
            return decide(AccessStatus.GRANTED, reason=GrantReason.FREE, free=True)
        existing = find_entitlement(db, family, user_id, content.id, chapter.id)
        if existing is not None:
            return decide(AccessStatus.GRANTED, reason=GrantReason.FREE, free=True, entitlement=existing)
        return decide(AccessStatus.NEEDS_FREE_GRANT, free=True)

    # Anonymous callers hold no entitlements and own nothing
    if user_id is None:
        return decide(AccessStatus.REQUIRED)

    # 2. Content-wide purchase
    content_wide = find_entitlement(db, family, user_id, content.id, None)
    if content_wide is not None:
        return decide(AccessStatus.GRANTED, reason=GrantReason.CONTENT, entitlement=content_wide)

    # 3. Owner bypass
    if content.uploader_id is not None and content.uploader_id == user_id:
        existing = None
        if quote.chapter_id is not None:
            existing = find_entitlement(db, family, user_id, content.id, quote.chapter_id)
        return decide(AccessStatus.GRANTED, reason=GrantReason.OWNER, free=True, entitlement=existing)

    # 4. Group purchase
    if quote.scope == PurchaseScope.PARENT:
        group_row = find_entitlement(db, family, user_id, content.id, quote.chapter_id)
        if group_row is not None:
            return decide(AccessStatus.GRANTED, reason=GrantReason.PARENT, entitlement=group_row)
        return decide(AccessStatus.REQUIRED)

    # 5. Content-wide pricing, not yet bought (rule 2 found no row)
    if quote.scope == PurchaseScope.CONTENT:
        return decide(AccessStatus.REQUIRED)

    # 6. Leaf purchase
    leaf_row = find_entitlement(db, family, user_id, content.id, chapter.id)
    if leaf_row is not None:
        return decide(AccessStatus.GRANTED, reason=GrantReason.LEAF, entitlement=leaf_row)
    return decide(AccessStatus.REQUIRED)
