"""
Order (entitlement) endpoints, shared by both content families.

{family} is the URL segment of a content family: "courses" or "shorts".
"""
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from reelpoints.core.admin_auth import AdminActor, require_admin
from reelpoints.core.auth import Identity, get_current_identity, get_optional_identity
from reelpoints.core.database import get_db
from reelpoints.core.errors import NotFoundError
from reelpoints.features.catalog.families import ContentFamily, get_family
from reelpoints.features.catalog.hierarchy import get_content
from reelpoints.features.entitlements.resolver import AccessStatus, resolve
from reelpoints.features.entitlements.store import (
    has_content_wide_entitlement,
    list_entitlements,
    list_user_entitlements,
)
from reelpoints.features.orders.service import PurchaseResult, purchase, purchase_content
from reelpoints.models.entitlement import Entitlement, PurchaseScope

logger = logging.getLogger(__name__)

router = APIRouter(tags=["orders"])


def family_from_path(family: str) -> ContentFamily:
    return get_family(family)


def _purchase_body(result: PurchaseResult) -> Dict:
    return {
        "orderId": result.order_id,
        "videoUrl": result.video_url,
        "pointsCharged": result.points_charged,
        "scope": result.scope.value,
        "alreadyOwned": result.already_owned,
        "balance": result.balance_after,
    }


def _order_body(row: Entitlement) -> Dict:
    return {
        "orderId": row.id,
        "contentId": row.content_id,
        "chapterId": row.chapter_id,
        "scope": row.scope.value,
        "pointsCharged": row.points_charged,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


@router.get("/{family}/orders/me")
def list_my_orders(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    family: ContentFamily = Depends(family_from_path),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Dict:
    """The caller's entitlements in this family, newest first."""
    rows = list_user_entitlements(db, family, identity.user_id, limit=limit, offset=offset)
    orders = [_order_body(row) for row in rows]
    return {"userId": identity.user_id, "orders": orders, "count": len(orders)}


@router.get("/{family}/{content_id}/order")
def get_content_order(
    content_id: int,
    family: ContentFamily = Depends(family_from_path),
    identity: Optional[Identity] = Depends(get_optional_identity),
    db: Session = Depends(get_db),
) -> Dict:
    """Whether the caller bought the whole content item."""
    content = get_content(db, family, content_id)
    if content is None:
        raise NotFoundError(f"{family.name} {content_id} not found")
    has_purchased = (
        identity is not None
        and has_content_wide_entitlement(db, family, identity.user_id, content_id)
    )
    return {
        "hasPurchased": has_purchased,
        "oneTimePayment": content.has_content_price,
        "points": content.one_time_point if content.has_content_price else None,
    }


@router.post("/{family}/{content_id}/order")
def create_content_order(
    content_id: int,
    family: ContentFamily = Depends(family_from_path),
    identity: Identity = Depends(get_current_identity),
) -> Dict:
    return _purchase_body(purchase_content(family, identity.user_id, content_id))


@router.get("/{family}/{content_id}/chapters/{chapter_id}/order")
def get_chapter_order(
    content_id: int,
    chapter_id: int,
    family: ContentFamily = Depends(family_from_path),
    identity: Optional[Identity] = Depends(get_optional_identity),
    db: Session = Depends(get_db),
) -> Dict:
    """Access check for one chapter. Read-only, anonymous callers allowed."""
    decision = resolve(db, family, identity.user_id if identity else None, content_id, chapter_id)
    body: Dict = {"hasPurchased": decision.granted}
    if decision.free:
        body["isFree"] = True
    if decision.status == AccessStatus.NEEDS_FREE_GRANT:
        body["needsFreeOrder"] = True
    if decision.status == AccessStatus.REQUIRED:
        body["points"] = decision.required_points
        body["scope"] = decision.quote.scope.value
        if decision.quote.scope == PurchaseScope.PARENT:
            body["parentChapterId"] = decision.quote.chapter_id
        body["message"] = decision.message(family)
    else:
        body["videoUrl"] = family.video_url(content_id, decision.chapter)
    return body


@router.post("/{family}/{content_id}/chapters/{chapter_id}/order")
def create_chapter_order(
    content_id: int,
    chapter_id: int,
    family: ContentFamily = Depends(family_from_path),
    identity: Identity = Depends(get_current_identity),
) -> Dict:
    """Buy access to a chapter; repeat calls return the same order without charging."""
    return _purchase_body(purchase(family, identity.user_id, content_id, chapter_id))


@router.get("/admin/{family}/orders")
def list_orders_admin(
    user_id: Optional[int] = Query(None, ge=1),
    content_id: Optional[int] = Query(None, ge=1),
    chapter_id: Optional[int] = Query(None, ge=1),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    family: ContentFamily = Depends(family_from_path),
    actor: AdminActor = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict:
    """Entitlements across all users, optionally filtered by user, content or chapter."""
    rows, total = list_entitlements(
        db,
        family,
        user_id=user_id,
        content_id=content_id,
        chapter_id=chapter_id,
        limit=limit,
        offset=offset,
    )
    logger.info(
        "[orders] admin listing",
        extra={"actor": actor.actor_id, "family": family.name, "user_id": user_id, "total": total},
    )
    orders = [{**_order_body(row), "userId": row.user_id} for row in rows]
    return {"orders": orders, "total": total, "limit": limit, "offset": offset}
