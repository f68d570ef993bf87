"""
Entitlement store.

At most one row per (user, content, chapter) and one content-wide row per
(user, content); both are enforced by database constraints so concurrent
writers cannot both succeed. Rows are never updated or deleted here.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reelpoints.features.catalog.families import ContentFamily
from reelpoints.models.entitlement import Entitlement, PurchaseScope

logger = logging.getLogger(__name__)


class DuplicateEntitlementError(Exception):
    """Another writer already recorded this (user, content, chapter) scope."""


def _to_entitlement(family: ContentFamily, row) -> Entitlement:
    m = row._mapping
    return Entitlement(
        id=m["id"],
        family=family.name,
        user_id=m["user_id"],
        content_id=m["content_id"],
        chapter_id=m["chapter_id"],
        scope=PurchaseScope(m["scope"]),
        points_charged=int(m["points_charged"] or 0),
        created_at=m["created_at"],
    )


def find_entitlement(
    db: Session,
    family: ContentFamily,
    user_id: int,
    content_id: int,
    chapter_id: Optional[int],
) -> Optional[Entitlement]:
    """Exact-scope lookup; chapter_id None matches only the content-wide row."""
    table = family.tables.entitlements
    query = select(table).where(table.c.user_id == user_id).where(table.c.content_id == content_id)
    if chapter_id is None:
        query = query.where(table.c.chapter_id.is_(None))
    else:
        query = query.where(table.c.chapter_id == chapter_id)
    row = db.execute(query).first()
    return _to_entitlement(family, row) if row else None


def insert_entitlement(
    db: Session,
    family: ContentFamily,
    *,
    user_id: int,
    content_id: int,
    chapter_id: Optional[int],
    scope: PurchaseScope,
    points_charged: int,
) -> Entitlement:
    """
    Insert a new entitlement row inside the caller's transaction.

    Raises DuplicateEntitlementError when the uniqueness constraints reject the
    row. The caller's transaction is no longer usable after that and must be
    rolled back.
    """
    table = family.tables.entitlements
    try:
        result = db.execute(
            insert(table).values(
                user_id=user_id,
                content_id=content_id,
                chapter_id=chapter_id,
                scope=scope.value,
                points_charged=points_charged,
            )
        )
    except IntegrityError as exc:
        logger.info(
            "[entitlements] duplicate insert rejected",
            extra={
                "family": family.name,
                "user_id": user_id,
                "content_id": content_id,
                "chapter_id": chapter_id,
            },
        )
        raise DuplicateEntitlementError(str(exc.orig)) from exc

    entitlement_id = result.inserted_primary_key[0]
    row = db.execute(select(table).where(table.c.id == entitlement_id)).first()
    return _to_entitlement(family, row)


def has_content_wide_entitlement(db: Session, family: ContentFamily, user_id: int, content_id: int) -> bool:
    return find_entitlement(db, family, user_id, content_id, None) is not None


def list_entitlements(
    db: Session,
    family: ContentFamily,
    *,
    user_id: Optional[int] = None,
    content_id: Optional[int] = None,
    chapter_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Entitlement], int]:
    """
    Filtered page of entitlements, newest first, plus the unpaged total.

    Filters left as None are not applied.
    """
    table = family.tables.entitlements
    conditions = []
    if user_id is not None:
        conditions.append(table.c.user_id == user_id)
    if content_id is not None:
        conditions.append(table.c.content_id == content_id)
    if chapter_id is not None:
        conditions.append(table.c.chapter_id == chapter_id)

    total = db.execute(select(func.count()).select_from(table).where(*conditions)).scalar() or 0
    rows = db.execute(
        select(table)
        .where(*conditions)
        .order_by(table.c.created_at.desc(), table.c.id.desc())
        .limit(limit)
        .offset(offset)
    ).fetchall()
    return [_to_entitlement(family, row) for row in rows], int(total)


def list_user_entitlements(
    db: Session, family: ContentFamily, user_id: int, *, limit: int = 50, offset: int = 0
) -> List[Entitlement]:
    rows, _ = list_entitlements(db, family, user_id=user_id, limit=limit, offset=offset)
    return rows
