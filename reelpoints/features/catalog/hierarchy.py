"""
Content hierarchy read accessors.

Reads always go through the caller's session, so purchase decisions see the
same snapshot as the transaction that acts on them. Nothing is cached.
"""
from __future__ import annotations

from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from reelpoints.core.errors import NotFoundError
from reelpoints.features.catalog.families import ContentFamily
from reelpoints.models.catalog import Chapter, Content


def _to_content(family: ContentFamily, row) -> Content:
    m = row._mapping
    return Content(
        id=m["id"],
        family=family.name,
        title=m["title"] or "",
        uploader_id=m["uploader_id"],
        one_time_payment=bool(m["one_time_payment"]),
        one_time_point=int(m["one_time_point"] or 0),
        view_count=int(m["view_count"] or 0),
    )


def _to_chapter(row) -> Chapter:
    m = row._mapping
    return Chapter(
        id=m["id"],
        content_id=m["content_id"],
        parent_id=m["parent_id"],
        title=m["title"] or "",
        points=int(m["points"] or 0),
        select_total_points=bool(m["select_total_points"]),
        total_points=int(m["total_points"] or 0),
        video_url=m["video_url"],
        sort_order=int(m["sort_order"] or 0),
    )


def get_content(db: Session, family: ContentFamily, content_id: int) -> Optional[Content]:
    contents = family.tables.contents
    row = db.execute(select(contents).where(contents.c.id == content_id)).first()
    return _to_content(family, row) if row else None


def get_chapter(db: Session, family: ContentFamily, chapter_id: int) -> Optional[Chapter]:
    chapters = family.tables.chapters
    row = db.execute(select(chapters).where(chapters.c.id == chapter_id)).first()
    return _to_chapter(row) if row else None


def get_parent(db: Session, family: ContentFamily, chapter_id: int) -> Optional[Chapter]:
    """Parent group of a leaf chapter; None for top-level chapters."""
    chapter = get_chapter(db, family, chapter_id)
    if chapter is None or chapter.parent_id is None:
        return None
    parent = get_chapter(db, family, chapter.parent_id)
    if parent is None or parent.content_id != chapter.content_id:
        return None
    return parent


def list_chapters(db: Session, family: ContentFamily, content_id: int) -> List[Chapter]:
    chapters = family.tables.chapters
    rows = db.execute(
        select(chapters)
        .where(chapters.c.content_id == content_id)
        .order_by(chapters.c.sort_order, chapters.c.id)
    ).fetchall()
    return [_to_chapter(row) for row in rows]


def require_content_and_chapter(
    db: Session, family: ContentFamily, content_id: int, chapter_id: int
) -> Tuple[Content, Chapter]:
    """Load both records, rejecting a chapter that belongs to another content item."""
    content = get_content(db, family, content_id)
    chapter = get_chapter(db, family, chapter_id)
    if content is None or chapter is None or chapter.content_id != content.id:
        raise NotFoundError(f"{family.name} {content_id} or chapter {chapter_id} not found")
    return content, chapter
