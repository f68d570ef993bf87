"""
reelpoints/models/catalog.py

Read-only catalog models (content items and their chapter tree).

Rows are owned by the catalog CRUD surface; the engine only reads them.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class Content(BaseModel):
    """A course or short. One-time payment unlocks every chapter at content scope."""
    model_config = ConfigDict(frozen=True)

    id: int
    family: str
    title: str = ""
    uploader_id: Optional[int] = None
    one_time_payment: bool = False
    one_time_point: int = 0
    view_count: int = 0

    @property
    def has_content_price(self) -> bool:
        return self.one_time_payment and self.one_time_point > 0


class Chapter(BaseModel):
    """
    A chapter is either top-level or a leaf under a top-level group.

    select_total_points/total_points are only meaningful on a top-level chapter:
    when set, buying the group unlocks all its leaves and leaf points are ignored.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    content_id: int
    parent_id: Optional[int] = None
    title: str = ""
    points: int = 0
    select_total_points: bool = False
    total_points: int = 0
    video_url: Optional[str] = None
    sort_order: int = 0

    @property
    def is_top_level(self) -> bool:
        return self.parent_id is None

    @property
    def sells_bundle(self) -> bool:
        return self.is_top_level and self.select_total_points and self.total_points > 0
