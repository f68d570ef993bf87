"""
Content families.

A ContentFamily is the capability the engine is parameterized by: it names the
family, points at its tables and supplies the asset store used to turn a
chapter into a playable URL. Courses and shorts share one implementation.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol
from urllib.parse import urlparse

from reelpoints.core.config import settings
from reelpoints.core.database import FAMILY_TABLES, FamilyTables
from reelpoints.core.errors import NotFoundError
from reelpoints.models.catalog import Chapter


class AssetStore(Protocol):
    def video_url(self, content_id: int, chapter: Chapter) -> Optional[str]:
        ...


class ChapterVideoAssetStore:
    """Returns the chapter's stored video URL; relative paths are joined onto base_url."""

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = base_url.rstrip("/") if base_url else None

    def video_url(self, content_id: int, chapter: Chapter) -> Optional[str]:
        url = chapter.video_url
        if not url:
            return None
        if self.base_url and not urlparse(url).scheme:
            return f"{self.base_url}/{url.lstrip('/')}"
        return url


@dataclass(frozen=True)
class ContentFamily:
    name: str
    path: str
    tables: FamilyTables
    asset_store: AssetStore

    def video_url(self, content_id: int, chapter: Chapter) -> Optional[str]:
        return self.asset_store.video_url(content_id, chapter)


def _build_families() -> Dict[str, ContentFamily]:
    store = ChapterVideoAssetStore(settings.ASSET_BASE_URL)
    return {
        "courses": ContentFamily("course", "courses", FAMILY_TABLES["course"], store),
        "shorts": ContentFamily("short", "shorts", FAMILY_TABLES["short"], store),
    }


FAMILIES: Dict[str, ContentFamily] = _build_families()


def get_family(key: str) -> ContentFamily:
    """Look up a family by URL path segment ("courses") or name ("course")."""
    family = FAMILIES.get(key)
    if family is not None:
        return family
    for candidate in FAMILIES.values():
        if candidate.name == key:
            return candidate
    raise NotFoundError(f"Unknown content family: {key}")
