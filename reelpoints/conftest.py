# reelpoints/conftest.py
import os
import tempfile
from pathlib import Path

import pytest

# Settings are read at import time, so the test environment goes in first
_TEST_DB_DIR = tempfile.mkdtemp(prefix="reelpoints-tests-")
os.environ["ENV"] = "test"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{Path(_TEST_DB_DIR) / 'reelpoints.db'}"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-for-reelpoints-suite-0001"
os.environ["ADMIN_KEY"] = "test-admin-key"
os.environ["VIEW_COUNT_QUEUE_ENABLED"] = "false"
os.environ["ALLOW_HEADER_AUTH"] = "true"
os.environ.pop("ADMIN_API_KEY", None)

from sqlalchemy import insert  # noqa: E402

from reelpoints.core.database import (  # noqa: E402
    FAMILY_TABLES,
    create_all_tables,
    get_db,
    get_engine,
    metadata,
    users,
)
from reelpoints.core.metrics import METRICS  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all tables once per test session."""
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Empty every table (children first) so each test starts clean."""
    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())
    METRICS.reset()
    yield


@pytest.fixture
def db_session():
    """Get database session."""
    db = next(get_db())
    try:
        yield db
    finally:
        db.close()


class Seeder:
    """Inserts catalog and user rows the way the catalog CRUD surface would."""

    def __init__(self, engine):
        self.engine = engine

    def _insert(self, table, **values) -> int:
        with self.engine.begin() as conn:
            return conn.execute(insert(table).values(**values)).inserted_primary_key[0]

    def user(self, points: int = 0, display_name: str = None) -> int:
        return self._insert(users, points=points, display_name=display_name)

    def content(self, family: str = "short", **values) -> int:
        values.setdefault("title", "Test content")
        return self._insert(FAMILY_TABLES[family].contents, **values)

    def chapter(self, content_id: int, family: str = "short", **values) -> int:
        values.setdefault("title", "Chapter")
        return self._insert(FAMILY_TABLES[family].chapters, content_id=content_id, **values)

    def entitlement(self, user_id: int, content_id: int, chapter_id=None, family: str = "short", **values) -> int:
        values.setdefault("scope", "leaf" if chapter_id is not None else "content")
        values.setdefault("points_charged", 0)
        return self._insert(
            FAMILY_TABLES[family].entitlements,
            user_id=user_id,
            content_id=content_id,
            chapter_id=chapter_id,
            **values,
        )


@pytest.fixture
def seed():
    return Seeder(get_engine())
