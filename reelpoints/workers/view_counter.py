"""
View counter.

Incrementing a content item's view_count is a best-effort side effect of a
successful purchase: it runs after commit, inline or through an RQ queue, and
its failure never reaches the buyer.

Run a worker with: rq worker -u redis://localhost:6379 views
or: python -m reelpoints.workers.view_counter
"""
import logging
from functools import lru_cache

from redis import Redis
from rq import Queue, Worker
from sqlalchemy import update

from reelpoints.core.config import settings
from reelpoints.core.database import get_db_session
from reelpoints.core.metrics import view_count_failures_total
from reelpoints.features.catalog.families import get_family

logger = logging.getLogger("reelpoints")

QUEUE_NAME = "views"


@lru_cache(maxsize=1)
def get_queue() -> Queue:
    return Queue(QUEUE_NAME, connection=Redis.from_url(settings.REDIS_URL))


def increment_view_count(family_name: str, content_id: int) -> None:
    """RQ job: add one view to a content item in its own transaction."""
    contents = get_family(family_name).tables.contents
    with get_db_session() as db:
        db.execute(
            update(contents)
            .where(contents.c.id == content_id)
            .values(view_count=contents.c.view_count + 1)
        )


def record_view(family_name: str, content_id: int) -> None:
    """Count a view without ever failing the caller."""
    try:
        if settings.VIEW_COUNT_QUEUE_ENABLED:
            get_queue().enqueue(increment_view_count, family_name, content_id, result_ttl=0)
        else:
            increment_view_count(family_name, content_id)
    except Exception as e:
        view_count_failures_total.inc(labels={"family": family_name})
        logger.warning(
            f"[views] increment failed: {e}",
            extra={"family": family_name, "content_id": content_id},
        )


if __name__ == "__main__":
    from reelpoints.core.logging import configure_logging

    configure_logging(settings.ENV)
    queue = get_queue()
    logger.info("Starting RQ view counter worker.")
    Worker([queue], connection=queue.connection).work()
