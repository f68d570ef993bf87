"""
Purchase orchestrator.

Turns an access decision into a durable entitlement and a matching debit,
all inside one bounded transaction:

1. Re-resolve access inside the transaction.
2. Already entitled -> return the existing row, charge nothing.
   Owner -> return the existing row at the pricing scope or record a
   zero-cost row there. Free chapter -> the same at leaf scope.
3. Otherwise insert the entitlement first. The uniqueness constraints make the
   insert the arbitration point between concurrent buyers: the loser's insert
   is rejected, its transaction rolls back and it re-resolves to the winner's row.
4. Debit the balance only after the insert succeeded. An insufficient balance
   rolls the insert back with it.
5. After commit, count a view (best-effort).

Transient lock conflicts are retried up to PURCHASE_MAX_ATTEMPTS times and
then surface as TransactionTimeoutError.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from sqlalchemy.orm import Session

from reelpoints.core.config import settings
from reelpoints.core.database import bounded_transaction
from reelpoints.core.errors import (
    InsufficientPointsError,
    NotFoundError,
    TransactionConflictError,
    TransactionTimeoutError,
    UnauthenticatedError,
    ValidationError,
)
from reelpoints.core.logging import log_event
from reelpoints.core.metrics import purchase_conflicts_total, purchases_in_flight, purchases_total
from reelpoints.features.catalog.families import ContentFamily
from reelpoints.features.catalog.hierarchy import get_content
from reelpoints.features.entitlements.resolver import AccessStatus, GrantReason, resolve
from reelpoints.features.entitlements.store import (
    DuplicateEntitlementError,
    find_entitlement,
    insert_entitlement,
)
from reelpoints.features.ledger.service import debit, get_balance
from reelpoints.models.entitlement import Entitlement, PurchaseScope
from reelpoints.workers.view_counter import record_view

logger = logging.getLogger(__name__)

_RETRY_BACKOFF_SECONDS = 0.05


@dataclass(frozen=True)
class PurchaseResult:
    order_id: int
    video_url: Optional[str]
    points_charged: int
    scope: PurchaseScope
    already_owned: bool
    balance_after: int


# (result, outcome label); outcome drives metrics and whether a view is counted
_Outcome = Tuple[PurchaseResult, str]


def _owned(row: Entitlement, video_url: Optional[str], balance: int) -> _Outcome:
    return PurchaseResult(
        order_id=row.id,
        video_url=video_url,
        points_charged=0,
        scope=row.scope,
        already_owned=True,
        balance_after=balance,
    ), "already_owned"


def _charge(
    db: Session,
    family: ContentFamily,
    user_id: int,
    content_id: int,
    scope: PurchaseScope,
    scope_chapter_id: Optional[int],
    price: int,
    video_url: Optional[str],
    requested_chapter_id: Optional[int] = None,
) -> _Outcome:
    row = insert_entitlement(
        db,
        family,
        user_id=user_id,
        content_id=content_id,
        chapter_id=scope_chapter_id,
        scope=scope,
        points_charged=price,
    )
    balance_after = debit(
        db,
        user_id,
        price,
        reason_code=f"{family.name}_{scope.value}_purchase",
        family=family.name,
        content_id=content_id,
        entitlement_id=row.id,
        metadata={"chapter_id": scope_chapter_id, "requested_chapter_id": requested_chapter_id},
    )
    return PurchaseResult(
        order_id=row.id,
        video_url=video_url,
        points_charged=price,
        scope=scope,
        already_owned=False,
        balance_after=balance_after,
    ), "charged"


def _grant_free(
    db: Session,
    family: ContentFamily,
    user_id: int,
    content_id: int,
    scope: PurchaseScope,
    scope_chapter_id: Optional[int],
    video_url: Optional[str],
    outcome: str,
) -> _Outcome:
    row = insert_entitlement(
        db,
        family,
        user_id=user_id,
        content_id=content_id,
        chapter_id=scope_chapter_id,
        scope=scope,
        points_charged=0,
    )
    return PurchaseResult(
        order_id=row.id,
        video_url=video_url,
        points_charged=0,
        scope=scope,
        already_owned=False,
        balance_after=get_balance(db, user_id),
    ), outcome


def _purchase_chapter(
    db: Session, family: ContentFamily, user_id: int, content_id: int, chapter_id: int
) -> _Outcome:
    decision = resolve(db, family, user_id, content_id, chapter_id)
    # Always the requested chapter's asset, whatever scope ends up recorded
    video_url = family.video_url(content_id, decision.chapter)
    quote = decision.quote

    if decision.entitlement is not None:
        return _owned(decision.entitlement, video_url, get_balance(db, user_id))

    if decision.status == AccessStatus.GRANTED and decision.reason == GrantReason.OWNER:
        return _grant_free(db, family, user_id, content_id, quote.scope, quote.chapter_id, video_url, "owner")

    if decision.status == AccessStatus.NEEDS_FREE_GRANT:
        return _grant_free(db, family, user_id, content_id, quote.scope, quote.chapter_id, video_url, "free")

    return _charge(
        db, family, user_id, content_id, quote.scope, quote.chapter_id, quote.points, video_url,
        requested_chapter_id=chapter_id,
    )


def _purchase_content(db: Session, family: ContentFamily, user_id: int, content_id: int) -> _Outcome:
    content = get_content(db, family, content_id)
    if content is None:
        raise NotFoundError(f"{family.name} {content_id} not found")
    if not content.has_content_price:
        raise ValidationError(f"This {family.name} is not sold as a whole")

    existing = find_entitlement(db, family, user_id, content_id, None)
    if existing is not None:
        return _owned(existing, None, get_balance(db, user_id))

    if content.uploader_id is not None and content.uploader_id == user_id:
        return _grant_free(db, family, user_id, content_id, PurchaseScope.CONTENT, None, None, "owner")

    return _charge(db, family, user_id, content_id, PurchaseScope.CONTENT, None, content.one_time_point, None)


def _run(
    family: ContentFamily,
    user_id: int,
    content_id: int,
    chapter_id: Optional[int],
    op: Callable[[Session], _Outcome],
) -> PurchaseResult:
    max_attempts = max(1, settings.PURCHASE_MAX_ATTEMPTS)
    conflicts = 0
    races = 0
    labels = {"family": family.name}
    purchases_in_flight.inc(labels=labels)
    try:
        while True:
            try:
                with bounded_transaction() as db:
                    result, outcome = op(db)
                break
            except DuplicateEntitlementError:
                # A concurrent buyer committed the same scope first; the next pass sees its row
                races += 1
                purchase_conflicts_total.inc(labels=labels)
                if races > max_attempts:
                    raise TransactionTimeoutError("Purchase could not settle, retry shortly")
                logger.info(
                    "[orders] lost insert race, re-resolving",
                    extra={"family": family.name, "user_id": user_id, "content_id": content_id, "chapter_id": chapter_id},
                )
            except TransactionConflictError as exc:
                conflicts += 1
                purchase_conflicts_total.inc(labels=labels)
                log_event(
                    "warning",
                    "[orders] transient conflict",
                    user_id=user_id,
                    family=family.name,
                    content_id=content_id,
                    chapter_id=chapter_id,
                    error_code=exc.code,
                    extra={"attempt": conflicts, "max_attempts": max_attempts},
                )
                if conflicts >= max_attempts:
                    purchases_total.inc(labels={"family": family.name, "scope": "", "outcome": "timeout"})
                    raise TransactionTimeoutError("Purchase timed out under contention, retry shortly") from exc
                time.sleep(_RETRY_BACKOFF_SECONDS * conflicts)
    except InsufficientPointsError as exc:
        purchases_total.inc(labels={"family": family.name, "scope": "", "outcome": "insufficient"})
        log_event(
            "info",
            "[orders] insufficient points",
            user_id=user_id,
            family=family.name,
            content_id=content_id,
            chapter_id=chapter_id,
            error_code=exc.code,
            extra={"required": exc.required, "balance": exc.balance},
        )
        raise
    finally:
        purchases_in_flight.dec(labels=labels)

    purchases_total.inc(labels={"family": family.name, "scope": result.scope.value, "outcome": outcome})
    log_event(
        "info",
        f"[orders] purchase {outcome}",
        user_id=user_id,
        family=family.name,
        content_id=content_id,
        chapter_id=chapter_id,
        extra={
            "order_id": result.order_id,
            "scope": result.scope.value,
            "points_charged": result.points_charged,
            "balance_after": result.balance_after,
        },
    )
    if not result.already_owned:
        record_view(family.name, content_id)
    return result


def purchase(
    family: ContentFamily, user_id: Optional[int], content_id: int, chapter_id: int
) -> PurchaseResult:
    """
    Buy access to a chapter for user_id, charging at most once.

    Raises:
        UnauthenticatedError: anonymous caller
        NotFoundError: content/chapter missing or mismatched
        InsufficientPointsError: balance below the effective price
        TransactionTimeoutError: contention outlasted the retry budget
    """
    if user_id is None:
        raise UnauthenticatedError("Login required to purchase")
    return _run(
        family, user_id, content_id, chapter_id,
        lambda db: _purchase_chapter(db, family, user_id, content_id, chapter_id),
    )


def purchase_content(family: ContentFamily, user_id: Optional[int], content_id: int) -> PurchaseResult:
    """Buy the whole content item; only offered when it has a one-time price."""
    if user_id is None:
        raise UnauthenticatedError("Login required to purchase")
    return _run(
        family, user_id, content_id, None,
        lambda db: _purchase_content(db, family, user_id, content_id),
    )
