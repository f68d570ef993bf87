"""
Point ledger.

users.points is the materialized balance; point_ledger is the append-only log
behind it. Every balance change appends exactly one ledger row in the same
transaction. Nothing here commits: callers own the transaction boundary.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from reelpoints.core.database import point_ledger, users
from reelpoints.core.errors import InsufficientPointsError, NotFoundError, ValidationError
from reelpoints.models.ledger import LedgerEntry, LedgerEventType
from reelpoints.models.user import User

logger = logging.getLogger(__name__)


def _to_entry(row) -> LedgerEntry:
    m = row._mapping
    return LedgerEntry(
        id=m["id"],
        user_id=m["user_id"],
        event_type=LedgerEventType(m["event_type"]),
        reason_code=m["reason_code"],
        amount=m["amount"],
        balance_after=m["balance_after"],
        family=m["family"],
        content_id=m["content_id"],
        entitlement_id=m["entitlement_id"],
        metadata=m["metadata"] or {},
        created_at=m["created_at"],
    )


def get_user(db: Session, user_id: int) -> Optional[User]:
    row = db.execute(select(users).where(users.c.id == user_id)).first()
    if not row:
        return None
    m = row._mapping
    return User(id=m["id"], points=m["points"], display_name=m["display_name"], created_at=m["created_at"])


def get_balance(db: Session, user_id: int) -> int:
    """Current balance. Raises NotFoundError for unknown users."""
    balance = db.execute(select(users.c.points).where(users.c.id == user_id)).scalar()
    if balance is None:
        raise NotFoundError(f"User {user_id} not found")
    return int(balance)


def append_ledger_entry(
    db: Session,
    *,
    user_id: int,
    event_type: LedgerEventType,
    reason_code: str,
    amount: int,
    balance_after: int,
    family: Optional[str] = None,
    content_id: Optional[int] = None,
    entitlement_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerEntry:
    """Append one ledger row inside the caller's transaction."""
    result = db.execute(
        insert(point_ledger).values(
            user_id=user_id,
            event_type=event_type.value,
            reason_code=reason_code,
            amount=amount,
            balance_after=balance_after,
            family=family,
            content_id=content_id,
            entitlement_id=entitlement_id,
            metadata=metadata or {},
        )
    )
    entry_id = result.inserted_primary_key[0]
    row = db.execute(select(point_ledger).where(point_ledger.c.id == entry_id)).first()
    return _to_entry(row)


def debit(
    db: Session,
    user_id: int,
    amount: int,
    *,
    reason_code: str,
    family: Optional[str] = None,
    content_id: Optional[int] = None,
    entitlement_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Subtract amount from the balance and record a SPEND row.

    The check and the write are one conditional UPDATE, so two concurrent
    debits can never take the balance below zero.

    Returns:
        balance after the debit

    Raises:
        InsufficientPointsError: balance < amount (nothing written)
        NotFoundError: unknown user
    """
    if amount <= 0:
        raise ValidationError("Debit amount must be positive", details={"amount": amount})

    result = db.execute(
        update(users)
        .where(users.c.id == user_id)
        .where(users.c.points >= amount)
        .values(points=users.c.points - amount)
    )
    if result.rowcount != 1:
        balance = get_balance(db, user_id)
        logger.info(
            "[ledger] debit rejected: insufficient points",
            extra={"user_id": user_id, "required": amount, "balance": balance},
        )
        raise InsufficientPointsError(required=amount, balance=balance)

    balance_after = get_balance(db, user_id)
    append_ledger_entry(
        db,
        user_id=user_id,
        event_type=LedgerEventType.SPEND,
        reason_code=reason_code,
        amount=-amount,
        balance_after=balance_after,
        family=family,
        content_id=content_id,
        entitlement_id=entitlement_id,
        metadata=metadata,
    )
    logger.info(
        "[ledger] debit",
        extra={"user_id": user_id, "amount": amount, "balance_after": balance_after, "reason_code": reason_code},
    )
    return balance_after


def adjust(
    db: Session,
    user_id: int,
    change: int,
    reason: str,
    *,
    actor: Optional[str] = None,
) -> LedgerEntry:
    """
    Admin adjustment by a signed change. A result below zero is rejected.

    Raises:
        ValidationError: change is 0, reason is empty, or the result would be negative
        NotFoundError: unknown user
    """
    reason = (reason or "").strip()
    if change == 0:
        raise ValidationError("change must be a non-zero integer")
    if not reason:
        raise ValidationError("reason is required")

    result = db.execute(
        update(users)
        .where(users.c.id == user_id)
        .where(users.c.points + change >= 0)
        .values(points=users.c.points + change)
    )
    if result.rowcount != 1:
        balance = get_balance(db, user_id)
        raise ValidationError(
            "Adjustment would make the balance negative",
            details={"balance": balance, "change": change},
        )

    balance_after = get_balance(db, user_id)
    entry = append_ledger_entry(
        db,
        user_id=user_id,
        event_type=LedgerEventType.ADJUSTMENT,
        reason_code=reason[:100],
        amount=change,
        balance_after=balance_after,
        metadata={"actor": actor} if actor else None,
    )
    logger.info(
        "[ledger] adjustment",
        extra={"user_id": user_id, "change": change, "balance_after": balance_after, "actor": actor},
    )
    return entry


def get_user_ledger(db: Session, user_id: int, limit: int = 20) -> List[LedgerEntry]:
    """Most recent ledger entries first."""
    rows = db.execute(
        select(point_ledger)
        .where(point_ledger.c.user_id == user_id)
        .order_by(point_ledger.c.id.desc())
        .limit(limit)
    ).fetchall()
    return [_to_entry(row) for row in rows]
