"""Point balance endpoints."""
from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from reelpoints.core.admin_auth import AdminActor, require_admin
from reelpoints.core.auth import Identity, get_current_identity
from reelpoints.core.database import bounded_transaction, get_db
from reelpoints.features.ledger.service import adjust, get_balance, get_user_ledger

router = APIRouter(tags=["points"])


class AdjustPointsRequest(BaseModel):
    change: int
    reason: str

    @field_validator("reason")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


@router.get("/v1/points/me")
def get_my_points(
    limit: int = 20,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> Dict:
    """Caller's balance and most recent ledger entries."""
    entries = [
        {
            "id": entry.id,
            "eventType": entry.event_type.value,
            "reasonCode": entry.reason_code,
            "amount": entry.amount,
            "balanceAfter": entry.balance_after,
            "family": entry.family,
            "contentId": entry.content_id,
            "orderId": entry.entitlement_id,
            "createdAt": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in get_user_ledger(db, identity.user_id, limit)
    ]
    return {
        "userId": identity.user_id,
        "balance": get_balance(db, identity.user_id),
        "entries": entries,
        "count": len(entries),
    }


@router.put("/admin/users/{user_id}/points")
def adjust_user_points(
    user_id: int,
    body: AdjustPointsRequest,
    actor: AdminActor = Depends(require_admin),
) -> Dict:
    """Admin credit/debit. Rejects a change that would leave the balance negative."""
    with bounded_transaction() as db:
        entry = adjust(db, user_id, body.change, body.reason, actor=actor.actor_id)
    return {
        "userId": user_id,
        "change": entry.amount,
        "balance": entry.balance_after,
        "entryId": entry.id,
    }
