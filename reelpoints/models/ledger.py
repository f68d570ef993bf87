from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class LedgerEventType(str, Enum):
    SPEND = "SPEND"
    ADJUSTMENT = "ADJUSTMENT"


class LedgerEntry(BaseModel):
    """One append-only row of the point ledger; amount is signed."""
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    event_type: LedgerEventType
    reason_code: str
    amount: int
    balance_after: int
    family: Optional[str] = None
    content_id: Optional[int] = None
    entitlement_id: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
