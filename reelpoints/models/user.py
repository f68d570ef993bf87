from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    points: int
    display_name: Optional[str] = None
    created_at: Optional[datetime] = None
