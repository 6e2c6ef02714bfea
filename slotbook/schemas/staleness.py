from typing import Optional
from pydantic import BaseModel

from ..models import SessionType


class StalenessRead(BaseModel):
    provider_id: int
    session_type: Optional[SessionType] = None
    last_event_at: float
    stale: Optional[bool] = None
