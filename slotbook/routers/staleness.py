# slotbook/routers/staleness.py
"""
Polling staleness check: clients compare their fetch time with last_event_at.
"""

from fastapi import APIRouter, Depends

from ..dependencies import get_notifier
from ..models import SessionType
from ..schemas.staleness import StalenessRead
from ..services.staleness import Scope, StalenessNotifier

router = APIRouter(prefix="/staleness", tags=["staleness"])


@router.get("", response_model=StalenessRead)
def get_staleness(
    provider_id: int,
    session_type: SessionType | None = None,
    cached_at: float | None = None,
    notifier: StalenessNotifier = Depends(get_notifier),
):
    scope = Scope(provider_id, session_type)
    last = notifier.last_event_at(scope)
    return StalenessRead(
        provider_id=provider_id,
        session_type=session_type,
        last_event_at=last,
        stale=None if cached_at is None else last > cached_at,
    )
