# slotbook/routers/slots.py
"""
Public availability endpoints (keyed by provider slug).

GET /public/{slug}/dates : dates with at least one bookable slot (rolling window)
GET /public/{slug}/times : bookable slots of one day (Redis day cache)
GET /public/{slug}/slots : paginated listing straight from the slots table
"""

from datetime import date

from fastapi import APIRouter, Depends, Query
from redis import Redis
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_config
from ..models import SessionType, utcnow
from ..redis_client import get_redis
from ..schemas.slots import (
    AvailableDatesResponse,
    AvailableTimesResponse,
    PublicSlotsResponse,
    SlotRead,
    SlotTimeRead,
)
from ..services.providers import get_provider_by_slug, provider_today
from ..services.slots.availability import (
    list_available_dates,
    list_available_times,
    list_public_slots,
)
from ..services.slots.config import BookingConfig

router = APIRouter(prefix="/public", tags=["public"])


@router.get("/{slug}/dates", response_model=AvailableDatesResponse)
def get_available_dates(
    slug: str,
    session_type: SessionType,
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
    config: BookingConfig = Depends(get_config),
):
    provider = get_provider_by_slug(db, slug)
    dates = list_available_dates(db, provider.id, session_type, config=config, redis=redis)
    return AvailableDatesResponse(
        provider_slug=slug,
        session_type=session_type,
        dates=dates,
        horizon_days=config.horizon_days,
    )


@router.get("/{slug}/times", response_model=AvailableTimesResponse)
def get_available_times(
    slug: str,
    session_type: SessionType,
    target_date: date = Query(..., alias="date"),
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
    config: BookingConfig = Depends(get_config),
):
    provider = get_provider_by_slug(db, slug)
    slots = list_available_times(
        db, provider.id, session_type, target_date, config=config, redis=redis
    )
    return AvailableTimesResponse(
        provider_slug=slug,
        session_type=session_type,
        date=target_date,
        timezone=provider.timezone,
        slots=[SlotTimeRead.model_validate(s) for s in slots],
    )


@router.get("/{slug}/slots", response_model=PublicSlotsResponse)
def get_public_slots(
    slug: str,
    session_type: SessionType,
    start_date: date | None = None,
    days: int | None = None,
    limit: int | None = None,
    offset: int = 0,
    db: Session = Depends(get_db),
    config: BookingConfig = Depends(get_config),
):
    provider = get_provider_by_slug(db, slug)
    now = utcnow()
    start_date = start_date or provider_today(provider, now)
    days = days or config.public_default_days
    limit = config.public_max_limit if limit is None else limit

    slots, total = list_public_slots(
        db, provider.id, session_type,
        start_date=start_date, days=days, limit=limit, offset=offset,
        now=now, config=config,
    )
    return PublicSlotsResponse(
        provider_slug=slug,
        session_type=session_type,
        start_date=start_date,
        days=days,
        total=total,
        limit=limit,
        offset=offset,
        slots=[SlotRead.model_validate(s) for s in slots],
    )
