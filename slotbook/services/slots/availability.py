# slotbook/services/slots/availability.py
"""
Availability queries for the booking flow.

list_available_dates / list_available_times read through the Redis day
cache (SlotsRedisStore) and fall back to the slots table on a miss or when
Redis is unreachable. list_public_slots always reads the table (paginated).
"""

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from ...errors import ValidationError
from ...models import SessionType, Slots, utcnow
from ..providers import get_provider, provider_today
from .config import BookingConfig, get_booking_config
from .redis_store import SlotsRedisStore, SlotTime, utc_ts
from .regenerate import rolling_window
from .store import SlotStore

logger = logging.getLogger(__name__)


def _to_cache_entries(slots: list[Slots], config: BookingConfig) -> list[tuple[SlotTime, float]]:
    advance = timedelta(minutes=config.min_advance_minutes)
    return [
        (SlotTime(s.id, s.start_time, s.end_time), utc_ts(s.starts_at - advance))
        for s in slots
    ]


def _group_by_date(slots: list[Slots]) -> dict[date, list[Slots]]:
    grouped: dict[date, list[Slots]] = defaultdict(list)
    for slot in slots:
        grouped[slot.date].append(slot)
    return grouped


def list_available_dates(
    db: Session,
    provider_id: int,
    session_type: SessionType,
    now: datetime | None = None,
    config: BookingConfig | None = None,
    redis: Redis | None = None,
) -> list[date]:
    """Dates within the rolling window that have at least one bookable slot."""
    config = config or get_booking_config()
    now = now or utcnow()
    session_type = SessionType(session_type)
    provider = get_provider(db, provider_id)

    start_date, end_date = rolling_window(provider_today(provider, now), config)
    dates = [start_date + timedelta(days=i) for i in range((end_date - start_date).days)]

    cached_counts: dict[date, int | None] = {dt: None for dt in dates}
    store = SlotsRedisStore(redis, config) if redis is not None else None
    if store is not None:
        try:
            cached_counts = store.mget_counts(provider_id, session_type, dates, now)
        except RedisError as e:
            logger.warning(f"Slot cache unavailable, reading database: {e}")
            store = None

    misses = [dt for dt in dates if cached_counts.get(dt) is None]
    if misses:
        rows = SlotStore(db, config).list_bookable(
            provider_id, session_type, min(misses), max(misses) + timedelta(days=1), now
        )
        grouped = _group_by_date(rows)
        for dt in misses:
            cached_counts[dt] = len(grouped.get(dt, []))

        if store is not None:
            try:
                store.store_multiple_days(provider_id, session_type, {
                    dt: _to_cache_entries(grouped.get(dt, []), config) for dt in misses
                })
            except RedisError as e:
                logger.warning(f"Slot cache write skipped: {e}")

    return [dt for dt in dates if cached_counts[dt]]


def list_available_times(
    db: Session,
    provider_id: int,
    session_type: SessionType,
    target_date: date,
    now: datetime | None = None,
    config: BookingConfig | None = None,
    redis: Redis | None = None,
) -> list[SlotTime]:
    """Bookable slots of one day, sorted by start time."""
    config = config or get_booking_config()
    now = now or utcnow()
    session_type = SessionType(session_type)
    get_provider(db, provider_id)

    store = SlotsRedisStore(redis, config) if redis is not None else None
    if store is not None:
        try:
            cached = store.get_available_slots(provider_id, session_type, target_date, now)
            if cached is not None:
                return cached
        except RedisError as e:
            logger.warning(f"Slot cache unavailable, reading database: {e}")
            store = None

    rows = SlotStore(db, config).list_bookable(
        provider_id, session_type, target_date, target_date + timedelta(days=1), now
    )
    if store is not None:
        try:
            store.store_day_slots(
                provider_id, session_type, target_date, _to_cache_entries(rows, config)
            )
        except RedisError as e:
            logger.warning(f"Slot cache write skipped: {e}")

    return [SlotTime(s.id, s.start_time, s.end_time) for s in rows]


def list_public_slots(
    db: Session,
    provider_id: int,
    session_type: SessionType,
    start_date: date | None = None,
    days: int | None = None,
    limit: int | None = None,
    offset: int = 0,
    now: datetime | None = None,
    config: BookingConfig | None = None,
) -> tuple[list[Slots], int]:
    """
    Paginated bookable slots.

    Defaults: start_date = provider's today, days = public_default_days,
    limit = public_max_limit (also the upper bound).

    Returns:
        (page of slots, total count)
    """
    config = config or get_booking_config()
    now = now or utcnow()
    provider = get_provider(db, provider_id)

    days = days or config.public_default_days
    limit = config.public_max_limit if limit is None else limit
    if days < 1 or days > config.max_generation_days:
        raise ValidationError(f"days must be between 1 and {config.max_generation_days}")
    if limit < 1 or limit > config.public_max_limit:
        raise ValidationError(f"limit must be between 1 and {config.public_max_limit}")
    if offset < 0:
        raise ValidationError("offset must be >= 0")

    start_date = start_date or provider_today(provider, now)
    query = SlotStore(db, config).bookable_query(
        provider_id, session_type, start_date, start_date + timedelta(days=days), now
    )
    total = query.count()
    return query.offset(offset).limit(limit).all(), total
