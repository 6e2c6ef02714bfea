# slotbook/services/slots/regenerate.py
"""
Pattern → slot materialization for one provider.

Loads active patterns, runs the pure generator and upserts the result
through SlotStore. Flushes only; the caller owns the transaction.
"""

from datetime import date, datetime, timedelta

from sqlalchemy.orm import Session

from ...errors import ValidationError
from ...models import AvailabilityPatterns, Providers, SessionType, utcnow
from ..providers import provider_today
from .config import BookingConfig, get_booking_config
from .generator import generate_slots, to_naive_utc
from .store import GenerationReport, SlotStore


def rolling_window(today: date, config: BookingConfig | None = None) -> tuple[date, date]:
    """[today, today + horizon_days)"""
    config = config or get_booking_config()
    return today, today + timedelta(days=config.horizon_days)


def validate_generation_range(
    start_date: date,
    end_date: date,
    config: BookingConfig | None = None,
) -> None:
    config = config or get_booking_config()
    if end_date <= start_date:
        raise ValidationError("end_date must be after start_date")
    if (end_date - start_date).days > config.max_generation_days:
        raise ValidationError(
            f"Generation range cannot exceed {config.max_generation_days} days"
        )


def regenerate_slots(
    db: Session,
    provider: Providers,
    start_date: date,
    end_date: date,
    session_types: list[SessionType] | None = None,
    now: datetime | None = None,
    config: BookingConfig | None = None,
) -> GenerationReport:
    """Regenerate slots for [start_date, end_date). Returns the report."""
    config = config or get_booking_config()
    now = to_naive_utc(now) if now else utcnow()
    session_types = [SessionType(t) for t in (session_types or list(SessionType))]

    patterns = (
        db.query(AvailabilityPatterns)
        .filter(
            AvailabilityPatterns.provider_id == provider.id,
            AvailabilityPatterns.session_type.in_([t.value for t in session_types]),
            AvailabilityPatterns.is_active == True,  # noqa: E712
        )
        .all()
    )

    generation = generate_slots(
        patterns,
        start_date,
        end_date,
        durations=config.durations(),
        now=now,
        provider_timezone=provider.timezone or config.default_timezone,
    )
    return SlotStore(db, config).apply_generation(
        provider.id, session_types, start_date, end_date, generation, now
    )


def regenerate_rolling_window(
    db: Session,
    provider: Providers,
    session_types: list[SessionType] | None = None,
    now: datetime | None = None,
    config: BookingConfig | None = None,
) -> GenerationReport:
    now = to_naive_utc(now) if now else utcnow()
    start_date, end_date = rolling_window(provider_today(provider, now), config)
    return regenerate_slots(
        db, provider, start_date, end_date,
        session_types=session_types, now=now, config=config,
    )
