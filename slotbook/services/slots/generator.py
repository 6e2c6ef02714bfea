# slotbook/services/slots/generator.py
"""
Slot generation: weekly patterns → concrete slot candidates.

Pure function. No DB, no Redis, no clock of its own (``now`` is passed in).

For every date in [start_date, end_date) whose weekday matches a pattern,
the pattern's wall-clock range is cut into session-sized pieces:

    09:00-17:00, 60 min  →  09:00, 10:00, ..., 16:00   (8 candidates)
    09:00-10:30, 60 min  →  09:00                      (30 min remainder dropped)

Contains:
✓ day-of-week matching (0 = Sunday)
✓ subdivision on the session type's duration
✓ wall clock → UTC conversion in the pattern's timezone
✓ per-pattern error collection

Does NOT contain:
✗ Slot state (OPEN/HELD/BOOKED): see store.apply_generation
✗ Bookings, holds
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...errors import GenerationPartialFailure
from ...models import SessionType
from .config import minutes_to_time_str, parse_time


@dataclass(frozen=True)
class SlotCandidate:
    """One bookable slot produced by the generator."""
    provider_id: int
    session_type: SessionType
    date: date
    start_time: str
    end_time: str
    timezone: str
    starts_at: datetime  # naive UTC
    ends_at: datetime  # naive UTC
    pattern_id: int | None = None

    @property
    def natural_key(self) -> tuple[int, str, date, str]:
        return (self.provider_id, self.session_type.value, self.date, self.start_time)


@dataclass
class GenerationResult:
    candidates: list[SlotCandidate] = field(default_factory=list)
    errors: list[GenerationPartialFailure] = field(default_factory=list)

    @property
    def failed_pattern_ids(self) -> set[int]:
        return {e.pattern_id for e in self.errors if e.pattern_id is not None}


def sunday_based_weekday(d: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (d.weekday() + 1) % 7


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def iter_dates(start_date: date, end_date: date):
    """Dates in [start_date, end_date)."""
    current = start_date
    while current < end_date:
        yield current
        current += timedelta(days=1)


def generate_slots(
    patterns,
    start_date: date,
    end_date: date,
    durations: dict[SessionType, int],
    now: datetime,
    provider_timezone: str,
) -> GenerationResult:
    """
    Expand active patterns into slot candidates.

    Args:
        patterns: Objects with id, provider_id, session_type, day_of_week,
                  start_time, end_time, timezone, is_active
        start_date: First date (inclusive)
        end_date: Last date (exclusive)
        durations: Session length in minutes per session type
        now: Generation time; candidates starting at or before it are skipped
        provider_timezone: Used when a pattern carries no timezone

    Returns:
        GenerationResult with de-duplicated candidates sorted by start, and
        one GenerationPartialFailure per pattern that could not be expanded.
    """
    now_utc = to_naive_utc(now)
    result = GenerationResult()
    seen: set[tuple] = set()

    for pattern in patterns:
        if not pattern.is_active:
            continue
        try:
            candidates = _expand_pattern(
                pattern, start_date, end_date, durations, now_utc, provider_timezone
            )
        except (ValueError, KeyError) as exc:
            # ZoneInfoNotFoundError is a KeyError
            result.errors.append(GenerationPartialFailure(
                pattern_id=getattr(pattern, "id", None),
                reason=str(exc) or exc.__class__.__name__,
            ))
            continue

        for candidate in candidates:
            if candidate.natural_key in seen:
                continue
            seen.add(candidate.natural_key)
            result.candidates.append(candidate)

    result.candidates.sort(key=lambda c: (c.starts_at, c.session_type.value))
    return result


def _expand_pattern(
    pattern,
    start_date: date,
    end_date: date,
    durations: dict[SessionType, int],
    now_utc: datetime,
    provider_timezone: str,
) -> list[SlotCandidate]:
    session_type = SessionType(pattern.session_type)
    duration = durations[session_type]
    if duration <= 0:
        raise ValueError(f"Non-positive duration for {session_type.value}")

    if not 0 <= int(pattern.day_of_week) <= 6:
        raise ValueError(f"day_of_week out of range: {pattern.day_of_week}")

    start_min = parse_time(pattern.start_time)
    end_min = parse_time(pattern.end_time)
    if end_min <= start_min:
        raise ValueError(f"End time must be after start time: {pattern.start_time}-{pattern.end_time}")

    tz_name = pattern.timezone or provider_timezone
    try:
        tz = ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        raise KeyError(f"Unknown timezone: {tz_name}") from None

    candidates: list[SlotCandidate] = []
    for day in iter_dates(start_date, end_date):
        if sunday_based_weekday(day) != int(pattern.day_of_week):
            continue

        t = start_min
        while t + duration <= end_min:
            local_start = datetime.combine(day, time(t // 60, t % 60), tzinfo=tz)
            starts_at = to_naive_utc(local_start)
            if starts_at > now_utc:
                candidates.append(SlotCandidate(
                    provider_id=pattern.provider_id,
                    session_type=session_type,
                    date=day,
                    start_time=minutes_to_time_str(t),
                    end_time=minutes_to_time_str(t + duration),
                    timezone=tz_name,
                    starts_at=starts_at,
                    ends_at=starts_at + timedelta(minutes=duration),
                    pattern_id=getattr(pattern, "id", None),
                ))
            t += duration

    return candidates
