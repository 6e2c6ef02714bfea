# slotbook/services/slots/config.py
"""
Booking configuration for slot generation and reservation.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache

from ...config import settings
from ...models import SessionType

TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True)
class SessionTypeConfig:
    """Duration and price of one session type."""
    duration_minutes: int
    price: float = 0.0


@dataclass(frozen=True)
class BookingConfig:
    """
    Configuration for the slot system.

    Attributes:
        horizon_days: Rolling generation window (today .. today + horizon)
        min_advance_minutes: Slots starting sooner than this are not offered
        hold_ttl_seconds: Default lifetime of a hold
        max_generation_days: Upper bound for an explicit generation request
        public_default_days: Default range of the public slot listing
        public_max_limit: Page size cap of the public slot listing
        cache_ttl_seconds: Redis TTL for cached day listings
    """
    horizon_days: int = 30
    min_advance_minutes: int = 0
    hold_ttl_seconds: int = 300
    max_generation_days: int = 90
    public_default_days: int = 14
    public_max_limit: int = 200
    cache_ttl_seconds: int = 60
    default_timezone: str = "Asia/Kolkata"
    session_types: dict[SessionType, SessionTypeConfig] = field(default_factory=lambda: {
        SessionType.PERSONAL: SessionTypeConfig(60),
        SessionType.WEBINAR: SessionTypeConfig(90),
    })

    def __post_init__(self):
        if self.horizon_days < 1:
            raise ValueError(f"horizon_days must be >= 1, got {self.horizon_days}")
        if self.hold_ttl_seconds < 1:
            raise ValueError(f"hold_ttl_seconds must be >= 1, got {self.hold_ttl_seconds}")
        for session_type, cfg in self.session_types.items():
            if cfg.duration_minutes < 1:
                raise ValueError(
                    f"duration for {session_type.value} must be >= 1, got {cfg.duration_minutes}"
                )

    def duration_for(self, session_type: SessionType | str) -> int:
        return self.session_types[SessionType(session_type)].duration_minutes

    def durations(self) -> dict[SessionType, int]:
        return {st: cfg.duration_minutes for st, cfg in self.session_types.items()}


def parse_time(value: str) -> int:
    """Parse "H:MM"/"HH:MM" to minutes since midnight. Raises ValueError."""
    match = TIME_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid time format (HH:MM): {value!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def normalize_time(value: str) -> str:
    """Canonical "HH:MM" form, e.g. 9:05 -> 09:05."""
    return minutes_to_time_str(parse_time(value))


def minutes_to_time_str(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@lru_cache
def get_booking_config() -> BookingConfig:
    """Booking configuration (singleton) built from settings."""
    return BookingConfig(
        horizon_days=settings.horizon_days,
        min_advance_minutes=settings.min_advance_minutes,
        hold_ttl_seconds=settings.hold_ttl_seconds,
        max_generation_days=settings.max_generation_days,
        public_default_days=settings.public_default_days,
        public_max_limit=settings.public_max_limit,
        cache_ttl_seconds=settings.cache_ttl_seconds,
        default_timezone=settings.default_timezone,
        session_types={
            SessionType.PERSONAL: SessionTypeConfig(
                settings.personal_duration_min, settings.personal_price
            ),
            SessionType.WEBINAR: SessionTypeConfig(
                settings.webinar_duration_min, settings.webinar_price
            ),
        },
    )
