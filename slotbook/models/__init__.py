from .tables import (
    AvailabilityPatterns,
    Base,
    BookingStatus,
    Bookings,
    Providers,
    SessionType,
    Slots,
    SlotState,
    utcnow,
)

__all__ = [
    "AvailabilityPatterns",
    "Base",
    "BookingStatus",
    "Bookings",
    "Providers",
    "SessionType",
    "Slots",
    "SlotState",
    "utcnow",
]
