"""
Domain errors for availability and booking.

Race outcomes (SlotUnavailable / HoldExpired / HoldMismatch) are expected:
callers re-fetch and re-offer slots.
"""

from dataclasses import dataclass


class BookingError(Exception):
    """Base class for all domain errors."""

    code = "booking_error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


@dataclass(frozen=True)
class PatternConflict:
    """Two patterns (or one malformed pattern) on a given day."""
    day_of_week: int
    first: str  # "HH:MM-HH:MM"
    second: str | None = None
    reason: str = "overlap"

    def describe(self) -> str:
        if self.second is None:
            return f"day {self.day_of_week}: {self.first} ({self.reason})"
        return f"day {self.day_of_week}: {self.first} overlaps {self.second}"


class ValidationError(BookingError):
    code = "validation_error"
    status_code = 422


class PatternValidationError(ValidationError):
    """Pattern set rejected as a whole; nothing was committed."""

    def __init__(self, conflicts: list[PatternConflict]):
        self.conflicts = conflicts
        super().__init__("; ".join(c.describe() for c in conflicts))


class NotFoundError(BookingError):
    code = "not_found"
    status_code = 404


class ProviderNotFound(NotFoundError):
    pass


class SlotNotFound(NotFoundError):
    pass


class BookingNotFound(NotFoundError):
    pass


class SlotUnavailable(BookingError):
    code = "slot_unavailable"
    status_code = 409


class HoldExpired(BookingError):
    code = "hold_expired"
    status_code = 409


class HoldMismatch(BookingError):
    code = "hold_mismatch"
    status_code = 409


@dataclass(frozen=True)
class GenerationPartialFailure:
    """A pattern that could not be expanded. Reported, never raised."""
    pattern_id: int | None
    reason: str


class AvailabilityFetchError(Exception):
    """Client side: availability could not be fetched (transport / 5xx)."""


RACE_ERRORS: dict[str, type[BookingError]] = {
    SlotUnavailable.code: SlotUnavailable,
    HoldExpired.code: HoldExpired,
    HoldMismatch.code: HoldMismatch,
}
