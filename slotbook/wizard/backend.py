"""
slotbook/wizard/backend.py

What the booking wizard needs from the server, as an async protocol.
ApiClient (wizard/api.py) is the shipped implementation; tests use fakes.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Protocol

from ..models import SessionType
from ..schemas.bookings import BookingContact


@dataclass(frozen=True)
class SlotOption:
    slot_id: int
    date: date
    start_time: str
    end_time: str

    @property
    def label(self) -> str:
        return f"{self.date.isoformat()} {self.start_time}-{self.end_time}"


@dataclass(frozen=True)
class HoldInfo:
    slot_id: int
    holder_token: str
    expires_at: datetime


@dataclass(frozen=True)
class BookingReceipt:
    id: int
    slot_id: Optional[int]
    session_type: str
    is_manual: bool
    status: str


class BookingBackend(Protocol):
    async def list_available_dates(self, session_type: SessionType) -> list[date]: ...

    async def list_available_times(self, session_type: SessionType, target_date: date) -> list[SlotOption]: ...

    async def hold_slot(self, slot_id: int, holder_token: str, ttl_seconds: Optional[int] = None) -> HoldInfo: ...

    async def release_hold(self, slot_id: int, holder_token: str) -> None: ...

    async def confirm_booking(self, slot_id: int, holder_token: str, contact: BookingContact) -> BookingReceipt: ...

    async def book_directly(self, slot_id: int, contact: BookingContact) -> BookingReceipt: ...

    async def create_manual_booking(self, session_type: SessionType, contact: BookingContact) -> BookingReceipt: ...
