# slotbook/schemas/bookings.py

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, EmailStr, Field, field_validator

from ..models import SessionType


class BookingContact(BaseModel):
    """Client contact details, shared by the API and the booking wizard."""
    name: str = Field(..., min_length=2, max_length=200)
    email: EmailStr = Field(..., max_length=255)
    phone: str = Field(..., min_length=6, max_length=20)
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("name", "phone")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class HoldCreate(BaseModel):
    slot_id: int
    holder_token: str = Field(..., min_length=8, max_length=128)
    ttl_seconds: Optional[int] = Field(None, gt=0, le=3600, description="Defaults to hold_ttl_seconds")


class HoldRead(BaseModel):
    slot_id: int
    holder_token: str
    expires_at: datetime
    version: int


class ConfirmBooking(BaseModel):
    slot_id: int
    holder_token: str
    contact: BookingContact


class DirectBooking(BaseModel):
    slot_id: int
    contact: BookingContact


class ManualBooking(BaseModel):
    provider_slug: str
    session_type: SessionType
    contact: BookingContact


class BookingRead(BaseModel):
    id: int
    slot_id: Optional[int] = None
    provider_id: int
    session_type: str
    client_name: str
    client_email: str
    client_phone: str
    client_notes: Optional[str] = None
    is_manual: bool
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}
