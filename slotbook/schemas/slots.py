"""
Pydantic schemas for availability API.
"""

from datetime import date, datetime
from pydantic import BaseModel

from ..models import SessionType


class AvailableDatesResponse(BaseModel):
    provider_slug: str
    session_type: SessionType
    dates: list[date]
    horizon_days: int


class SlotTimeRead(BaseModel):
    slot_id: int
    start_time: str
    end_time: str

    model_config = {"from_attributes": True}


class AvailableTimesResponse(BaseModel):
    provider_slug: str
    session_type: SessionType
    date: date
    timezone: str
    slots: list[SlotTimeRead]


class SlotRead(BaseModel):
    id: int
    provider_id: int
    session_type: SessionType
    date: date
    start_time: str
    end_time: str
    timezone: str
    starts_at: datetime
    ends_at: datetime
    state: str
    version: int

    model_config = {"from_attributes": True}


class PublicSlotsResponse(BaseModel):
    provider_slug: str
    session_type: SessionType
    start_date: date
    days: int
    total: int
    limit: int
    offset: int
    slots: list[SlotRead]
