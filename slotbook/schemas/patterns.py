# slotbook/schemas/patterns.py

from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from ..models import SessionType
from ..services.slots.config import normalize_time


class PatternItem(BaseModel):
    """One weekly range in an upsert request. id=None creates a pattern."""
    id: Optional[int] = None
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday ... 6 = Saturday")
    start_time: str = Field(..., description="HH:MM, provider wall clock")
    end_time: str = Field(..., description="HH:MM, provider wall clock")
    timezone: Optional[str] = Field(None, description="Defaults to the provider's timezone")
    is_active: bool = True

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_time(cls, value: str) -> str:
        return normalize_time(value)


class PatternUpsert(BaseModel):
    session_type: SessionType
    patterns: list[PatternItem]


class PatternRead(BaseModel):
    id: int
    provider_id: int
    session_type: SessionType
    day_of_week: int
    start_time: str
    end_time: str
    timezone: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class GenerationWarning(BaseModel):
    pattern_id: Optional[int] = None
    reason: str


class GenerationReportRead(BaseModel):
    created: int = 0
    reopened: int = 0
    updated: int = 0
    unchanged: int = 0
    expired: int = 0
    skipped: int = 0
    warnings: list[GenerationWarning] = []


class PatternUpsertResponse(BaseModel):
    patterns: list[PatternRead]
    created: int
    updated: int
    deactivated: int
    generation: GenerationReportRead


class GenerateSlotsRequest(BaseModel):
    start_date: date
    end_date: date = Field(..., description="Exclusive")
    session_type: Optional[SessionType] = Field(None, description="None = every session type")
