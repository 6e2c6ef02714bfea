from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()
metadata = Base.metadata


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite keeps no tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SessionType(str, Enum):
    PERSONAL = "PERSONAL"
    WEBINAR = "WEBINAR"


class SlotState(str, Enum):
    OPEN = "OPEN"
    HELD = "HELD"
    BOOKED = "BOOKED"
    EXPIRED = "EXPIRED"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class Providers(Base):
    __tablename__ = 'providers'

    id = Column(Integer, primary_key=True)
    slug = Column(Text, nullable=False, unique=True)
    display_name = Column(Text, nullable=False)
    timezone = Column(Text, nullable=False, server_default=text("'Asia/Kolkata'"))
    is_active = Column(Boolean, nullable=False, server_default=text('1'))
    # Bumped by every pattern save; the UPDATE serializes concurrent saves
    patterns_version = Column(Integer, nullable=False, default=0, server_default=text('0'))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    patterns = relationship('AvailabilityPatterns', back_populates='provider')
    slots = relationship('Slots', back_populates='provider')


class AvailabilityPatterns(Base):
    __tablename__ = 'availability_patterns'
    __table_args__ = (
        Index('ix_patterns_provider_type_day', 'provider_id', 'session_type', 'day_of_week'),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False)
    session_type = Column(Text, nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday
    start_time = Column(Text, nullable=False)  # "HH:MM", provider wall clock
    end_time = Column(Text, nullable=False)
    timezone = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, server_default=text('1'))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    provider = relationship('Providers', back_populates='patterns')


class Slots(Base):
    __tablename__ = 'slots'
    __table_args__ = (
        UniqueConstraint('provider_id', 'session_type', 'date', 'start_time',
                         name='uq_slots_natural_key'),
        Index('ix_slots_lookup', 'provider_id', 'session_type', 'state', 'date'),
    )

    id = Column(Integer, primary_key=True)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False)
    session_type = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(Text, nullable=False)
    end_time = Column(Text, nullable=False)
    timezone = Column(Text, nullable=False)
    starts_at = Column(DateTime, nullable=False)  # UTC
    ends_at = Column(DateTime, nullable=False)  # UTC
    state = Column(Text, nullable=False, default=SlotState.OPEN.value, server_default=text("'OPEN'"))
    hold_token = Column(Text)
    hold_expires_at = Column(DateTime)  # UTC
    version = Column(Integer, nullable=False, default=1, server_default=text('1'))
    booking_id = Column(Integer)
    generated_from_pattern_id = Column(
        ForeignKey('availability_patterns.id', ondelete='SET NULL')
    )
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    provider = relationship('Providers', back_populates='slots')


class Bookings(Base):
    __tablename__ = 'bookings'

    id = Column(Integer, primary_key=True)
    # NULL for manual bookings; cancelled bookings keep their slot for history
    slot_id = Column(ForeignKey('slots.id', ondelete='SET NULL'), index=True)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False)
    session_type = Column(Text, nullable=False)
    client_name = Column(Text, nullable=False)
    client_email = Column(Text, nullable=False)
    client_phone = Column(Text, nullable=False)
    client_notes = Column(Text)
    is_manual = Column(Boolean, nullable=False, server_default=text('0'))
    status = Column(Text, nullable=False, server_default=text("'confirmed'"))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    slot = relationship('Slots', foreign_keys=[slot_id])
