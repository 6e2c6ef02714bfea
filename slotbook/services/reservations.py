"""
Reservation Service: slot → hold → booking.

Every transition is one conditional UPDATE checked by rowcount; nothing is
read before it in the same transaction. On SQLite a read first would take a
SHARED lock and two writers could deadlock into SQLITE_BUSY instead of one
of them waiting.

    OPEN ──hold──► HELD ──confirm──► BOOKED ──cancel──► OPEN / EXPIRED
      │              │
      └──book_directly────────────► BOOKED
                     └──release / TTL lapse──► OPEN (lazily)

A HELD row whose hold_expires_at has passed counts as OPEN everywhere.
After commit: SlotsChanged is published and a booking event is queued.
Neither can undo the committed write.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from redis import Redis
from sqlalchemy import and_, case, update
from sqlalchemy.orm import Session

from ..errors import (
    BookingNotFound,
    HoldExpired,
    HoldMismatch,
    SlotNotFound,
    SlotUnavailable,
    ValidationError,
)
from ..models import BookingStatus, Bookings, SessionType, Slots, SlotState, utcnow
from .events import booking_payload, emit_event
from .providers import get_provider
from .slots.config import BookingConfig, get_booking_config
from .slots.generator import to_naive_utc
from .slots.store import bookable_clause
from .staleness import Scope, StalenessKind, StalenessNotifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Hold:
    slot_id: int
    holder_token: str
    expires_at: datetime
    version: int


class ReservationService:
    """Race-safe holds and bookings on the slots table."""

    def __init__(
        self,
        db: Session,
        notifier: StalenessNotifier | None = None,
        redis: Redis | None = None,
        config: BookingConfig | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.redis = redis
        self.config = config or get_booking_config()

    def _now(self, now: datetime | None) -> datetime:
        return to_naive_utc(now) if now else utcnow()

    def _cutoff(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.config.min_advance_minutes)

    def _load_slot(self, slot_id: int) -> Slots | None:
        return self.db.get(Slots, slot_id, populate_existing=True)

    def _transition(self, criteria, **values) -> int:
        result = self.db.execute(
            update(Slots)
            .where(*criteria)
            .values(version=Slots.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def _after_commit(self, slot_or_booking, event_type: str | None = None, booking: Bookings | None = None) -> None:
        if self.notifier is not None and slot_or_booking is not None:
            self.notifier.publish(
                StalenessKind.SLOTS_CHANGED,
                Scope(slot_or_booking.provider_id, SessionType(slot_or_booking.session_type)),
            )
        if event_type and booking is not None and self.redis is not None:
            emit_event(self.redis, event_type, booking_payload(booking))

    # ── Holds ────────────────────────────────────────────────────────────

    def hold_slot(
        self,
        slot_id: int,
        holder_token: str,
        ttl_seconds: int | None = None,
        now: datetime | None = None,
    ) -> Hold:
        """
        Place (or extend, for the same token) a hold.

        Raises:
            SlotNotFound: unknown slot
            SlotUnavailable: booked, expired, too soon, or held by someone else
        """
        if not holder_token:
            raise ValidationError("holder_token is required")
        now = self._now(now)
        ttl = ttl_seconds or self.config.hold_ttl_seconds
        expires_at = now + timedelta(seconds=ttl)
        cutoff = self._cutoff(now)

        rows = self._transition(
            [
                Slots.id == slot_id,
                bookable_clause(now, cutoff)
                | and_(
                    Slots.state == SlotState.HELD.value,
                    Slots.hold_token == holder_token,
                    Slots.hold_expires_at > now,
                    Slots.starts_at > cutoff,
                ),
            ],
            state=SlotState.HELD.value,
            hold_token=holder_token,
            hold_expires_at=expires_at,
            updated_at=now,
        )
        if rows == 0:
            self.db.rollback()
            if self._load_slot(slot_id) is None:
                raise SlotNotFound(f"Slot {slot_id} not found")
            logger.warning(f"Hold refused: slot {slot_id} not available")
            raise SlotUnavailable(f"Slot {slot_id} is not available")

        self.db.commit()
        slot = self._load_slot(slot_id)
        logger.info(f"Slot {slot_id} held until {expires_at.isoformat()}")
        self._after_commit(slot)
        return Hold(slot_id, holder_token, expires_at, slot.version)

    def release_hold(self, slot_id: int, holder_token: str, now: datetime | None = None) -> bool:
        """
        HELD → OPEN for the owner's token. False if there was nothing to release.

        Raises:
            SlotNotFound: unknown slot
            HoldMismatch: a live hold with another token
        """
        now = self._now(now)
        rows = self._transition(
            [
                Slots.id == slot_id,
                Slots.state == SlotState.HELD.value,
                Slots.hold_token == holder_token,
            ],
            state=SlotState.OPEN.value,
            hold_token=None,
            hold_expires_at=None,
            updated_at=now,
        )
        if rows == 0:
            self.db.rollback()
            slot = self._load_slot(slot_id)
            if slot is None:
                raise SlotNotFound(f"Slot {slot_id} not found")
            if (
                slot.state == SlotState.HELD.value
                and slot.hold_expires_at is not None
                and slot.hold_expires_at > now
            ):
                raise HoldMismatch(f"Slot {slot_id} is held by another client")
            return False

        self.db.commit()
        slot = self._load_slot(slot_id)
        logger.info(f"Hold on slot {slot_id} released")
        self._after_commit(slot)
        return True

    # ── Bookings ─────────────────────────────────────────────────────────

    def _create_booking(self, slot: Slots, contact, now: datetime) -> Bookings:
        booking = Bookings(
            slot_id=slot.id,
            provider_id=slot.provider_id,
            session_type=slot.session_type,
            client_name=contact.name,
            client_email=str(contact.email),
            client_phone=contact.phone,
            client_notes=getattr(contact, "notes", None),
            is_manual=False,
            status=BookingStatus.CONFIRMED.value,
            created_at=now,
        )
        self.db.add(booking)
        self.db.flush()
        slot.booking_id = booking.id
        return booking

    def confirm_booking(
        self,
        slot_id: int,
        holder_token: str,
        contact,
        now: datetime | None = None,
    ) -> Bookings:
        """
        HELD (our live token) → BOOKED plus the Booking row, one transaction.

        Raises:
            SlotNotFound: unknown slot
            SlotUnavailable: booked, expired or already started
            HoldMismatch: held by another live token
            HoldExpired: our hold lapsed (slot OPEN again or still HELD past deadline)
        """
        now = self._now(now)
        try:
            rows = self._transition(
                [
                    Slots.id == slot_id,
                    Slots.state == SlotState.HELD.value,
                    Slots.hold_token == holder_token,
                    Slots.hold_expires_at > now,
                    Slots.starts_at > now,
                ],
                state=SlotState.BOOKED.value,
                hold_token=None,
                hold_expires_at=None,
                updated_at=now,
            )
            if rows == 0:
                self.db.rollback()
                raise self._classify_confirm_miss(slot_id, holder_token, now)

            slot = self._load_slot(slot_id)
            booking = self._create_booking(slot, contact, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Booking {booking.id} confirmed on slot {slot_id}")
        self._after_commit(booking, "booking_created", booking)
        return booking

    def _classify_confirm_miss(self, slot_id: int, holder_token: str, now: datetime) -> Exception:
        slot = self._load_slot(slot_id)
        if slot is None:
            return SlotNotFound(f"Slot {slot_id} not found")

        if slot.state in (SlotState.BOOKED.value, SlotState.EXPIRED.value) or slot.starts_at <= now:
            error = SlotUnavailable(f"Slot {slot_id} is no longer available")
        elif slot.state == SlotState.HELD.value and slot.hold_token != holder_token \
                and slot.hold_expires_at is not None and slot.hold_expires_at > now:
            error = HoldMismatch(f"Slot {slot_id} is held by another client")
        else:
            error = HoldExpired(f"Hold on slot {slot_id} has expired")

        logger.warning(f"Confirm refused on slot {slot_id}: {error.code}")
        return error

    def book_directly(self, slot_id: int, contact, now: datetime | None = None) -> Bookings:
        """
        OPEN (or lapsed HELD) → BOOKED plus the Booking row, one transaction.

        Raises:
            SlotNotFound: unknown slot
            SlotUnavailable: anything else; the loser of a race lands here
        """
        now = self._now(now)
        try:
            rows = self._transition(
                [Slots.id == slot_id, bookable_clause(now, self._cutoff(now))],
                state=SlotState.BOOKED.value,
                hold_token=None,
                hold_expires_at=None,
                updated_at=now,
            )
            if rows == 0:
                self.db.rollback()
                if self._load_slot(slot_id) is None:
                    raise SlotNotFound(f"Slot {slot_id} not found")
                logger.warning(f"Direct booking refused: slot {slot_id} not available")
                raise SlotUnavailable(f"Slot {slot_id} is not available")

            slot = self._load_slot(slot_id)
            booking = self._create_booking(slot, contact, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Booking {booking.id} created directly on slot {slot_id}")
        self._after_commit(booking, "booking_created", booking)
        return booking

    def create_manual_booking(
        self,
        provider_id: int,
        session_type: SessionType,
        contact,
        now: datetime | None = None,
    ) -> Bookings:
        """Booking without a slot; the provider schedules it out-of-band."""
        now = self._now(now)
        get_provider(self.db, provider_id)
        booking = Bookings(
            slot_id=None,
            provider_id=provider_id,
            session_type=SessionType(session_type).value,
            client_name=contact.name,
            client_email=str(contact.email),
            client_phone=contact.phone,
            client_notes=getattr(contact, "notes", None),
            is_manual=True,
            status=BookingStatus.CONFIRMED.value,
            created_at=now,
        )
        try:
            self.db.add(booking)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        logger.info(f"Manual booking {booking.id} created for provider {provider_id}")
        self._after_commit(None, "booking_created", booking)
        return booking

    def cancel_booking(
        self,
        booking_id: int,
        provider_id: int | None = None,
        now: datetime | None = None,
    ) -> Bookings:
        """
        Booking → cancelled; its slot → OPEN (EXPIRED if it already started).

        With ``provider_id`` only that provider's bookings are visible.
        Cancelling a cancelled booking is a no-op.
        """
        now = self._now(now)
        booking = self.db.get(Bookings, booking_id, populate_existing=True)
        if booking is None or (provider_id is not None and booking.provider_id != provider_id):
            raise BookingNotFound(f"Booking {booking_id} not found")
        if booking.status == BookingStatus.CANCELLED.value:
            return booking

        try:
            booking.status = BookingStatus.CANCELLED.value
            if booking.slot_id is not None:
                self._transition(
                    [
                        Slots.id == booking.slot_id,
                        Slots.state == SlotState.BOOKED.value,
                        Slots.booking_id == booking.id,
                    ],
                    state=case(
                        (Slots.starts_at > now, SlotState.OPEN.value),
                        else_=SlotState.EXPIRED.value,
                    ),
                    booking_id=None,
                    updated_at=now,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        logger.info(f"Booking {booking_id} cancelled")
        self._after_commit(booking, "booking_cancelled", booking)
        return booking
