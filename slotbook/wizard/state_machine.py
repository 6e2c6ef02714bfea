"""
slotbook/wizard/state_machine.py

Client booking flow:

    COLLECTING_CONTACT → SELECTING_SLOT → REVIEWING → SUBMITTED
                     ←               ←            (go_back)

SELECTING_SLOT carries the availability sub-state
IDLE / LOADING / LOADED / EMPTY / ERRORED.

Every failure leaves a way forward:
- no slots, or availability unreachable → review as a manual booking
- a race on hold or submit → back to SELECTING_SLOT with `conflict` set
  and a fresh fetch
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from ..errors import (
    AvailabilityFetchError,
    BookingError,
    HoldExpired,
    HoldMismatch,
    SlotUnavailable,
)
from ..models import SessionType
from ..schemas.bookings import BookingContact
from ..services.staleness import Scope, StalenessEvent, StalenessNotifier, Subscription
from .backend import BookingBackend, BookingReceipt, HoldInfo, SlotOption

logger = logging.getLogger(__name__)

RACE_OUTCOMES = (SlotUnavailable, HoldExpired, HoldMismatch)


class WizardStep(str, Enum):
    COLLECTING_CONTACT = "COLLECTING_CONTACT"
    SELECTING_SLOT = "SELECTING_SLOT"
    REVIEWING = "REVIEWING"
    SUBMITTED = "SUBMITTED"


class AvailabilityStatus(str, Enum):
    IDLE = "IDLE"
    LOADING = "LOADING"
    LOADED = "LOADED"
    EMPTY = "EMPTY"
    ERRORED = "ERRORED"


class InvalidTransitionError(Exception):
    """Action not allowed in the wizard's current step."""


@dataclass
class Availability:
    status: AvailabilityStatus = AvailabilityStatus.IDLE
    dates: list[date] = field(default_factory=list)
    selected_date: Optional[date] = None
    slots: list[SlotOption] = field(default_factory=list)
    stale: bool = False
    error: Optional[str] = None
    fetched_at: Optional[float] = None


@dataclass(frozen=True)
class _Snapshot:
    status: AvailabilityStatus
    dates: list[date]
    selected_date: Optional[date]
    slots: list[SlotOption]
    fetched_at: float


class BookingWizard:
    """One client's pass through the booking flow."""

    def __init__(
        self,
        backend: BookingBackend,
        session_type: SessionType,
        use_holds: bool = True,
        hold_ttl_seconds: Optional[int] = None,
    ):
        self.backend = backend
        self.session_type = SessionType(session_type)
        self.use_holds = use_holds
        self.hold_ttl_seconds = hold_ttl_seconds
        self.holder_token = uuid.uuid4().hex

        self.step = WizardStep.COLLECTING_CONTACT
        self.contact: Optional[BookingContact] = None
        self.contact_errors: list[str] = []
        self.availability = Availability()
        self.selected_slot: Optional[SlotOption] = None
        self.hold: Optional[HoldInfo] = None
        self.manual_booking = False
        self.conflict: Optional[str] = None
        self.submit_error: Optional[str] = None
        self.booking: Optional[BookingReceipt] = None

        self._fetch_seq = 0
        self._cache: Optional[_Snapshot] = None
        self._submit_lock = asyncio.Lock()
        self._subscription: Optional[Subscription] = None

    # ------------------------------------------------------------------
    # Contact
    # ------------------------------------------------------------------

    def set_contact(self, name: str, email: str, phone: str, notes: Optional[str] = None) -> bool:
        """
        Validate and store contact details.

        False (with contact_errors) if invalid; the last valid contact is kept
        but the wizard will not advance or submit until the errors are fixed.
        """
        if self.step not in (WizardStep.COLLECTING_CONTACT, WizardStep.REVIEWING):
            raise InvalidTransitionError(f"Contact details cannot be changed in {self.step.value}")
        try:
            contact = BookingContact(name=name, email=email, phone=phone, notes=notes)
        except PydanticValidationError as e:
            self.contact_errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            return False
        self.contact = contact
        self.contact_errors = []
        return True

    @property
    def contact_ready(self) -> bool:
        return self.contact is not None and not self.contact_errors

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def advance(self) -> WizardStep:
        if self.step == WizardStep.COLLECTING_CONTACT:
            if not self.contact_ready:
                raise InvalidTransitionError("Contact details are missing or invalid")
            self.step = WizardStep.SELECTING_SLOT
            await self.load_availability()
            return self.step

        if self.step == WizardStep.SELECTING_SLOT:
            if self.availability.status not in (
                AvailabilityStatus.LOADED,
                AvailabilityStatus.EMPTY,
                AvailabilityStatus.ERRORED,
            ):
                raise InvalidTransitionError(
                    f"Cannot review while availability is {self.availability.status.value}"
                )
            self.manual_booking = self.selected_slot is None
            self.step = WizardStep.REVIEWING
            return self.step

        raise InvalidTransitionError(f"Cannot advance from {self.step.value}")

    def go_back(self) -> WizardStep:
        if self.step == WizardStep.SELECTING_SLOT:
            self.cancel_fetch()
            self.step = WizardStep.COLLECTING_CONTACT
        elif self.step == WizardStep.REVIEWING:
            self.step = WizardStep.SELECTING_SLOT
        else:
            raise InvalidTransitionError(f"Cannot go back from {self.step.value}")
        return self.step

    async def use_manual_booking(self) -> WizardStep:
        """Skip slot selection: review as a manual booking."""
        if self.step not in (WizardStep.SELECTING_SLOT, WizardStep.REVIEWING):
            raise InvalidTransitionError(f"Cannot switch to manual booking from {self.step.value}")
        await self._drop_hold()
        self.selected_slot = None
        self.manual_booking = True
        self.step = WizardStep.REVIEWING
        return self.step

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def load_availability(self, target_date: Optional[date] = None) -> bool:
        """
        Fetch dates, then the times of ``target_date`` (or the first date).

        A newer fetch or cancel_fetch() supersedes this one: its results are
        dropped. Returns True if this fetch updated the state.
        """
        if self.step != WizardStep.SELECTING_SLOT:
            raise InvalidTransitionError("Availability is only loaded while selecting a slot")

        self._fetch_seq += 1
        token = self._fetch_seq
        self.availability.status = AvailabilityStatus.LOADING
        self.availability.error = None

        try:
            dates = await self.backend.list_available_dates(self.session_type)
            if token != self._fetch_seq:
                return False

            day = None
            slots: list[SlotOption] = []
            if dates:
                day = target_date if target_date in dates else dates[0]
                slots = await self.backend.list_available_times(self.session_type, day)
                if token != self._fetch_seq:
                    return False
        except asyncio.CancelledError:
            if token == self._fetch_seq:
                self.cancel_fetch()
            raise
        except (AvailabilityFetchError, BookingError) as e:
            if token != self._fetch_seq:
                return False
            self._fail_fetch(e)
            return False

        status = AvailabilityStatus.LOADED if slots else AvailabilityStatus.EMPTY
        self._cache = _Snapshot(status, list(dates), day, list(slots), time.time())
        self._apply_snapshot(self._cache, stale=False)

        if self.selected_slot and self.selected_slot not in slots and self.hold is None:
            self.selected_slot = None
        return True

    def cancel_fetch(self) -> bool:
        """Drop the in-flight fetch. Never touches a server-side hold."""
        if self.availability.status != AvailabilityStatus.LOADING:
            return False
        self._fetch_seq += 1
        if self._cache is not None:
            self._apply_snapshot(self._cache, stale=self.availability.stale)
        else:
            self.availability.status = AvailabilityStatus.IDLE
        return True

    def _apply_snapshot(self, snapshot: _Snapshot, stale: bool) -> None:
        self.availability.status = snapshot.status
        self.availability.dates = list(snapshot.dates)
        self.availability.selected_date = snapshot.selected_date
        self.availability.slots = list(snapshot.slots)
        self.availability.fetched_at = snapshot.fetched_at
        self.availability.stale = stale

    def _fail_fetch(self, error: Exception) -> None:
        logger.warning(f"Availability fetch failed: {error}")
        if self._cache is not None:
            self._apply_snapshot(self._cache, stale=True)
        else:
            self.availability.dates = []
            self.availability.slots = []
            self.availability.selected_date = None
        self.availability.status = AvailabilityStatus.ERRORED
        self.availability.error = str(error)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_slot(self, slot_id: int) -> bool:
        """
        Choose a slot (and hold it when use_holds is on).

        False on a hold conflict: the wizard has refetched and `conflict`
        says why.
        """
        if self.step != WizardStep.SELECTING_SLOT:
            raise InvalidTransitionError("Slots are selected in SELECTING_SLOT")
        slot = next((s for s in self.availability.slots if s.slot_id == slot_id), None)
        if slot is None:
            raise InvalidTransitionError(f"Slot {slot_id} is not on offer")

        if self.hold is not None and self.hold.slot_id != slot_id:
            await self._drop_hold()
        self.selected_slot = slot
        self.conflict = None

        if self.use_holds and self.hold is None:
            try:
                self.hold = await self.backend.hold_slot(slot_id, self.holder_token, self.hold_ttl_seconds)
            except RACE_OUTCOMES as e:
                await self._on_conflict(e)
                return False
            except AvailabilityFetchError as e:
                # Booked directly on submit instead
                logger.warning(f"Hold on slot {slot_id} not placed: {e}")
        return True

    async def clear_selection(self) -> None:
        await self._drop_hold()
        self.selected_slot = None

    async def _drop_hold(self) -> None:
        if self.hold is None:
            return
        hold, self.hold = self.hold, None
        try:
            await self.backend.release_hold(hold.slot_id, hold.holder_token)
        except (AvailabilityFetchError, BookingError) as e:
            logger.warning(f"Hold on slot {hold.slot_id} not released: {e}")

    async def _on_conflict(self, error: BookingError) -> None:
        logger.warning(f"Booking conflict: {error.code}")
        self.conflict = error.code
        self.hold = None
        self.selected_slot = None
        self.manual_booking = False
        self.step = WizardStep.SELECTING_SLOT
        await self.load_availability(self.availability.selected_date)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(self) -> Optional[BookingReceipt]:
        """
        Create the booking.

        - hold owned → confirm_booking
        - slot chosen without hold → book_directly
        - no slot → create_manual_booking

        Once SUBMITTED, returns the stored booking without calling the backend.
        On a race outcome returns None with the wizard back in SELECTING_SLOT.
        """
        async with self._submit_lock:
            if self.step == WizardStep.SUBMITTED:
                return self.booking
            if self.step != WizardStep.REVIEWING:
                raise InvalidTransitionError(f"Cannot submit from {self.step.value}")

            if not self.contact_ready:
                self.submit_error = "Contact details are missing or invalid"
                return None

            self.submit_error = None
            slot = self.selected_slot
            try:
                if slot is not None and self.hold is not None and self.hold.slot_id == slot.slot_id:
                    receipt = await self.backend.confirm_booking(slot.slot_id, self.hold.holder_token, self.contact)
                elif slot is not None:
                    receipt = await self.backend.book_directly(slot.slot_id, self.contact)
                else:
                    receipt = await self.backend.create_manual_booking(self.session_type, self.contact)
            except RACE_OUTCOMES as e:
                await self._on_conflict(e)
                return None
            except (AvailabilityFetchError, BookingError) as e:
                logger.warning(f"Submit failed: {e}")
                self.submit_error = str(e)
                return None

            self.booking = receipt
            self.hold = None
            self.step = WizardStep.SUBMITTED
            logger.info(f"Booking {receipt.id} submitted (manual={receipt.is_manual})")
            return receipt

    # ------------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------------

    def watch(self, notifier: StalenessNotifier, scope: Scope) -> Subscription:
        """Mark loaded availability stale on PatternsChanged / SlotsChanged."""
        self.unwatch()
        self._subscription = notifier.subscribe(scope, self._on_staleness)
        return self._subscription

    def unwatch(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_staleness(self, event: StalenessEvent) -> None:
        if self.availability.status in (
            AvailabilityStatus.LOADED,
            AvailabilityStatus.EMPTY,
            AvailabilityStatus.ERRORED,
        ):
            self.availability.stale = True
