"""Tests for the client booking wizard and its HTTP backend."""

import asyncio
from datetime import date, datetime, timedelta

import httpx
import pytest

from slotbook.errors import AvailabilityFetchError, HoldMismatch, NotFoundError, SlotUnavailable
from slotbook.models import SessionType, utcnow
from slotbook.services.staleness import Scope, StalenessKind
from slotbook.wizard import (
    ApiClient,
    AvailabilityStatus,
    BookingReceipt,
    BookingWizard,
    HoldInfo,
    InvalidTransitionError,
    SlotOption,
    WizardStep,
)

DAY = date(2030, 1, 7)


def option(slot_id, hour):
    return SlotOption(slot_id=slot_id, date=DAY, start_time=f"{hour:02d}:00", end_time=f"{hour + 1:02d}:00")


class FakeBackend:
    """In-memory BookingBackend with scriptable failures."""

    def __init__(self, slots=None):
        self.slots = list(slots or [])
        self.calls = []
        self.fetch_error = None
        self.hold_error = None
        self.submit_error = None
        self.dates_gate = None
        self._next_id = 1

    async def list_available_dates(self, session_type):
        self.calls.append(("dates", session_type))
        if self.dates_gate is not None:
            await self.dates_gate.wait()
        if self.fetch_error:
            raise self.fetch_error
        return sorted({s.date for s in self.slots})

    async def list_available_times(self, session_type, target_date):
        self.calls.append(("times", target_date))
        return [s for s in self.slots if s.date == target_date]

    async def hold_slot(self, slot_id, holder_token, ttl_seconds=None):
        self.calls.append(("hold", slot_id))
        if self.hold_error:
            raise self.hold_error
        return HoldInfo(slot_id, holder_token, datetime(2030, 1, 6, 12, 5))

    async def release_hold(self, slot_id, holder_token):
        self.calls.append(("release", slot_id))

    def _receipt(self, slot_id, is_manual=False):
        receipt = BookingReceipt(self._next_id, slot_id, "PERSONAL", is_manual, "confirmed")
        self._next_id += 1
        return receipt

    async def confirm_booking(self, slot_id, holder_token, contact):
        self.calls.append(("confirm", slot_id))
        if self.submit_error:
            raise self.submit_error
        self.slots = [s for s in self.slots if s.slot_id != slot_id]
        return self._receipt(slot_id)

    async def book_directly(self, slot_id, contact):
        self.calls.append(("book", slot_id))
        if self.submit_error:
            raise self.submit_error
        return self._receipt(slot_id)

    async def create_manual_booking(self, session_type, contact):
        self.calls.append(("manual", session_type))
        return self._receipt(None, is_manual=True)

    def count(self, name):
        return sum(1 for c in self.calls if c[0] == name)


async def at_selection(backend, session_type=SessionType.PERSONAL, **kwargs):
    wizard = BookingWizard(backend, session_type, **kwargs)
    assert wizard.set_contact("Asha Mehta", "asha@example.com", "9876543210")
    await wizard.advance()
    return wizard


class TestContact:
    def test_invalid_contact_reports_errors(self):
        wizard = BookingWizard(FakeBackend(), SessionType.PERSONAL)
        assert not wizard.set_contact("A", "not-an-email", "12")
        assert wizard.contact is None
        assert len(wizard.contact_errors) == 3

    @pytest.mark.asyncio
    async def test_cannot_advance_without_contact(self):
        wizard = BookingWizard(FakeBackend(), SessionType.PERSONAL)
        with pytest.raises(InvalidTransitionError):
            await wizard.advance()

    @pytest.mark.asyncio
    async def test_cannot_advance_after_invalid_correction(self):
        wizard = BookingWizard(FakeBackend(), SessionType.PERSONAL)
        assert wizard.set_contact("Asha Mehta", "asha@example.com", "9876543210")
        assert not wizard.set_contact("Asha Mehta", "oops", "9876543210")

        assert wizard.contact.email == "asha@example.com"
        with pytest.raises(InvalidTransitionError):
            await wizard.advance()

    @pytest.mark.asyncio
    async def test_mistyped_correction_on_review_blocks_submit(self):
        backend = FakeBackend()
        wizard = await at_selection(backend, SessionType.WEBINAR)
        await wizard.advance()
        assert wizard.step is WizardStep.REVIEWING

        assert not wizard.set_contact("Asha Mehta", "oops", "9876543210")
        assert await wizard.submit() is None

        assert wizard.step is WizardStep.REVIEWING
        assert wizard.submit_error == "Contact details are missing or invalid"
        assert backend.count("manual") == 0

        assert wizard.set_contact("Asha Mehta", "asha.m@example.com", "9876543210")
        receipt = await wizard.submit()
        assert receipt.is_manual is True
        assert wizard.step is WizardStep.SUBMITTED

    @pytest.mark.asyncio
    async def test_contact_locked_while_selecting(self):
        wizard = await at_selection(FakeBackend([option(1, 9)]))

        with pytest.raises(InvalidTransitionError):
            wizard.set_contact("Asha Mehta", "asha@example.com", "9876543210")


class TestAvailability:
    @pytest.mark.asyncio
    async def test_loads_first_date(self):
        wizard = await at_selection(FakeBackend([option(1, 9), option(2, 10)]))

        assert wizard.step is WizardStep.SELECTING_SLOT
        assert wizard.availability.status is AvailabilityStatus.LOADED
        assert wizard.availability.selected_date == DAY
        assert [s.slot_id for s in wizard.availability.slots] == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_webinar_goes_to_manual_review(self):
        backend = FakeBackend()
        wizard = await at_selection(backend, SessionType.WEBINAR)

        assert wizard.availability.status is AvailabilityStatus.EMPTY
        assert await wizard.advance() is WizardStep.REVIEWING
        assert wizard.manual_booking is True

        receipt = await wizard.submit()
        assert receipt.is_manual is True
        assert backend.count("manual") == 1

    @pytest.mark.asyncio
    async def test_failed_refetch_keeps_cache_marked_stale(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend)

        backend.fetch_error = AvailabilityFetchError("connection refused")
        assert await wizard.load_availability() is False

        assert wizard.availability.status is AvailabilityStatus.ERRORED
        assert wizard.availability.stale is True
        assert [s.slot_id for s in wizard.availability.slots] == [1]
        assert await wizard.advance() is WizardStep.REVIEWING

    @pytest.mark.asyncio
    async def test_first_fetch_error_still_allows_manual_path(self):
        backend = FakeBackend()
        backend.fetch_error = AvailabilityFetchError("down")
        wizard = await at_selection(backend)

        assert wizard.availability.status is AvailabilityStatus.ERRORED
        assert wizard.availability.slots == []
        await wizard.advance()
        assert wizard.manual_booking is True

    @pytest.mark.asyncio
    async def test_cancel_fetch_restores_cache(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend)

        backend.dates_gate = asyncio.Event()
        task = asyncio.create_task(wizard.load_availability())
        await asyncio.sleep(0)
        assert wizard.availability.status is AvailabilityStatus.LOADING

        assert wizard.cancel_fetch() is True
        assert wizard.availability.status is AvailabilityStatus.LOADED

        backend.slots = []
        backend.dates_gate.set()
        assert await task is False
        assert [s.slot_id for s in wizard.availability.slots] == [1]

    @pytest.mark.asyncio
    async def test_newer_fetch_supersedes_older(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend)

        backend.dates_gate = asyncio.Event()
        older = asyncio.create_task(wizard.load_availability())
        await asyncio.sleep(0)
        newer = asyncio.create_task(wizard.load_availability())
        await asyncio.sleep(0)
        backend.dates_gate.set()

        assert await older is False
        assert await newer is True
        assert wizard.availability.status is AvailabilityStatus.LOADED

    @pytest.mark.asyncio
    async def test_go_back_cancels_fetch(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend)
        backend.dates_gate = asyncio.Event()
        task = asyncio.create_task(wizard.load_availability())
        await asyncio.sleep(0)

        assert wizard.go_back() is WizardStep.COLLECTING_CONTACT
        backend.dates_gate.set()
        assert await task is False


class TestSelection:
    @pytest.mark.asyncio
    async def test_select_places_hold(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend)

        assert await wizard.select_slot(1) is True
        assert wizard.hold.slot_id == 1
        assert wizard.hold.holder_token == wizard.holder_token

    @pytest.mark.asyncio
    async def test_changing_selection_releases_old_hold(self):
        backend = FakeBackend([option(1, 9), option(2, 10)])
        wizard = await at_selection(backend)
        await wizard.select_slot(1)

        await wizard.select_slot(2)

        assert ("release", 1) in backend.calls
        assert wizard.hold.slot_id == 2

    @pytest.mark.asyncio
    async def test_hold_conflict_refetches(self):
        backend = FakeBackend([option(1, 9), option(2, 10)])
        wizard = await at_selection(backend)
        backend.hold_error = SlotUnavailable("taken")

        assert await wizard.select_slot(1) is False

        assert wizard.conflict == "slot_unavailable"
        assert wizard.selected_slot is None
        assert backend.count("dates") == 2

    @pytest.mark.asyncio
    async def test_unknown_slot_rejected(self):
        wizard = await at_selection(FakeBackend([option(1, 9)]))
        with pytest.raises(InvalidTransitionError):
            await wizard.select_slot(42)

    @pytest.mark.asyncio
    async def test_manual_booking_drops_hold(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend)
        await wizard.select_slot(1)

        assert await wizard.use_manual_booking() is WizardStep.REVIEWING
        assert wizard.hold is None
        assert ("release", 1) in backend.calls


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_confirms_hold(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend)
        await wizard.select_slot(1)
        await wizard.advance()

        receipt = await wizard.submit()

        assert receipt.slot_id == 1
        assert wizard.step is WizardStep.SUBMITTED
        assert backend.count("confirm") == 1

    @pytest.mark.asyncio
    async def test_without_holds_books_directly(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend, use_holds=False)
        await wizard.select_slot(1)
        await wizard.advance()

        await wizard.submit()

        assert backend.count("hold") == 0
        assert backend.count("book") == 1

    @pytest.mark.asyncio
    async def test_submit_is_idempotent(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend)
        await wizard.select_slot(1)
        await wizard.advance()

        first, second = await asyncio.gather(wizard.submit(), wizard.submit())
        third = await wizard.submit()

        assert first == second == third
        assert backend.count("confirm") == 1

    @pytest.mark.asyncio
    async def test_race_returns_to_selection(self):
        backend = FakeBackend([option(1, 9), option(2, 10)])
        wizard = await at_selection(backend)
        await wizard.select_slot(1)
        await wizard.advance()
        backend.submit_error = HoldMismatch("someone else")

        assert await wizard.submit() is None

        assert wizard.step is WizardStep.SELECTING_SLOT
        assert wizard.conflict == "hold_mismatch"
        assert wizard.hold is None
        assert wizard.availability.status is AvailabilityStatus.LOADED

    @pytest.mark.asyncio
    async def test_other_error_stays_in_review(self):
        backend = FakeBackend([option(1, 9)])
        wizard = await at_selection(backend)
        await wizard.select_slot(1)
        await wizard.advance()
        backend.submit_error = AvailabilityFetchError("timeout")

        assert await wizard.submit() is None

        assert wizard.step is WizardStep.REVIEWING
        assert wizard.submit_error == "timeout"

    @pytest.mark.asyncio
    async def test_submit_from_selection_rejected(self):
        wizard = await at_selection(FakeBackend([option(1, 9)]))
        with pytest.raises(InvalidTransitionError):
            await wizard.submit()


class TestWatch:
    @pytest.mark.asyncio
    async def test_staleness_event_marks_loaded_view(self, notifier):
        wizard = await at_selection(FakeBackend([option(1, 9)]))
        wizard.watch(notifier, Scope(1, SessionType.PERSONAL))

        notifier.publish(StalenessKind.SLOTS_CHANGED, Scope(1, SessionType.PERSONAL))
        assert wizard.availability.stale is True

        await wizard.load_availability()
        assert wizard.availability.stale is False

    @pytest.mark.asyncio
    async def test_unwatch(self, notifier):
        wizard = await at_selection(FakeBackend([option(1, 9)]))
        wizard.watch(notifier, Scope(1))
        wizard.unwatch()

        notifier.publish(StalenessKind.PATTERNS_CHANGED, Scope(1))

        assert wizard.availability.stale is False
        assert notifier.subscriber_count == 0


class TestApiClientErrors:
    @staticmethod
    def client_for(handler):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return ApiClient("dr-rao", base_url="http://api", client=http)

    @pytest.mark.asyncio
    async def test_race_code_mapped(self, contact):
        api = self.client_for(lambda r: httpx.Response(409, json={"detail": "gone", "code": "slot_unavailable"}))
        with pytest.raises(SlotUnavailable):
            await api.book_directly(1, contact)

    @pytest.mark.asyncio
    async def test_server_error_is_fetch_error(self):
        api = self.client_for(lambda r: httpx.Response(503, text="unavailable"))
        with pytest.raises(AvailabilityFetchError):
            await api.list_available_dates(SessionType.PERSONAL)

    @pytest.mark.asyncio
    async def test_transport_error_is_fetch_error(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        api = self.client_for(refuse)
        with pytest.raises(AvailabilityFetchError):
            await api.list_available_dates(SessionType.PERSONAL)

    @pytest.mark.asyncio
    async def test_not_found(self):
        api = self.client_for(lambda r: httpx.Response(404, json={"detail": "no provider", "code": "not_found"}))
        with pytest.raises(NotFoundError):
            await api.list_available_dates(SessionType.PERSONAL)


class TestWizardAgainstApi:
    @pytest.mark.asyncio
    async def test_full_flow(self, client, slot_factory, db):
        start = (utcnow() + timedelta(days=2)).replace(hour=10, minute=0, second=0, microsecond=0)
        slot = slot_factory(start)
        api = ApiClient("dr-rao", base_url="http://test", client=client)

        wizard = await at_selection(api)
        assert [s.slot_id for s in wizard.availability.slots] == [slot.id]
        assert await wizard.select_slot(slot.id) is True
        await wizard.advance()
        receipt = await wizard.submit()

        assert receipt.slot_id == slot.id
        assert receipt.is_manual is False

        db.refresh(slot)
        assert slot.state == "BOOKED"

    @pytest.mark.asyncio
    async def test_manual_flow_for_empty_webinar(self, client, provider):
        api = ApiClient("dr-rao", base_url="http://test", client=client)

        wizard = await at_selection(api, SessionType.WEBINAR)
        assert wizard.availability.status is AvailabilityStatus.EMPTY
        await wizard.advance()
        receipt = await wizard.submit()

        assert receipt.is_manual is True
        assert receipt.slot_id is None
