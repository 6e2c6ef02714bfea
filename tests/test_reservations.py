"""Tests for the reservation service: holds, confirmation races, cancellation."""

import json
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from slotbook.database import init_db
from slotbook.errors import (
    BookingNotFound,
    HoldExpired,
    HoldMismatch,
    SlotNotFound,
    SlotUnavailable,
)
from slotbook.models import AvailabilityPatterns, Bookings, Providers, SessionType, Slots, SlotState
from slotbook.services.reservations import ReservationService
from slotbook.services.slots.regenerate import regenerate_rolling_window
from slotbook.services.slots.store import SlotStore
from slotbook.services.staleness import Scope

from conftest import MONDAY, NOW, make_slot

TEN = datetime(2030, 1, 7, 10, 0)
TOKEN = "holder-aaaaaaaa"
OTHER = "holder-bbbbbbbb"


@pytest.fixture
def service(db, notifier, redis, config):
    return ReservationService(db, notifier, redis, config)


@pytest.fixture
def slot(slot_factory):
    return slot_factory(TEN)


class TestHoldSlot:
    def test_hold_open_slot(self, service, slot, db):
        hold = service.hold_slot(slot.id, TOKEN, now=NOW)

        db.refresh(slot)
        assert slot.state == SlotState.HELD.value
        assert slot.hold_token == TOKEN
        assert hold.expires_at == NOW + timedelta(seconds=300)
        assert hold.version == 2

    def test_same_token_extends(self, service, slot):
        service.hold_slot(slot.id, TOKEN, now=NOW)
        hold = service.hold_slot(slot.id, TOKEN, now=NOW + timedelta(minutes=2))
        assert hold.expires_at == NOW + timedelta(minutes=2, seconds=300)

    def test_live_hold_blocks_other_token(self, service, slot):
        service.hold_slot(slot.id, TOKEN, now=NOW)
        with pytest.raises(SlotUnavailable):
            service.hold_slot(slot.id, OTHER, now=NOW + timedelta(seconds=10))

    def test_lapsed_hold_can_be_taken(self, service, slot):
        service.hold_slot(slot.id, TOKEN, ttl_seconds=60, now=NOW)
        hold = service.hold_slot(slot.id, OTHER, now=NOW + timedelta(seconds=61))
        assert hold.holder_token == OTHER

    def test_started_slot_cannot_be_held(self, service, slot):
        with pytest.raises(SlotUnavailable):
            service.hold_slot(slot.id, TOKEN, now=TEN)

    def test_unknown_slot(self, service):
        with pytest.raises(SlotNotFound):
            service.hold_slot(999, TOKEN, now=NOW)

    def test_publishes_slots_changed(self, service, slot, notifier, provider):
        events = []
        notifier.subscribe(Scope(provider.id, SessionType.PERSONAL), events.append)
        service.hold_slot(slot.id, TOKEN, now=NOW)
        assert len(events) == 1


class TestReleaseHold:
    def test_release_reopens(self, service, slot, db):
        service.hold_slot(slot.id, TOKEN, now=NOW)
        assert service.release_hold(slot.id, TOKEN, now=NOW) is True
        db.refresh(slot)
        assert slot.state == SlotState.OPEN.value

    def test_release_other_token_live(self, service, slot):
        service.hold_slot(slot.id, TOKEN, now=NOW)
        with pytest.raises(HoldMismatch):
            service.release_hold(slot.id, OTHER, now=NOW)

    def test_release_nothing(self, service, slot):
        assert service.release_hold(slot.id, TOKEN, now=NOW) is False


class TestConfirmBooking:
    def test_confirm_own_hold(self, service, slot, contact, db, redis):
        service.hold_slot(slot.id, TOKEN, now=NOW)

        booking = service.confirm_booking(slot.id, TOKEN, contact, now=NOW + timedelta(minutes=1))

        db.refresh(slot)
        assert slot.state == SlotState.BOOKED.value
        assert slot.booking_id == booking.id
        assert slot.hold_token is None
        assert booking.slot_id == slot.id
        assert booking.client_email == "asha@example.com"
        assert booking.is_manual is False
        event = json.loads(redis.lpop("events:p2p"))
        assert event["type"] == "booking_created"
        assert event["booking_id"] == booking.id

    def test_hold_mismatch(self, service, slot, contact):
        service.hold_slot(slot.id, OTHER, now=NOW)
        with pytest.raises(HoldMismatch):
            service.confirm_booking(slot.id, TOKEN, contact, now=NOW)

    def test_own_hold_lapsed_still_held(self, service, slot, contact):
        service.hold_slot(slot.id, TOKEN, ttl_seconds=60, now=NOW)
        with pytest.raises(HoldExpired):
            service.confirm_booking(slot.id, TOKEN, contact, now=NOW + timedelta(seconds=61))

    def test_own_hold_lapsed_and_reopened(self, service, slot, contact):
        service.hold_slot(slot.id, TOKEN, now=NOW)
        service.release_hold(slot.id, TOKEN, now=NOW)
        with pytest.raises(HoldExpired):
            service.confirm_booking(slot.id, TOKEN, contact, now=NOW)

    def test_lapsed_hold_taken_by_someone_else(self, service, slot, contact):
        service.hold_slot(slot.id, TOKEN, ttl_seconds=60, now=NOW)
        later = NOW + timedelta(seconds=61)
        service.hold_slot(slot.id, OTHER, now=later)

        with pytest.raises(HoldMismatch):
            service.confirm_booking(slot.id, TOKEN, contact, now=later)
        booking = service.confirm_booking(slot.id, OTHER, contact, now=later)
        assert booking.slot_id == slot.id

    def test_booked_slot_unavailable(self, service, slot, contact):
        service.book_directly(slot.id, contact, now=NOW)
        with pytest.raises(SlotUnavailable):
            service.confirm_booking(slot.id, TOKEN, contact, now=NOW)

    def test_unknown_slot(self, service, contact):
        with pytest.raises(SlotNotFound):
            service.confirm_booking(999, TOKEN, contact, now=NOW)


class TestBookDirectly:
    def test_books_open_slot(self, service, slot, contact, db):
        booking = service.book_directly(slot.id, contact, now=NOW)
        db.refresh(slot)
        assert slot.state == SlotState.BOOKED.value
        assert db.query(Bookings).count() == 1
        assert booking.status == "confirmed"

    def test_second_booking_refused(self, service, slot, contact, db):
        service.book_directly(slot.id, contact, now=NOW)
        with pytest.raises(SlotUnavailable):
            service.book_directly(slot.id, contact, now=NOW)
        assert db.query(Bookings).count() == 1

    def test_unconfirmed_hold_lets_another_party_book(self, service, slot, contact, db):
        service.hold_slot(slot.id, TOKEN, now=NOW)
        after_ttl = NOW + timedelta(seconds=301)

        store = SlotStore(db, service.config)
        bookable = store.list_bookable(provider_id=slot.provider_id, session_type=SessionType.PERSONAL,
                                       start_date=MONDAY, end_date=MONDAY + timedelta(days=1), now=after_ttl)
        assert [s.id for s in bookable] == [slot.id]

        booking = service.book_directly(slot.id, contact, now=after_ttl)
        assert booking.slot_id == slot.id

    def test_live_hold_blocks_direct_booking(self, service, slot, contact):
        service.hold_slot(slot.id, TOKEN, now=NOW)
        with pytest.raises(SlotUnavailable):
            service.book_directly(slot.id, contact, now=NOW)

    def test_booking_ten_leaves_seven_open(self, db, provider, config, contact):
        db.add(AvailabilityPatterns(
            provider_id=provider.id, session_type="PERSONAL", day_of_week=1,
            start_time="09:00", end_time="17:00", timezone="UTC", is_active=True,
        ))
        db.commit()
        regenerate_rolling_window(db, provider, now=NOW, config=config)
        db.commit()
        ten = db.query(Slots).filter(Slots.date == MONDAY, Slots.start_time == "10:00").one()

        ReservationService(db, config=config).book_directly(ten.id, contact, now=NOW)

        open_slots = db.query(Slots).filter(Slots.date == MONDAY, Slots.state == SlotState.OPEN.value).all()
        assert len(open_slots) == 7
        assert "10:00" not in [s.start_time for s in open_slots]


class TestConcurrentBooking:
    def test_two_parallel_bookings_one_wins(self, tmp_path, contact, config):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}",
            connect_args={"check_same_thread": False, "timeout": 15},
        )
        init_db(engine)
        Session = sessionmaker(bind=engine, autoflush=False)

        setup = Session()
        provider = Providers(slug="race", display_name="Race", timezone="UTC")
        setup.add(provider)
        setup.commit()
        slot_id = make_slot(setup, provider, TEN).id
        setup.close()

        barrier = threading.Barrier(2)
        results = []

        def attempt():
            session = Session()
            try:
                barrier.wait()
                booking = ReservationService(session, config=config).book_directly(slot_id, contact, now=NOW)
                results.append(("ok", booking.id))
            except SlotUnavailable as e:
                results.append(("lost", e.code))
            finally:
                session.close()

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        check = Session()
        try:
            assert sorted(r[0] for r in results) == ["lost", "ok"]
            assert check.query(Bookings).count() == 1
            assert check.get(Slots, slot_id).state == SlotState.BOOKED.value
        finally:
            check.close()
            engine.dispose()


class TestManualBooking:
    def test_manual_booking_has_no_slot(self, service, provider, contact, redis):
        booking = service.create_manual_booking(provider.id, SessionType.WEBINAR, contact, now=NOW)

        assert booking.slot_id is None
        assert booking.is_manual is True
        assert booking.session_type == "WEBINAR"
        assert json.loads(redis.lpop("events:p2p"))["is_manual"] is True


class TestCancelBooking:
    def test_cancel_reopens_future_slot(self, service, slot, contact, db):
        booking = service.book_directly(slot.id, contact, now=NOW)

        cancelled = service.cancel_booking(booking.id, now=NOW)

        db.refresh(slot)
        assert cancelled.status == "cancelled"
        assert slot.state == SlotState.OPEN.value
        assert slot.booking_id is None
        assert service.book_directly(slot.id, contact, now=NOW).slot_id == slot.id

    def test_cancel_after_start_expires_slot(self, service, slot, contact, db):
        booking = service.book_directly(slot.id, contact, now=NOW)
        service.cancel_booking(booking.id, now=TEN + timedelta(minutes=5))
        db.refresh(slot)
        assert slot.state == SlotState.EXPIRED.value

    def test_cancel_is_idempotent(self, service, slot, contact):
        booking = service.book_directly(slot.id, contact, now=NOW)
        service.cancel_booking(booking.id, now=NOW)
        assert service.cancel_booking(booking.id, now=NOW).status == "cancelled"

    def test_unknown_booking(self, service):
        with pytest.raises(BookingNotFound):
            service.cancel_booking(999, now=NOW)

    def test_other_providers_booking_not_found(self, service, slot, contact, provider, db):
        booking = service.book_directly(slot.id, contact, now=NOW)

        with pytest.raises(BookingNotFound):
            service.cancel_booking(booking.id, provider_id=provider.id + 1, now=NOW)

        db.refresh(slot)
        assert slot.state == SlotState.BOOKED.value
        assert service.cancel_booking(booking.id, provider_id=provider.id, now=NOW).status == "cancelled"
