# slotbook/routers/reservations.py
"""
Reservation endpoints.

Race outcomes come back as 409 with code slot_unavailable / hold_expired /
hold_mismatch (see the BookingError handler in main.py).
"""

from fastapi import APIRouter, Depends, status
from redis import Redis
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_config, get_current_provider_id, get_notifier
from ..redis_client import get_redis
from ..schemas.bookings import (
    BookingRead,
    ConfirmBooking,
    DirectBooking,
    HoldCreate,
    HoldRead,
    ManualBooking,
)
from ..services.providers import get_provider_by_slug
from ..services.reservations import ReservationService
from ..services.slots.config import BookingConfig
from ..services.staleness import StalenessNotifier

router = APIRouter(prefix="/reservations", tags=["reservations"])


def _service(
    db: Session = Depends(get_db),
    notifier: StalenessNotifier = Depends(get_notifier),
    redis: Redis = Depends(get_redis),
    config: BookingConfig = Depends(get_config),
) -> ReservationService:
    return ReservationService(db, notifier, redis, config)


@router.post("/holds", response_model=HoldRead, status_code=status.HTTP_201_CREATED)
def create_hold(data: HoldCreate, service: ReservationService = Depends(_service)):
    hold = service.hold_slot(data.slot_id, data.holder_token, data.ttl_seconds)
    return HoldRead(
        slot_id=hold.slot_id,
        holder_token=hold.holder_token,
        expires_at=hold.expires_at,
        version=hold.version,
    )


@router.delete("/holds/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
def release_hold(
    slot_id: int,
    holder_token: str,
    service: ReservationService = Depends(_service),
):
    service.release_hold(slot_id, holder_token)


@router.post("/confirm", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def confirm_booking(data: ConfirmBooking, service: ReservationService = Depends(_service)):
    return service.confirm_booking(data.slot_id, data.holder_token, data.contact)


@router.post("/book", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def book_directly(data: DirectBooking, service: ReservationService = Depends(_service)):
    return service.book_directly(data.slot_id, data.contact)


@router.post("/manual", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def create_manual_booking(
    data: ManualBooking,
    service: ReservationService = Depends(_service),
):
    provider = get_provider_by_slug(service.db, data.provider_slug)
    return service.create_manual_booking(provider.id, data.session_type, data.contact)


@router.post("/{booking_id}/cancel", response_model=BookingRead)
def cancel_booking(
    booking_id: int,
    provider_id: int = Depends(get_current_provider_id),
    service: ReservationService = Depends(_service),
):
    return service.cancel_booking(booking_id, provider_id)
