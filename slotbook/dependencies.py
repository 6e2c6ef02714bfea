# slotbook/dependencies.py

from fastapi import Header, HTTPException, status

from .redis_client import redis_client
from .services.slots.config import BookingConfig, get_booking_config
from .services.staleness import StalenessNotifier

# One notifier per worker process; other workers are reached via Redis.
notifier = StalenessNotifier(redis_client)


def get_notifier() -> StalenessNotifier:
    return notifier


def get_config() -> BookingConfig:
    return get_booking_config()


def get_current_provider_id(x_provider_id: int | None = Header(None)) -> int:
    """Provider identity, set by the upstream gateway."""
    if x_provider_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Provider-Id header required",
        )
    return x_provider_id
