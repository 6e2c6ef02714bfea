# slotbook/services/slots/__init__.py
"""
Slots module.

Patterns are expanded into concrete slots (generator), materialized in the
slots table (store) and served through a short-lived Redis day cache
(redis_store, dropped by the invalidator on every staleness event).
"""

from .config import BookingConfig, SessionTypeConfig, get_booking_config
from .generator import GenerationResult, SlotCandidate, generate_slots
from .store import GenerationReport, SlotStore
from .redis_store import SlotsRedisStore, SlotTime
from .invalidator import invalidate_slot_cache, register_cache_invalidation
from .regenerate import regenerate_rolling_window, regenerate_slots, rolling_window
from .availability import list_available_dates, list_available_times, list_public_slots

__all__ = [
    "BookingConfig",
    "SessionTypeConfig",
    "get_booking_config",
    "GenerationResult",
    "SlotCandidate",
    "generate_slots",
    "GenerationReport",
    "SlotStore",
    "SlotsRedisStore",
    "SlotTime",
    "invalidate_slot_cache",
    "register_cache_invalidation",
    "regenerate_rolling_window",
    "regenerate_slots",
    "rolling_window",
    "list_available_dates",
    "list_available_times",
    "list_public_slots",
]
