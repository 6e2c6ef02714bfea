"""
slotbook/services/events.py

Event emitter: pushes booking events to a Redis queue for the mailer.

Queue:
- events:p2p: one event per booking created / cancelled

Fire-and-forget: a failed push is logged and never undoes the booking.
"""

import json
import time
import logging

from redis import Redis

logger = logging.getLogger(__name__)

P2P_QUEUE = "events:p2p"


def emit_event(redis: Redis, event_type: str, payload: dict) -> bool:
    """
    Emit a p2p event (instant delivery).

    Pushed to Redis list `events:p2p` for the consumer loop.
    Returns False if the push failed.
    """
    event = {
        "type": event_type,
        **payload,
        "ts": int(time.time()),
    }
    try:
        redis.rpush(P2P_QUEUE, json.dumps(event, default=str))
        logger.info(f"Event emitted: {event_type} → {P2P_QUEUE}")
        return True
    except Exception as e:
        logger.error(f"Failed to emit event {event_type}: {e}")
        return False


def booking_payload(booking) -> dict:
    """Event payload for a Bookings row."""
    return {
        "booking_id": booking.id,
        "provider_id": booking.provider_id,
        "session_type": booking.session_type,
        "slot_id": booking.slot_id,
        "is_manual": bool(booking.is_manual),
        "client_name": booking.client_name,
        "client_email": booking.client_email,
        "client_phone": booking.client_phone,
    }
