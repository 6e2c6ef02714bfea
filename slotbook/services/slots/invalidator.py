# slotbook/services/slots/invalidator.py
"""
Cache invalidation for provider slots.

The Redis day cache is one more staleness subscriber: any PatternsChanged or
SlotsChanged event drops the cached days of the event's scope.
"""

import logging

from redis import Redis
from redis.exceptions import RedisError

from ...models import SessionType
from ..staleness import Scope, StalenessEvent, StalenessNotifier, Subscription
from .redis_store import SlotsRedisStore

logger = logging.getLogger(__name__)


def invalidate_slot_cache(
    redis: Redis,
    provider_id: int | None = None,
    session_type: SessionType | None = None,
) -> int:
    """
    Invalidate cached days.

    Args:
        redis: Redis client
        provider_id: Provider ID, or None for every provider
        session_type: Session type, or None for every type

    Returns:
        Number of deleted cache keys
    """
    store = SlotsRedisStore(redis)
    return store.delete_day_slots(provider_id, session_type)


def register_cache_invalidation(notifier: StalenessNotifier, redis: Redis) -> Subscription:
    """Subscribe the Redis day cache to every staleness event."""

    def _on_event(event: StalenessEvent) -> None:
        try:
            deleted = invalidate_slot_cache(
                redis, event.scope.provider_id, event.scope.session_type
            )
        except RedisError as e:
            logger.warning(f"Slot cache invalidation failed for {event.scope.key}: {e}")
            return
        if deleted:
            logger.info(f"Slot cache invalidated: {event.scope.key} ({deleted} keys)")

    return notifier.subscribe(Scope(None), _on_event, subscriber_id="slot-cache")
