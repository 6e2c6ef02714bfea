# slotbook/services/slots/redis_store.py
"""
Redis read cache for bookable slots using Sorted Sets.

Key format: slots:day:{provider_id}:{session_type}:{date}
Value: Sorted Set where member = "HH:MM|HH:MM|slot_id" (start|end|id),
       score = cutoff_ts (unix timestamp when the slot stops being offered).

Reads take scores strictly above now, so started or too-soon slots drop out
without a rewrite.
An "__empty__" member (score 0) marks a day computed with no slots.

Keys live for cache_ttl_seconds at most: holds that lapse publish nothing,
so a short TTL bounds how long a lapsed hold stays hidden.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone

from redis import Redis

from ...models import SessionType
from .config import BookingConfig, get_booking_config

EMPTY_SENTINEL = "__empty__"


@dataclass(frozen=True)
class SlotTime:
    slot_id: int
    start_time: str
    end_time: str


def utc_ts(dt: datetime) -> float:
    """Unix timestamp of a naive UTC datetime."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _decode(member) -> str:
    return member.decode() if isinstance(member, bytes) else member


def _parse_member(member: str) -> SlotTime:
    start_time, end_time, slot_id = member.split("|")
    return SlotTime(int(slot_id), start_time, end_time)


class SlotsRedisStore:
    """Per-day sorted sets of bookable slots for one provider and session type."""

    KEY_PREFIX = "slots:day"

    def __init__(self, redis: Redis, config: BookingConfig | None = None):
        self.redis = redis
        self.config = config or get_booking_config()

    def _key(self, provider_id: int, session_type: SessionType | str, dt: date) -> str:
        return f"{self.KEY_PREFIX}:{provider_id}:{SessionType(session_type).value}:{dt.isoformat()}"

    # ── Write ────────────────────────────────────────────────────────────

    def _queue_day(self, pipe, key: str, slots: list[tuple[SlotTime, float]]) -> None:
        pipe.delete(key)
        if slots:
            mapping = {
                f"{s.start_time}|{s.end_time}|{s.slot_id}": cutoff_ts
                for s, cutoff_ts in slots
            }
            pipe.zadd(key, mapping)
        else:
            # Empty day: sentinel so EXISTS returns True
            pipe.zadd(key, {EMPTY_SENTINEL: 0})
        pipe.expire(key, self.config.cache_ttl_seconds)

    def store_day_slots(
        self,
        provider_id: int,
        session_type: SessionType,
        dt: date,
        slots: list[tuple[SlotTime, float]],
    ) -> None:
        """
        Store bookable slots for a day.

        Args:
            provider_id: Provider ID
            session_type: Session type
            dt: Target date
            slots: List of (SlotTime, cutoff_ts) pairs.
                   Empty list → sentinel is stored.
        """
        pipe = self.redis.pipeline()
        self._queue_day(pipe, self._key(provider_id, session_type, dt), slots)
        pipe.execute()

    def store_multiple_days(
        self,
        provider_id: int,
        session_type: SessionType,
        days_slots: dict[date, list[tuple[SlotTime, float]]],
    ) -> None:
        """Replace several cached days in one pipeline."""
        if not days_slots:
            return

        pipe = self.redis.pipeline()
        for dt, slots in days_slots.items():
            self._queue_day(pipe, self._key(provider_id, session_type, dt), slots)
        pipe.execute()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_available_slots(
        self,
        provider_id: int,
        session_type: SessionType,
        dt: date,
        now: datetime,
    ) -> list[SlotTime] | None:
        """
        Get live slots for a day.

        Returns:
            Slots sorted by start time, or None on cache miss.
        """
        key = self._key(provider_id, session_type, dt)
        if not self.redis.exists(key):
            return None

        members = self.redis.zrangebyscore(key, f"({utc_ts(now)}", "+inf")
        slots = [
            _parse_member(_decode(m))
            for m in members
            if _decode(m) != EMPTY_SENTINEL
        ]
        return sorted(slots, key=lambda s: (s.start_time, s.slot_id))

    def mget_counts(
        self,
        provider_id: int,
        session_type: SessionType,
        dates: list[date],
        now: datetime,
    ) -> dict[date, int | None]:
        """
        Live slot counts for several dates in one round trip.

        Returns:
            date → count, or None where the day is not cached.
        """
        if not dates:
            return {}

        min_score = f"({utc_ts(now)}"
        pipe = self.redis.pipeline()
        for dt in dates:
            key = self._key(provider_id, session_type, dt)
            # ZCOUNT on a missing key is 0, so EXISTS tells miss from empty
            pipe.exists(key)
            pipe.zcount(key, min_score, "+inf")
        replies = pipe.execute()

        return {
            dt: (replies[2 * i + 1] if replies[2 * i] else None)
            for i, dt in enumerate(dates)
        }

    # ── Delete ───────────────────────────────────────────────────────────

    def delete_day_slots(
        self,
        provider_id: int | None = None,
        session_type: SessionType | None = None,
        dates: list[date] | None = None,
    ) -> int:
        """
        Delete cached days.

        Args:
            provider_id: Provider ID, or None for every provider
            session_type: Session type, or None for every type
            dates: Specific dates (needs provider and type), or None for all

        Returns:
            Number of deleted keys.
        """
        if dates and provider_id is not None and session_type is not None:
            keys = [self._key(provider_id, session_type, dt) for dt in dates]
        else:
            provider_part = "*" if provider_id is None else str(provider_id)
            type_part = "*" if session_type is None else SessionType(session_type).value
            keys = list(self.redis.scan_iter(
                match=f"{self.KEY_PREFIX}:{provider_part}:{type_part}:*",
                count=500,
            ))

        if not keys:
            return 0

        return self.redis.delete(*keys)
