# slotbook/services/staleness.py
"""
Staleness notifier: tells every reader of slot data that it may be outdated.

Events:
- PatternsChanged: a provider's weekly patterns were saved or withdrawn
- SlotsChanged: slots were generated, held, booked, released or cancelled

Scope is (provider_id, session_type). session_type=None means "every type
of that provider"; provider_id=None (subscribers only) means "everything".

State kept per scope in Redis (with an in-memory copy for when Redis is down):
    stale:last:{provider_id|*}:{session_type|*}   → last event timestamp
    stale:seen:{subscriber_id}:{provider_id|*}:{session_type|*}
                                                  → last timestamp delivered
Cross-process fan-out: every event is PUBLISHed on `stale:events`;
staleness_listener_loop relays events published by other workers.

Delivery is fire-and-forget: handler errors and Redis errors are logged,
never raised into the publisher.
"""

import asyncio
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from ..models import SessionType

logger = logging.getLogger(__name__)

CHANNEL = "stale:events"
LAST_PREFIX = "stale:last"
SEEN_PREFIX = "stale:seen"
SEEN_TTL = 7 * 86400


class StalenessKind(str, Enum):
    PATTERNS_CHANGED = "PatternsChanged"
    SLOTS_CHANGED = "SlotsChanged"


@dataclass(frozen=True)
class Scope:
    provider_id: int | None
    session_type: SessionType | None = None

    def __post_init__(self):
        if self.session_type is not None:
            object.__setattr__(self, "session_type", SessionType(self.session_type))

    @property
    def key(self) -> str:
        provider = "*" if self.provider_id is None else str(self.provider_id)
        session_type = "*" if self.session_type is None else self.session_type.value
        return f"{provider}:{session_type}"

    def covers(self, event_scope: "Scope") -> bool:
        """True if an event for ``event_scope`` concerns a reader of this scope."""
        if self.provider_id is not None and event_scope.provider_id != self.provider_id:
            return False
        if self.session_type is None or event_scope.session_type is None:
            return True
        return self.session_type == event_scope.session_type

    def event_keys(self) -> list[str]:
        """Last-event keys whose events a reader of this scope must consider."""
        if self.provider_id is None:
            return ["*:*"]
        keys = [f"{self.provider_id}:*"]
        if self.session_type is None:
            keys.extend(f"{self.provider_id}:{t.value}" for t in SessionType)
        else:
            keys.append(self.key)
        return keys


@dataclass(frozen=True)
class StalenessEvent:
    kind: StalenessKind
    scope: Scope
    ts: float
    origin: str = ""

    def to_json(self) -> str:
        return json.dumps({
            "kind": self.kind.value,
            "provider_id": self.scope.provider_id,
            "session_type": self.scope.session_type.value if self.scope.session_type else None,
            "ts": self.ts,
            "origin": self.origin,
        })

    @classmethod
    def from_json(cls, raw: str) -> "StalenessEvent":
        data = json.loads(raw)
        return cls(
            kind=StalenessKind(data["kind"]),
            scope=Scope(data["provider_id"], data.get("session_type")),
            ts=float(data["ts"]),
            origin=data.get("origin") or "",
        )


Handler = Callable[[StalenessEvent], None]


class Subscription:
    """Handle returned by StalenessNotifier.subscribe. Calling it unsubscribes."""

    def __init__(self, notifier: "StalenessNotifier", scope: Scope, handler: Handler, subscriber_id: str):
        self.notifier = notifier
        self.scope = scope
        self.handler = handler
        self.subscriber_id = subscriber_id
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.notifier._remove(self)

    def __call__(self) -> None:
        self.unsubscribe()

    def last_seen(self) -> float:
        return self.notifier._get_seen(self)

    def missed_events(self) -> bool:
        """True if an event for this scope was published after the last one delivered here."""
        return self.notifier.last_event_at(self.scope) > self.last_seen()

    def is_stale(self, cached_at: float) -> bool:
        return self.notifier.is_stale(self.scope, cached_at)


class StalenessNotifier:
    """In-process pub/sub with Redis-persisted timestamps and Redis fan-out."""

    def __init__(self, redis: Redis | None = None):
        self.redis = redis
        self.origin = uuid.uuid4().hex
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._last: dict[str, float] = {}
        self._seen: dict[str, float] = {}
        self._last_ts = 0.0

    # ── Publish ──────────────────────────────────────────────────────────

    def _next_ts(self) -> float:
        with self._lock:
            ts = max(time.time(), self._last_ts + 1e-6)
            self._last_ts = ts
            return ts

    def publish(self, kind: StalenessKind, scope: Scope) -> StalenessEvent:
        """Record and fan out an event. Never raises."""
        if scope.provider_id is None:
            raise ValueError("Events must be scoped to a provider")
        event = StalenessEvent(StalenessKind(kind), scope, self._next_ts(), self.origin)

        self._record(event)
        if self.redis is not None:
            try:
                pipe = self.redis.pipeline()
                pipe.set(f"{LAST_PREFIX}:{scope.key}", event.ts)
                pipe.set(f"{LAST_PREFIX}:*:*", event.ts)
                pipe.publish(CHANNEL, event.to_json())
                pipe.execute()
            except RedisError as e:
                logger.warning(f"Staleness publish not persisted ({kind} {scope.key}): {e}")

        logger.info(f"Staleness event: {event.kind.value} {scope.key}")
        self.dispatch(event)
        return event

    def _record(self, event: StalenessEvent) -> None:
        with self._lock:
            for key in (event.scope.key, "*:*"):
                if event.ts > self._last.get(key, 0.0):
                    self._last[key] = event.ts
            self._last_ts = max(self._last_ts, event.ts)

    def dispatch(self, event: StalenessEvent) -> int:
        """Deliver to matching local subscribers. Returns number of handlers called."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.active and s.scope.covers(event.scope)]

        delivered = 0
        for sub in targets:
            try:
                sub.handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Staleness handler failed: subscriber={sub.subscriber_id} event={event.kind.value}"
                )
            self._set_seen(sub, event.ts)
        return delivered

    def receive(self, raw: str) -> StalenessEvent | None:
        """Handle a message from the Redis channel (events from other workers)."""
        try:
            event = StalenessEvent.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Malformed staleness message: {raw!r}")
            return None
        if event.origin == self.origin:
            return None
        self._record(event)
        self.dispatch(event)
        return event

    # ── Subscribe ────────────────────────────────────────────────────────

    def subscribe(self, scope: Scope, handler: Handler, subscriber_id: str | None = None) -> Subscription:
        """
        Register a handler for events covering ``scope``.

        A known subscriber_id resumes its persisted last-seen timestamp, so
        missed_events() reports events published while it was away.
        """
        sub = Subscription(self, scope, handler, subscriber_id or uuid.uuid4().hex)
        if self._read_seen(sub) is None:
            self._set_seen(sub, self.last_event_at(scope))
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    # ── Timestamps ───────────────────────────────────────────────────────

    def last_event_at(self, scope: Scope) -> float:
        """Latest event timestamp affecting a reader of ``scope`` (0.0 if none)."""
        keys = scope.event_keys()
        with self._lock:
            latest = max((self._last.get(k, 0.0) for k in keys), default=0.0)

        if self.redis is not None:
            try:
                values = self.redis.mget([f"{LAST_PREFIX}:{k}" for k in keys])
                latest = max([latest] + [float(v) for v in values if v is not None])
            except RedisError as e:
                logger.warning(f"Staleness lookup fell back to memory ({scope.key}): {e}")
        return latest

    def is_stale(self, scope: Scope, cached_at: float) -> bool:
        return self.last_event_at(scope) > cached_at

    def _seen_key(self, sub: Subscription) -> str:
        return f"{SEEN_PREFIX}:{sub.subscriber_id}:{sub.scope.key}"

    def _read_seen(self, sub: Subscription) -> float | None:
        key = self._seen_key(sub)
        if self.redis is not None:
            try:
                value = self.redis.get(key)
                if value is not None:
                    return float(value)
            except RedisError as e:
                logger.warning(f"Staleness seen lookup fell back to memory: {e}")
        with self._lock:
            return self._seen.get(key)

    def _get_seen(self, sub: Subscription) -> float:
        seen = self._read_seen(sub)
        return 0.0 if seen is None else seen

    def _set_seen(self, sub: Subscription, ts: float) -> None:
        key = self._seen_key(sub)
        with self._lock:
            if ts < self._seen.get(key, 0.0):
                return
            self._seen[key] = ts
        if self.redis is not None:
            try:
                self.redis.set(key, ts, ex=SEEN_TTL)
            except RedisError as e:
                logger.warning(f"Staleness seen not persisted ({key}): {e}")


async def staleness_listener_loop(notifier: StalenessNotifier, redis_url: str) -> None:
    """
    Relay events published by other workers to local subscribers.

    Runs as an asyncio task in the app lifespan.
    """
    r = aioredis.from_url(redis_url, decode_responses=True)
    logger.info("staleness_listener_loop started")

    try:
        while True:
            pubsub = r.pubsub()
            try:
                await pubsub.subscribe(CHANNEL)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    notifier.receive(message["data"])
            except asyncio.CancelledError:
                logger.info("staleness_listener_loop cancelled")
                raise
            except Exception:
                logger.exception("staleness_listener_loop error, retrying in 5s")
                await asyncio.sleep(5)
            finally:
                await pubsub.aclose()
    except asyncio.CancelledError:
        pass
    finally:
        await r.aclose()
