"""
Pattern Store: a provider's weekly availability per session type.

A save replaces the whole set for one session type and is validated as a
whole before anything is written:
- times are HH:MM with start < end
- active ranges on the same day must not overlap (touching is fine)

Patterns are never deleted; withdrawn ones are deactivated so generated
slots keep their generated_from_pattern_id.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..errors import NotFoundError, PatternConflict, PatternValidationError, ValidationError
from ..models import AvailabilityPatterns, Providers, SessionType, Slots, utcnow
from .providers import get_provider, provider_today
from .slots.config import BookingConfig, get_booking_config, normalize_time, parse_time
from .slots.generator import to_naive_utc
from .slots.regenerate import (
    regenerate_rolling_window,
    regenerate_slots,
    rolling_window,
    validate_generation_range,
)
from .slots.store import GenerationReport, SlotStore, free_clause
from .staleness import Scope, StalenessKind, StalenessNotifier

logger = logging.getLogger(__name__)


@dataclass
class PatternUpsertResult:
    patterns: list[AvailabilityPatterns]
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    generation: GenerationReport = field(default_factory=GenerationReport)


def _range(item) -> str:
    return f"{item.start_time}-{item.end_time}"


def validate_pattern_set(items, default_timezone: str | None = None) -> list[PatternConflict]:
    """
    Check a whole submitted set. Returns every conflict found (empty = valid).

    Items need day_of_week, start_time, end_time; timezone and is_active
    are optional.
    """
    conflicts: list[PatternConflict] = []
    by_day: dict[int, list[tuple[int, int, object]]] = {}

    for item in items:
        day = item.day_of_week
        if not isinstance(day, int) or not 0 <= day <= 6:
            conflicts.append(PatternConflict(day, _range(item), reason="day_of_week must be 0-6"))
            continue
        try:
            start = parse_time(item.start_time)
            end = parse_time(item.end_time)
        except ValueError as e:
            conflicts.append(PatternConflict(day, _range(item), reason=str(e)))
            continue
        if start >= end:
            conflicts.append(PatternConflict(day, _range(item), reason="start must be before end"))
            continue

        tz_name = getattr(item, "timezone", None) or default_timezone
        if tz_name:
            try:
                ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                conflicts.append(PatternConflict(day, _range(item), reason=f"unknown timezone {tz_name}"))
                continue

        if getattr(item, "is_active", True):
            by_day.setdefault(day, []).append((start, end, item))

    for day, ranges in sorted(by_day.items()):
        ranges.sort(key=lambda r: (r[0], r[1]))
        for i, (start, end, item) in enumerate(ranges):
            for other_start, other_end, other in ranges[i + 1:]:
                if other_start >= end:
                    break
                if start < other_end and other_start < end:
                    conflicts.append(PatternConflict(day, _range(item), _range(other)))

    return conflicts


class PatternStore:
    """Pattern CRUD plus the slot regeneration every save triggers."""

    def __init__(
        self,
        db: Session,
        notifier: StalenessNotifier | None = None,
        config: BookingConfig | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.config = config or get_booking_config()

    def list_patterns(
        self,
        provider_id: int,
        session_type: SessionType,
        include_inactive: bool = False,
    ) -> list[AvailabilityPatterns]:
        query = self.db.query(AvailabilityPatterns).filter(
            AvailabilityPatterns.provider_id == provider_id,
            AvailabilityPatterns.session_type == SessionType(session_type).value,
        )
        if not include_inactive:
            query = query.filter(AvailabilityPatterns.is_active == True)  # noqa: E712
        return query.order_by(
            AvailabilityPatterns.day_of_week,
            AvailabilityPatterns.start_time,
            AvailabilityPatterns.id,
        ).all()

    def upsert_patterns(
        self,
        provider_id: int,
        session_type: SessionType,
        items,
        now: datetime | None = None,
    ) -> PatternUpsertResult:
        """
        Replace the provider's pattern set for ``session_type``.

        Items with an id update that pattern, items without one create a
        pattern, existing patterns missing from ``items`` are deactivated.
        Free future slots of deactivated or edited patterns are expired with
        no date bound, then the rolling window is regenerated, all in the
        same transaction. Saves for one provider are serialized.

        Raises:
            PatternValidationError: the set is invalid; nothing was written
            ValidationError: an id does not belong to this provider/type
        """
        session_type = SessionType(session_type)
        now = to_naive_utc(now) if now else utcnow()

        try:
            self._lock_pattern_set(provider_id)
            provider = get_provider(self.db, provider_id)

            conflicts = validate_pattern_set(items, provider.timezone)
            if conflicts:
                logger.warning(
                    f"Pattern set rejected for provider {provider_id} {session_type.value}: "
                    f"{len(conflicts)} conflict(s)"
                )
                raise PatternValidationError(conflicts)

            existing = {
                p.id: p for p in self.list_patterns(provider_id, session_type, include_inactive=True)
            }
            submitted_ids = [item.id for item in items if item.id is not None]
            if len(submitted_ids) != len(set(submitted_ids)):
                raise ValidationError("Duplicate pattern id in request")
            unknown = [pid for pid in submitted_ids if pid not in existing]
            if unknown:
                raise ValidationError(f"Unknown pattern id(s): {unknown}")

            result = PatternUpsertResult(patterns=[])
            withdrawn_ids: list[int] = []
            for item in items:
                fields = dict(
                    day_of_week=item.day_of_week,
                    start_time=normalize_time(item.start_time),
                    end_time=normalize_time(item.end_time),
                    timezone=getattr(item, "timezone", None) or provider.timezone,
                    is_active=getattr(item, "is_active", True),
                )
                if item.id is None:
                    pattern = AvailabilityPatterns(
                        provider_id=provider_id,
                        session_type=session_type.value,
                        created_at=now,
                        updated_at=now,
                        **fields,
                    )
                    self.db.add(pattern)
                    result.created += 1
                else:
                    pattern = existing[item.id]
                    changed = any(getattr(pattern, k) != v for k, v in fields.items())
                    if changed:
                        if pattern.is_active:
                            withdrawn_ids.append(pattern.id)
                        for k, v in fields.items():
                            setattr(pattern, k, v)
                        pattern.updated_at = now
                        result.updated += 1
                result.patterns.append(pattern)

            for pattern_id, pattern in existing.items():
                if pattern_id not in submitted_ids and pattern.is_active:
                    pattern.is_active = False
                    pattern.updated_at = now
                    withdrawn_ids.append(pattern_id)
                    result.deactivated += 1

            self.db.flush()
            withdrawn, last_date = self._expire_withdrawn(withdrawn_ids, now)
            result.generation = regenerate_rolling_window(
                self.db, provider, [session_type], now=now, config=self.config
            )
            result.generation.expired += withdrawn
            if last_date is not None:
                result.generation.merge(
                    self._regenerate_beyond_window(provider, session_type, last_date, now)
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        for pattern in result.patterns:
            self.db.refresh(pattern)

        logger.info(
            f"Patterns saved for provider {provider_id} {session_type.value}: "
            f"created={result.created} updated={result.updated} deactivated={result.deactivated}"
        )
        self._publish(provider_id, session_type, slots_changed=result.generation.changed)
        return result

    def _lock_pattern_set(self, provider_id: int) -> None:
        """
        Bump providers.patterns_version as the first write of the transaction.

        The row lock (a RESERVED lock on SQLite) is held until commit, so a
        concurrent save waits here and then reads the set this one committed.
        """
        self.db.execute(
            update(Providers)
            .where(Providers.id == provider_id)
            .values(patterns_version=Providers.patterns_version + 1)
            .execution_options(synchronize_session=False)
        )

    def _expire_withdrawn(self, pattern_ids: list[int], now: datetime) -> tuple[int, date | None]:
        """
        Expire free future slots of withdrawn patterns, beyond the window too.

        Returns (expired, date of the last such slot).
        """
        if not pattern_ids:
            return 0, None
        last_date = (
            self.db.query(func.max(Slots.date))
            .filter(
                Slots.generated_from_pattern_id.in_(pattern_ids),
                Slots.starts_at > now,
                free_clause(now),
            )
            .scalar()
        )
        store = SlotStore(self.db, self.config)
        expired = sum(store.expire_for_pattern(pattern_id, now) for pattern_id in pattern_ids)
        # Bulk UPDATEs bypass the identity map
        self.db.expire_all()
        if expired:
            logger.info(f"Withdrawn patterns {pattern_ids}: {expired} slot(s) expired")
        return expired, last_date

    def _regenerate_beyond_window(
        self,
        provider: Providers,
        session_type: SessionType,
        last_date: date,
        now: datetime,
    ) -> GenerationReport:
        """Re-offer what edited patterns still cover between the window end and last_date."""
        window_start, window_end = rolling_window(provider_today(provider, now), self.config)
        end_date = min(
            last_date + timedelta(days=1),
            window_start + timedelta(days=self.config.max_generation_days),
        )
        if end_date <= window_end:
            return GenerationReport()
        return regenerate_slots(
            self.db, provider, window_end, end_date,
            session_types=[session_type], now=now, config=self.config,
        )

    def deactivate_pattern(
        self,
        provider_id: int,
        pattern_id: int,
        now: datetime | None = None,
    ) -> tuple[AvailabilityPatterns, int]:
        """Deactivate one pattern and expire its free future slots. Returns (pattern, expired)."""
        now = to_naive_utc(now) if now else utcnow()
        pattern = self.db.get(AvailabilityPatterns, pattern_id)
        if not pattern or pattern.provider_id != provider_id:
            raise NotFoundError(f"Pattern {pattern_id} not found")

        try:
            pattern.is_active = False
            pattern.updated_at = now
            self.db.flush()
            expired = SlotStore(self.db, self.config).expire_for_pattern(pattern_id, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(pattern)
        logger.info(f"Pattern {pattern_id} deactivated, {expired} slot(s) expired")
        self._publish(provider_id, SessionType(pattern.session_type), slots_changed=expired > 0)
        return pattern, expired

    def generate(
        self,
        provider_id: int,
        start_date: date,
        end_date: date,
        session_type: SessionType | None = None,
        now: datetime | None = None,
    ) -> GenerationReport:
        """Explicit regeneration of [start_date, end_date) (at most max_generation_days)."""
        validate_generation_range(start_date, end_date, self.config)
        provider = get_provider(self.db, provider_id)
        session_types = [SessionType(session_type)] if session_type else list(SessionType)

        try:
            report = regenerate_slots(
                self.db, provider, start_date, end_date,
                session_types=session_types, now=now, config=self.config,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if report.changed and self.notifier is not None:
            self.notifier.publish(
                StalenessKind.SLOTS_CHANGED,
                Scope(provider_id, session_type and SessionType(session_type)),
            )
        return report

    def _publish(self, provider_id: int, session_type: SessionType, slots_changed: bool) -> None:
        if self.notifier is None:
            return
        scope = Scope(provider_id, session_type)
        self.notifier.publish(StalenessKind.PATTERNS_CHANGED, scope)
        if slots_changed:
            self.notifier.publish(StalenessKind.SLOTS_CHANGED, scope)
