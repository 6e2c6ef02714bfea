# slotbook/services/slots/store.py
"""
Slot Store: the persisted slots table and generation upserts.

Rows are keyed by (provider_id, session_type, date, start_time).
A HELD row whose hold_expires_at has passed is treated as OPEN by every
read and write here; no reaper runs.

Every write bumps ``version``. Generation writes are conditioned on the
version read plus the "not live-held, not booked" predicate, so a hold that
lands between read and write always wins.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import and_, or_, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Query, Session

from ...errors import GenerationPartialFailure
from ...models import SessionType, Slots, SlotState
from .config import BookingConfig, get_booking_config
from .generator import GenerationResult, SlotCandidate

logger = logging.getLogger(__name__)


@dataclass
class GenerationReport:
    """Outcome of materializing one generation run."""
    created: int = 0
    reopened: int = 0
    updated: int = 0
    unchanged: int = 0
    expired: int = 0
    skipped: int = 0
    errors: list[GenerationPartialFailure] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.reopened or self.updated or self.expired)

    def merge(self, other: "GenerationReport") -> None:
        self.created += other.created
        self.reopened += other.reopened
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.expired += other.expired
        self.skipped += other.skipped
        self.errors.extend(other.errors)


def free_clause(now: datetime):
    """OPEN, or HELD with a lapsed hold."""
    return or_(
        Slots.state == SlotState.OPEN.value,
        and_(
            Slots.state == SlotState.HELD.value,
            Slots.hold_expires_at <= now,
        ),
    )


def bookable_clause(now: datetime, cutoff: datetime | None = None):
    """Free and starting after ``cutoff`` (defaults to ``now``)."""
    return and_(Slots.starts_at > (cutoff or now), free_clause(now))


class SlotStore:
    """Slots table access used by generation, availability and reservations."""

    def __init__(self, db: Session, config: BookingConfig | None = None):
        self.db = db
        self.config = config or get_booking_config()

    # ── Read ─────────────────────────────────────────────────────────────

    def cutoff(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.config.min_advance_minutes)

    def bookable_query(
        self,
        provider_id: int,
        session_type: SessionType,
        start_date: date,
        end_date: date,
        now: datetime,
    ) -> Query:
        """Bookable slots with date in [start_date, end_date), earliest first."""
        return (
            self.db.query(Slots)
            .filter(
                Slots.provider_id == provider_id,
                Slots.session_type == SessionType(session_type).value,
                Slots.date >= start_date,
                Slots.date < end_date,
                bookable_clause(now, self.cutoff(now)),
            )
            .order_by(Slots.starts_at, Slots.id)
        )

    def list_bookable(
        self,
        provider_id: int,
        session_type: SessionType,
        start_date: date,
        end_date: date,
        now: datetime,
    ) -> list[Slots]:
        return self.bookable_query(
            provider_id, session_type, start_date, end_date, now
        ).all()

    # ── Generation ───────────────────────────────────────────────────────

    def apply_generation(
        self,
        provider_id: int,
        session_types: list[SessionType],
        start_date: date,
        end_date: date,
        generation: GenerationResult,
        now: datetime,
    ) -> GenerationReport:
        """
        Upsert generated candidates by natural key.

        - new keys are inserted OPEN
        - OPEN / EXPIRED / lapsed-HELD rows are refreshed and set OPEN
        - live HELD and BOOKED rows are never touched
        - OPEN rows whose start has passed are expired
        - OPEN future rows in the window with no candidate are expired,
          unless their pattern failed to expand this run

        Flushes only; the caller commits.
        """
        report = GenerationReport(errors=list(generation.errors))
        type_values = [SessionType(t).value for t in session_types]

        existing = {
            (row.provider_id, row.session_type, row.date, row.start_time): row
            for row in self.db.query(Slots).filter(
                Slots.provider_id == provider_id,
                Slots.session_type.in_(type_values),
                Slots.date >= start_date,
                Slots.date < end_date,
            )
        }

        candidate_keys = set()
        for candidate in generation.candidates:
            if candidate.provider_id != provider_id or candidate.session_type.value not in type_values:
                continue
            candidate_keys.add(candidate.natural_key)
            row = existing.get(candidate.natural_key)
            if row is None:
                if self._insert_candidate(candidate, now):
                    report.created += 1
                else:
                    report.skipped += 1
                continue
            self._refresh_row(row, candidate, now, report)

        report.expired += self.expire_past(now, provider_id=provider_id, session_types=type_values)

        failed = generation.failed_pattern_ids
        orphan_ids = [
            row.id
            for key, row in existing.items()
            if key not in candidate_keys
            and row.starts_at > now
            and row.state in (SlotState.OPEN.value, SlotState.HELD.value)
            and (row.generated_from_pattern_id is None or row.generated_from_pattern_id not in failed)
        ]
        if orphan_ids:
            report.expired += self._expire(
                and_(Slots.id.in_(orphan_ids), Slots.starts_at > now, free_clause(now)),
                now,
            )

        self.db.flush()
        # Bulk UPDATEs bypass the identity map
        self.db.expire_all()
        logger.info(
            f"Slots generated: provider={provider_id} types={type_values} "
            f"[{start_date}, {end_date}) created={report.created} "
            f"reopened={report.reopened} updated={report.updated} "
            f"unchanged={report.unchanged} expired={report.expired} "
            f"skipped={report.skipped} errors={len(report.errors)}"
        )
        return report

    def _insert_candidate(self, candidate: SlotCandidate, now: datetime) -> bool:
        """INSERT ... ON CONFLICT DO NOTHING on the natural key. True if inserted."""
        values = dict(
            provider_id=candidate.provider_id,
            session_type=candidate.session_type.value,
            date=candidate.date,
            start_time=candidate.start_time,
            end_time=candidate.end_time,
            timezone=candidate.timezone,
            starts_at=candidate.starts_at,
            ends_at=candidate.ends_at,
            state=SlotState.OPEN.value,
            version=1,
            generated_from_pattern_id=candidate.pattern_id,
            created_at=now,
            updated_at=now,
        )
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(Slots)
        else:
            stmt = sqlite.insert(Slots)
        stmt = stmt.values(**values).on_conflict_do_nothing(
            index_elements=["provider_id", "session_type", "date", "start_time"]
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def _refresh_row(
        self,
        row: Slots,
        candidate: SlotCandidate,
        now: datetime,
        report: GenerationReport,
    ) -> None:
        if row.state == SlotState.BOOKED.value:
            report.skipped += 1
            return
        if row.state == SlotState.HELD.value and row.hold_expires_at and row.hold_expires_at > now:
            report.skipped += 1
            return

        desired = dict(
            end_time=candidate.end_time,
            timezone=candidate.timezone,
            starts_at=candidate.starts_at,
            ends_at=candidate.ends_at,
            generated_from_pattern_id=candidate.pattern_id,
        )
        same = all(getattr(row, k) == v for k, v in desired.items())
        if row.state == SlotState.OPEN.value and same:
            report.unchanged += 1
            return

        previous_state = row.state
        result = self.db.execute(
            update(Slots)
            .where(
                Slots.id == row.id,
                Slots.version == row.version,
                or_(
                    Slots.state.in_([SlotState.OPEN.value, SlotState.EXPIRED.value]),
                    and_(Slots.state == SlotState.HELD.value, Slots.hold_expires_at <= now),
                ),
            )
            .values(
                **desired,
                state=SlotState.OPEN.value,
                hold_token=None,
                hold_expires_at=None,
                version=Slots.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Concurrent hold/booking won
            report.skipped += 1
        elif previous_state == SlotState.OPEN.value:
            report.updated += 1
        else:
            report.reopened += 1

    # ── Expiry ───────────────────────────────────────────────────────────

    def _expire(self, criteria, now: datetime) -> int:
        result = self.db.execute(
            update(Slots)
            .where(criteria)
            .values(
                state=SlotState.EXPIRED.value,
                hold_token=None,
                hold_expires_at=None,
                version=Slots.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def expire_past(
        self,
        now: datetime,
        provider_id: int | None = None,
        session_types: list[str] | None = None,
    ) -> int:
        """OPEN / HELD rows whose start has passed → EXPIRED."""
        criteria = [
            Slots.state.in_([SlotState.OPEN.value, SlotState.HELD.value]),
            Slots.starts_at <= now,
        ]
        if provider_id is not None:
            criteria.append(Slots.provider_id == provider_id)
        if session_types:
            criteria.append(Slots.session_type.in_(session_types))
        return self._expire(and_(*criteria), now)

    def expire_for_pattern(self, pattern_id: int, now: datetime) -> int:
        """Free future slots generated from a withdrawn pattern → EXPIRED."""
        return self._expire(
            and_(
                Slots.generated_from_pattern_id == pattern_id,
                Slots.starts_at > now,
                free_clause(now),
            ),
            now,
        )
