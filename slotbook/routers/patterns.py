# slotbook/routers/patterns.py
"""
Provider availability endpoints.

GET    /availability/patterns         : active patterns for a session type
PUT    /availability/patterns         : replace the set (validated as a whole)
DELETE /availability/patterns/{id}    : deactivate one pattern
POST   /availability/generate-slots   : regenerate an explicit date range
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_config, get_current_provider_id, get_notifier
from ..models import SessionType
from ..schemas.patterns import (
    GenerateSlotsRequest,
    GenerationReportRead,
    GenerationWarning,
    PatternRead,
    PatternUpsert,
    PatternUpsertResponse,
)
from ..services.patterns import PatternStore
from ..services.slots.config import BookingConfig
from ..services.slots.store import GenerationReport
from ..services.staleness import StalenessNotifier

router = APIRouter(prefix="/availability", tags=["availability"])


def _report(report: GenerationReport) -> GenerationReportRead:
    return GenerationReportRead(
        created=report.created,
        reopened=report.reopened,
        updated=report.updated,
        unchanged=report.unchanged,
        expired=report.expired,
        skipped=report.skipped,
        warnings=[
            GenerationWarning(pattern_id=e.pattern_id, reason=e.reason)
            for e in report.errors
        ],
    )


@router.get("/patterns", response_model=list[PatternRead])
def list_patterns(
    session_type: SessionType,
    include_inactive: bool = False,
    provider_id: int = Depends(get_current_provider_id),
    db: Session = Depends(get_db),
    config: BookingConfig = Depends(get_config),
):
    store = PatternStore(db, config=config)
    return store.list_patterns(provider_id, session_type, include_inactive=include_inactive)


@router.put("/patterns", response_model=PatternUpsertResponse)
def upsert_patterns(
    data: PatternUpsert,
    provider_id: int = Depends(get_current_provider_id),
    db: Session = Depends(get_db),
    notifier: StalenessNotifier = Depends(get_notifier),
    config: BookingConfig = Depends(get_config),
):
    store = PatternStore(db, notifier, config)
    result = store.upsert_patterns(provider_id, data.session_type, data.patterns)
    return PatternUpsertResponse(
        patterns=[PatternRead.model_validate(p) for p in result.patterns],
        created=result.created,
        updated=result.updated,
        deactivated=result.deactivated,
        generation=_report(result.generation),
    )


@router.delete("/patterns/{pattern_id}", response_model=PatternRead)
def deactivate_pattern(
    pattern_id: int,
    provider_id: int = Depends(get_current_provider_id),
    db: Session = Depends(get_db),
    notifier: StalenessNotifier = Depends(get_notifier),
    config: BookingConfig = Depends(get_config),
):
    pattern, _ = PatternStore(db, notifier, config).deactivate_pattern(provider_id, pattern_id)
    return pattern


@router.post("/generate-slots", response_model=GenerationReportRead)
def generate_slots(
    data: GenerateSlotsRequest,
    provider_id: int = Depends(get_current_provider_id),
    db: Session = Depends(get_db),
    notifier: StalenessNotifier = Depends(get_notifier),
    config: BookingConfig = Depends(get_config),
):
    store = PatternStore(db, notifier, config)
    report = store.generate(provider_id, data.start_date, data.end_date, data.session_type)
    return _report(report)
