"""
Scheduled slot regeneration.

Periodically regenerates the rolling window for every active provider and
expires slots whose start has passed, so the horizon keeps moving without a
provider touching their patterns.

Runs as an asyncio task in the app lifespan.
Uses synchronous DB work (via asyncio.to_thread).
"""

import asyncio
import logging

from ..config import settings
from ..database import SessionLocal
from ..models import Providers, utcnow
from .slots.store import GenerationReport, SlotStore
from .slots.regenerate import regenerate_rolling_window
from .staleness import Scope, StalenessKind, StalenessNotifier

logger = logging.getLogger(__name__)


async def slot_refresher_loop(notifier: StalenessNotifier | None = None) -> None:
    """Periodic loop: refresh_all_providers every refresh_interval_seconds."""
    logger.info("slot_refresher_loop started")

    try:
        while True:
            try:
                await asyncio.to_thread(refresh_all_providers, notifier)
            except asyncio.CancelledError:
                logger.info("slot_refresher_loop cancelled")
                raise
            except Exception:
                logger.exception("slot_refresher_loop error")

            await asyncio.sleep(settings.refresh_interval_seconds)
    except asyncio.CancelledError:
        pass


def refresh_all_providers(notifier: StalenessNotifier | None = None, session_factory=SessionLocal) -> dict[int, GenerationReport]:
    """Regenerate every active provider's window (synchronous)."""
    now = utcnow()
    reports: dict[int, GenerationReport] = {}

    db = session_factory()
    try:
        providers = db.query(Providers).filter(Providers.is_active == True).all()  # noqa: E712
        for provider in providers:
            try:
                report = regenerate_rolling_window(db, provider, now=now)
                db.commit()
            except Exception:
                db.rollback()
                logger.exception(f"Slot refresh failed for provider {provider.id}")
                continue

            reports[provider.id] = report
            if report.changed and notifier is not None:
                notifier.publish(StalenessKind.SLOTS_CHANGED, Scope(provider.id))

        # Past slots outside any provider window (e.g. deactivated providers)
        expired = SlotStore(db).expire_past(now)
        db.commit()
        if expired:
            logger.info(f"Expired {expired} past slot(s)")
    finally:
        db.close()

    return reports
