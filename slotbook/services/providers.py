"""
Provider lookups shared by routers and services.
"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..errors import ProviderNotFound
from ..models import Providers


def get_provider(db: Session, provider_id: int) -> Providers:
    provider = db.get(Providers, provider_id)
    if not provider or not provider.is_active:
        raise ProviderNotFound(f"Provider {provider_id} not found")
    return provider


def get_provider_by_slug(db: Session, slug: str) -> Providers:
    provider = db.query(Providers).filter(
        Providers.slug == slug,
        Providers.is_active == True,  # noqa: E712
    ).first()
    if not provider:
        raise ProviderNotFound(f"Provider '{slug}' not found")
    return provider


def provider_today(provider: Providers, now: datetime) -> date:
    """Calendar date at the provider's location for a naive-UTC ``now``."""
    aware = now.replace(tzinfo=timezone.utc) if now.tzinfo is None else now
    return aware.astimezone(ZoneInfo(provider.timezone)).date()
