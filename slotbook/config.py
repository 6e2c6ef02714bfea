# slotbook/config.py

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/slotbook.db"
    redis_url: str = "redis://localhost:6379/0"

    log_level: str = "INFO"
    default_timezone: str = "Asia/Kolkata"

    # Slot horizon / reservation windows
    horizon_days: int = 30
    min_advance_minutes: int = 0
    hold_ttl_seconds: int = 300
    max_generation_days: int = 90
    refresh_interval_seconds: int = 900

    # Public listing
    public_default_days: int = 14
    public_max_limit: int = 200

    # Redis day cache
    cache_ttl_seconds: int = 60

    # Session types (owned by session configuration, consumed here)
    personal_duration_min: int = 60
    webinar_duration_min: int = 90
    personal_price: float = 0.0
    webinar_price: float = 0.0

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_prefix="SLOTBOOK_",
        extra="ignore",
    )

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///./"):
            relative_path = url.replace("sqlite:///./", "")
            absolute_path = BASE_DIR / relative_path
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            return f"sqlite:///{absolute_path}"
        return url


settings = Settings()
