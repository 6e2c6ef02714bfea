from redis import Redis

from .config import settings

redis_client: Redis = Redis.from_url(
    settings.redis_url,
    decode_responses=True,
    socket_timeout=2.0,
)


def get_redis() -> Redis:
    """FastAPI dependency (overridden in tests)."""
    return redis_client
