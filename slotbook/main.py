import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from redis import Redis
from redis.exceptions import RedisError

from .config import settings
from .database import init_db
from .dependencies import notifier
from .errors import BookingError, PatternValidationError
from .redis_client import get_redis, redis_client
from .routers import patterns, reservations, slots, staleness
from .services.slot_refresher import slot_refresher_loop
from .services.slots.invalidator import register_cache_invalidation
from .services.staleness import staleness_listener_loop

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    cache_subscription = register_cache_invalidation(notifier, redis_client)
    tasks = [
        asyncio.create_task(slot_refresher_loop(notifier)),
        asyncio.create_task(staleness_listener_loop(notifier, settings.redis_url)),
    ]
    logger.info("slotbook started")
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        cache_subscription.unsubscribe()
        logger.info("slotbook stopped")


app = FastAPI(title="Slot Booking API", lifespan=lifespan)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, PatternValidationError):
        content["conflicts"] = [
            {
                "day_of_week": c.day_of_week,
                "first": c.first,
                "second": c.second,
                "reason": c.reason,
            }
            for c in exc.conflicts
        ]
    return JSONResponse(status_code=exc.status_code, content=content)


app.include_router(patterns.router)
app.include_router(slots.router)
app.include_router(reservations.router)
app.include_router(staleness.router)


@app.get("/health")
def health(redis: Redis = Depends(get_redis)):
    try:
        redis_ok = bool(redis.ping())
    except RedisError:
        redis_ok = False
    return {"status": "ok", "redis": redis_ok}
