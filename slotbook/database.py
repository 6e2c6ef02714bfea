import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.resolved_database_url

# check_same_thread=False: FastAPI runs sync endpoints in a threadpool
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 15} if DATABASE_URL.startswith("sqlite") else {},
)


@event.listens_for(Engine, "connect")
def enable_sqlite_fk(dbapi_connection, _):
    if dbapi_connection.__class__.__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create all tables (no migrations in this service)."""
    from .models import Base

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database schema ensured")
