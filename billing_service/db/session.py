from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from billing_service.core.config import get_settings

SQLALCHEMY_DATABASE_URL = get_settings().DATABASE_URL


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Local development only; request handlers and job threads share the file.
        return {"connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": 10,  # Number of connections to maintain persistently
        "max_overflow": 20,  # Burst capacity for webhook spikes during provider retries
        "pool_timeout": 30,
        "pool_pre_ping": True,  # Verify connections before using them (handles stale connections)
        "pool_recycle": 3600,
    }


engine = create_engine(SQLALCHEMY_DATABASE_URL, echo=False, **_engine_options(SQLALCHEMY_DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
