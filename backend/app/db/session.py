"""Engine and session factory configuration."""

import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from app.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

# Imports hold a session for the whole job, so stale connections are
# pinged before use and recycled every 30 minutes.
engine = create_engine(
    settings.database_url,
    echo=False,
    future=True,
    poolclass=QueuePool,
    pool_pre_ping=True,
    pool_recycle=1800,
    pool_size=5,
    max_overflow=10,
    connect_args={
        "connect_timeout": 10,
        "keepalives": 1,
        "keepalives_idle": 30,
        "keepalives_interval": 10,
        "keepalives_count": 5,
    },
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_fresh_session() -> Session:
    """Get a fresh database session, handling connection errors.

    Used by the import worker, which opens one session per job message.
    """
    try:
        return SessionLocal()
    except (OperationalError, DisconnectionError) as e:
        logger.warning(f"Connection error creating session: {e}, retrying...")
        engine.dispose()
        return SessionLocal()
