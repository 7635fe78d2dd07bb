"""Request-scoped database session for the upload and job routes."""

from collections.abc import Generator

from sqlalchemy.orm import Session

from app.db.session import SessionLocal


def get_session() -> Generator[Session, None, None]:
    """Yield one session per request and roll back if the handler raises.

    Job writes commit inside ``job_store``, so nothing is committed here.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
