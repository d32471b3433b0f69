from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import get_settings

settings = get_settings()

engine_options: dict[str, Any] = {"echo": settings.debug, "future": True}
if not settings.database_url.startswith("sqlite"):
    # Persistent pool sized for websocket fan-out bursts
    engine_options.update(pool_size=10, max_overflow=20, pool_pre_ping=True)

engine = create_engine(settings.database_url, **engine_options)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Context manager for short-lived database sessions.

    WebSocket handlers and background notification tasks use this instead of
    ``Depends(get_db)`` so no connection is held for a socket's lifetime.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
