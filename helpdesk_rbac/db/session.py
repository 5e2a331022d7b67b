"""Database engine, session factory, and dependency injection."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator

from helpdesk_rbac.core.config import settings


def make_engine(url: str, echo: bool = False) -> Engine:
    """Engine for ``url``; pool sizing applies to server databases only."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=echo)
    return create_engine(
        url,
        pool_size=20,
        max_overflow=40,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
    )


# Shared by the API workers, CLI and Celery tasks
engine = make_engine(settings.MYSQL_URL, echo=settings.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that provides a DB session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
