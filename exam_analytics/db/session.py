"""SQLAlchemy engine & session factory."""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from exam_analytics.config import settings

# Lazy initialization - only create engine when first needed
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None  # type: ignore[type-arg]


def connect_args(url: str, timeout_seconds: float) -> dict:
    """Driver arguments that make the server abort statements after ``timeout_seconds``.

    Matches the query executor's timeout. Other backends get no extra arguments.
    """
    if make_url(url).get_backend_name() != "postgresql":
        return {}
    return {"options": f"-c statement_timeout={int(timeout_seconds * 1000)}"}


def get_engine() -> Engine:
    """Get or create SQLAlchemy engine."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            settings.DATABASE_URL,
            echo=settings.DATABASE_ECHO,
            pool_pre_ping=True,
            connect_args=connect_args(settings.DATABASE_URL, settings.QUERY_TIMEOUT_SECONDS),
        )
    return _engine


def get_session_factory() -> sessionmaker:  # type: ignore[type-arg]
    """Get or create session factory.

    The analytics engine only reads, so sessions never autoflush and are
    expected to be closed right after each query.
    """
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine()
        _SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    return _SessionLocal


def dispose_engine() -> None:
    """Release pooled connections (called at application shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""
