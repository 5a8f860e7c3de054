"""Base model configuration."""
from datetime import UTC, datetime
from typing import Generator, Optional

from sqlalchemy import Column, DateTime, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from lexiloop.config import settings


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Enforce foreign keys on SQLite connections."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: Optional[str] = None, **kwargs) -> Engine:
    """Create an engine, enabling SQLite pragmas where relevant."""
    url = url or settings.database.url
    kwargs.setdefault("echo", settings.database.echo)
    db_engine = create_engine(url, **kwargs)
    if db_engine.dialect.name == "sqlite":
        event.listen(db_engine, "connect", _set_sqlite_pragma)
    return db_engine


# Create SQLAlchemy engine
engine = create_db_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create declarative base class
Base = declarative_base()


class TimestampMixin:
    """Mixin to add timestamp columns to models."""
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Initialize database."""
    # Import models so their tables are registered on the metadata
    import lexiloop.models.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)  # Create tables if they don't exist
