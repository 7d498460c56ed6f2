"""Database setup and session management.

SQLAlchemy + SQLite unless DATABASE_URL points somewhere else.
"""
from datetime import datetime, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from split_service.config import settings

# SQLite for now, easy to swap to Postgres later
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {}
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store naive UTC)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """Dependency for getting DB session (FastAPI Depends)."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database tables (create_all)."""
    # models must be imported so their tables are registered on Base
    import split_service.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
