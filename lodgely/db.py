from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from typing import Generator
import os

# DATABASE_URL defaults to a local SQLite file at ./data.db.
# Override via the DATABASE_URL environment variable for staging/production.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data.db")

# Build the SQLAlchemy engine with backend-specific settings.
# - SQLite (dev/local): the store runs sessions on worker threads, so cross-thread use must be allowed.
# - Server DBs (e.g., MySQL/Postgres): enable safe pooling to avoid stale or dropped connections under load.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 15})
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_recycle=280,  # recycle connections periodically to prevent 'MySQL server has gone away'
        pool_size=10,
        max_overflow=20,
    )

# Session factory. expire_on_commit is off because RemoteStore hands detached rows back to the event loop.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for ORM models declared via SQLAlchemy's declarative API
Base = declarative_base()


def get_db() -> Generator:
    """
    Yield a session and guarantee it is closed afterwards, even if an exception is raised.

    Used by the schema bootstrap and by tests that seed rows directly.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
