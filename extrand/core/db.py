from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .settings import config_settings

DATABASE_URL = config_settings.DATABASE_URL

# 1. SQLAlchemy Engine
# The engine manages the connection pool and dialect.
engine = create_engine(
    DATABASE_URL,
    # Only needed for SQLite to handle concurrent requests
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {}
)

# 2. SessionLocal
# Each request gets its own session (a unit of work). The randomisation
# service owns the commit/rollback boundary within that session.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Create any missing tables for the ORM models."""
    from extrand.models.orm.base import Base
    from extrand.models.orm import allocation, randomization, record_value  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """
    Dependency that yields a database session for a single request,
    and ensures the session is closed afterward.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        # Ensures the session is closed even if an exception occurs
        db.close()
