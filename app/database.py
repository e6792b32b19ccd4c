"""
Database Configuration and Session Management
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import settings
import logging

logger = logging.getLogger(__name__)

# Create SQLAlchemy engine
engine = None
SessionLocal = None


def _driver_url(database_url: str) -> str:
    """Use the psycopg3 driver for plain postgresql:// URLs."""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


def init_db():
    """Initialize database connection"""
    global engine, SessionLocal

    if not settings.database_url:
        logger.warning("DATABASE_URL not configured - database features disabled")
        return

    logger.info("Connecting to database...")
    engine = create_engine(
        _driver_url(settings.database_url),
        pool_pre_ping=True,  # Verify connections before using them
        pool_size=5,
        max_overflow=10
    )

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.info("Database connection established")


def get_session_factory():
    """
    Return the configured sessionmaker, initializing it on first use.

    Worker processes never run the FastAPI startup hook, so actors and
    scheduled jobs go through here instead of reading SessionLocal directly.
    """
    if SessionLocal is None:
        init_db()
    return SessionLocal


def get_db():
    """
    Dependency for getting database session
    Usage: db: Session = Depends(get_db)

    Returns None if the database is not configured
    """
    if SessionLocal is None:
        logger.warning("Database not configured")
        yield None
        return

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Base class for all models
Base = declarative_base()
