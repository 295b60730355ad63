"""Database connection and session management for the SQL record store."""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from cohortlab.config import get_settings

# Base class for models
Base = declarative_base()


def build_engine(database_url: str, debug: bool = False) -> Engine:
    """
    Create a database engine.

    SQLite URLs get ``check_same_thread=False`` because the engine is shared
    between the event loop and FastAPI's worker threads.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    return create_engine(
        database_url,
        pool_pre_ping=True,
        echo=debug,
        connect_args=connect_args,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to ``engine``."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_database(database_url: str | None = None) -> sessionmaker:
    """
    Create tables and return a session factory.

    Usage:
        SessionLocal = init_database("sqlite:///./cohortlab.db")
        store = SqlRecordStore(SessionLocal)
    """
    settings = get_settings()
    engine = build_engine(database_url or settings.database_url, debug=settings.debug)

    # Register the records table on Base before creating it
    from cohortlab.models.record import StoredRecord  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return build_session_factory(engine)
