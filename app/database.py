"""
Database Configuration and Session Management

SQLAlchemy engine, session factory and declarative base.

The engine is process-wide and initialised once on import. Request
handlers get a session through the get_db() dependency; background
workers (schedulers, queue tasks) open their own sessions with
SessionLocal() and close them when done.

NOTE: SQLite is supported for tests and local experiments only. It ignores
SELECT ... FOR UPDATE, so code that needs row serialisation also guards
writes with conditional UPDATE statements.
"""
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import SQLAlchemyError
from app.config import get_settings
import logging

logger = logging.getLogger(__name__)

settings = get_settings()


def _build_engine(url: str):
    if url.startswith("sqlite"):
        # SQLite connections are used from the TestClient/worker threads
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=settings.DEBUG,
        )

    # TRADEOFF: Larger pool = more connections = more memory but better concurrency
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=settings.DB_MAX_IDLE_CONNS,
        max_overflow=max(settings.DB_MAX_OPEN_CONNS - settings.DB_MAX_IDLE_CONNS, 0),
        pool_pre_ping=True,  # handles stale connections
        pool_timeout=10,
        echo=settings.DEBUG,
    )


engine = _build_engine(settings.DATABASE_URL)

# expire_on_commit=False: objects stay readable after commit, which the
# endpoints rely on when serialising responses.
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False
)

# Base class for all models
Base = declarative_base()


@event.listens_for(engine, "connect")
def on_connect(dbapi_connection, connection_record):
    """Set connection-level configuration on new connections."""
    cursor = dbapi_connection.cursor()
    if settings.DATABASE_URL.startswith("postgresql"):
        # All timestamps are stored as naive UTC
        cursor.execute("SET TIME ZONE 'UTC'")
    elif settings.DATABASE_URL.startswith("sqlite"):
        # ON DELETE CASCADE is off by default in SQLite
        cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    logger.debug("New database connection established")


def get_db() -> Session:
    """
    Dependency function that provides a database session.

    The session is closed after the request completes. Tenant scoping is
    the caller's job: every query must filter by tenant_id.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db(timeout_seconds: float = 2.0) -> bool:
    """Health check: run a trivial query. Returns False on any DB error."""
    try:
        with engine.connect() as conn:
            if settings.DATABASE_URL.startswith("postgresql"):
                conn.execute(text(f"SET statement_timeout = {int(timeout_seconds * 1000)}"))
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False


def init_db():
    """
    Create all tables.

    Used in development and tests. Production schemas are managed by
    migrations, not by create_all().
    """
    # Import models so they register on Base.metadata
    import app.models  # noqa: F401

    logger.warning("init_db() called - use migrations in production!")
    Base.metadata.create_all(bind=engine)
