"""
Database engine and session management.

PostgreSQL in production; SQLite for local runs and tests.
Includes connection-pool observability via SQLAlchemy pool events.
"""
import time
from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import Pool, StaticPool

from tradeledger.monitoring.logger import get_logger

_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        if database_url.startswith("postgresql"):
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=5,
                max_overflow=10,
                pool_recycle=3600,
                pool_timeout=30,
            )
        elif database_url.startswith("sqlite"):
            kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in database_url or database_url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
                # One shared connection, otherwise every session sees an empty database
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, echo=False, **kwargs)
        else:
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Use a postgresql:// or sqlite:// connection string."
            )

        self.database_url = database_url
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine, expire_on_commit=False)

        _register_pool_events(self.engine.pool)

    def create_all(self):
        """Create all tables."""
        # Registers every ORM model on Base.metadata
        import tradeledger.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on clean exit, rolls back on any exception.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def init_db(database_url: str) -> Database:
    """
    Initialize database with specific URL and create tables.

    Args:
        database_url: postgresql:// or sqlite:// connection string

    Returns:
        Database instance
    """
    db = Database(database_url)
    db.create_all()
    return db


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners for observability.

    Logs:
      - ``POOL_CHECKOUT``:   A connection was checked out.
      - ``POOL_CHECKIN``:    A connection was returned.
      - ``POOL_INVALIDATE``: A connection was invalidated (e.g. stale).
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("POOL_CHECKOUT")

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = (
            round((time.monotonic() - checkout_time) * 1000, 1)
            if checkout_time is not None
            else None
        )
        _pool_logger.debug("POOL_CHECKIN", held_ms=held_ms)

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning(
            "POOL_INVALIDATE",
            error=str(exception) if exception else None,
        )


def get_pool_status(db: Database) -> Dict[str, Any]:
    """Snapshot of connection-pool health metrics (QueuePool only)."""
    pool = db.engine.pool
    if not hasattr(pool, "checkedout"):
        return {}
    return {
        "pool_size": pool.size(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
        "checked_in": pool.checkedin(),
    }
