"""
Database connection management for the payment stream indexer.
Provides connection pooling, session management, and connection utilities.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlmodel import Session, SQLModel
from tenacity import retry, stop_after_attempt, wait_exponential

from stream_indexer.config.settings import DatabaseConfig

logger = logging.getLogger(__name__)


class DatabaseConnection:
    """Database connection manager with connection pooling and retry logic."""

    def __init__(self, database_url: str, config: Optional[DatabaseConfig] = None):
        """Initialize database connection manager.

        Args:
            database_url: SQLAlchemy connection string (PostgreSQL in production, SQLite for tests)
            config: Pool settings
        """
        self.database_url = database_url
        self.config = config or DatabaseConfig()
        self.engine: Optional[Engine] = None
        self._setup_engine()

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def _setup_engine(self):
        """Setup SQLAlchemy engine with connection pooling."""
        if self.is_sqlite:
            # One shared connection so in-memory databases survive across sessions
            self.engine = create_engine(
                self.database_url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=False
            )
        else:
            self.engine = create_engine(
                self.database_url,
                poolclass=QueuePool,
                pool_size=self.config.pool_size,
                max_overflow=self.config.max_overflow,
                pool_pre_ping=True,
                pool_recycle=self.config.pool_recycle_hours * 3600,
                echo=False,
                connect_args={
                    "connect_timeout": self.config.connection_timeout_seconds,
                    "application_name": "stream_indexer"
                }
            )

        @event.listens_for(self.engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            logger.debug(f"New database connection established: {connection_record}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True
    )
    def test_connection(self) -> bool:
        """Test database connection with retry logic.

        Returns:
            True if connection successful, raises exception if failed.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(text("SELECT 1")).fetchone()
                logger.info("Database connection test successful")
                return result[0] == 1
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            raise

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get database session with automatic cleanup.

        Yields:
            SQLModel Session instance
        """
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
        except Exception as e:
            logger.error(f"Database session error: {e}")
            session.rollback()
            raise
        finally:
            session.close()

    def create_all_tables(self):
        """Create all tables defined in SQLModel metadata."""
        # Register every table on the metadata before create_all
        import stream_indexer.models  # noqa: F401

        try:
            SQLModel.metadata.create_all(self.engine)
            logger.info("All database tables created successfully")
        except Exception as e:
            logger.error(f"Failed to create database tables: {e}")
            raise

    def get_pool_status(self) -> dict:
        """Get connection pool status for monitoring.

        Returns:
            Dictionary with pool statistics
        """
        if not self.engine or not isinstance(self.engine.pool, QueuePool):
            return {"status": "no_pool"}

        pool = self.engine.pool
        return {
            "pool_size": pool.size(),
            "checked_in": pool.checkedin(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow()
        }

    def health_check(self) -> dict:
        """Perform database health check.

        Returns:
            Dictionary with health status and pool metrics
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return {
                "status": "healthy",
                "pool_status": self.get_pool_status()
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {
                "status": "unhealthy",
                "error": str(e)
            }

    def dispose(self):
        """Close all pooled connections."""
        if self.engine:
            self.engine.dispose()
            logger.info("Database connection closed")

