"""
Database table initialization.
Creates all tables defined in SQLModel schemas.
"""

import logging
from typing import Dict

from stream_indexer.database.connection import DatabaseConnection

logger = logging.getLogger(__name__)


def init_database(db: DatabaseConnection) -> Dict[str, str]:
    """Initialize database with all required tables."""
    logger.info("Initializing database schema...")

    try:
        db.create_all_tables()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        return {"status": "failed", "message": f"Table creation failed: {e}"}

    logger.info("Database initialization completed successfully")
    return {"status": "success", "message": "All tables created"}
