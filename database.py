"""
Database connection and operations module.

Provides connection pooling and common database operations for the
media offload migrator.
"""

import logging
from contextlib import contextmanager
from typing import Optional, Dict, Any
from datetime import datetime, timezone

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

from config import get_config

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class ConnectionPoolError(DatabaseError):
    """Exception for connection pool errors."""
    pass


class QueryError(DatabaseError):
    """Exception for query execution errors."""
    pass


class DatabaseManager:
    """
    Manages database connections with connection pooling.

    Provides both synchronous and context manager interfaces for
    database operations with automatic connection management.
    """

    def __init__(self):
        """Initialize database manager."""
        self.config = get_config().database
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._initialized = False

    def initialize(self) -> None:
        """Initialize connection pool."""
        if self._initialized:
            logger.warning("Database manager already initialized")
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=self.config.pool_size,
                host=self.config.host,
                port=self.config.port,
                dbname=self.config.name,
                user=self.config.user,
                password=self.config.password,
                connect_timeout=self.config.pool_timeout,
            )
            self._initialized = True
            logger.info(
                f"Database connection pool initialized "
                f"(host={self.config.host}, db={self.config.name})"
            )
        except psycopg2.Error as e:
            logger.error(f"Failed to initialize connection pool: {e}")
            raise ConnectionPoolError(f"Connection pool initialization failed: {e}") from e

    def close(self) -> None:
        """Close all connections in the pool."""
        if self._pool:
            self._pool.closeall()
            self._initialized = False
            logger.info("Database connection pool closed")

    @contextmanager
    def get_connection(self):
        """
        Get a connection from the pool as a context manager.

        Uncommitted work is rolled back when the block raises. Driver
        errors are wrapped in ConnectionPoolError; anything else raised
        inside the block propagates unchanged.

        Yields:
            psycopg2.connection: Database connection
        """
        if not self._initialized:
            self.initialize()

        conn = None
        try:
            conn = self._pool.getconn()
            yield conn
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            logger.error(f"Database connection error: {e}")
            raise ConnectionPoolError(f"Connection error: {e}") from e
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self._pool.putconn(conn)

    @contextmanager
    def get_cursor(self, dict_cursor: bool = False):
        """
        Get a cursor from a pooled connection.

        Args:
            dict_cursor: If True, return RealDictCursor for dict-like results

        Yields:
            psycopg2.cursor: Database cursor
        """
        with self.get_connection() as conn:
            cursor_factory = RealDictCursor if dict_cursor else None
            cursor = conn.cursor(cursor_factory=cursor_factory)
            try:
                yield cursor
                conn.commit()
            except psycopg2.Error as e:
                conn.rollback()
                logger.error(f"Cursor operation error: {e}")
                raise QueryError(f"Query execution failed: {e}") from e
            finally:
                cursor.close()

    def health_check(self) -> Dict[str, Any]:
        """
        Perform database health check.

        Returns:
            Dict with health status information
        """
        try:
            with self.get_cursor() as cursor:
                cursor.execute("SELECT version();")
                version = cursor.fetchone()[0]

                cursor.execute("SELECT COUNT(*) FROM migration_markers;")
                marker_count = cursor.fetchone()[0]

                return {
                    "status": "healthy",
                    "postgres_version": version,
                    "migrated_attachments": marker_count,
                    "timestamp": datetime.now(timezone.utc).isoformat()
                }
        except DatabaseError as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get or create global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
        _db_manager.initialize()
    return _db_manager


def close_db_manager() -> None:
    """Close global database manager."""
    global _db_manager
    if _db_manager:
        _db_manager.close()
        _db_manager = None
