"""Database Manager - pooled PostgreSQL access for the ingestion pipeline.

This module provides the connection handling shared by every pipeline
component. Domain SQL lives with the component that owns it (job tracker,
match registry, event ingestor, aggregation worker, leaderboard calculator);
this class hands out pooled connections and transactions.

Key features:
- Parameterized queries for security
- Connection pooling for performance
- Explicit transactions (commit on success, rollback on error)
- Idempotent schema creation
- Context manager support
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from .schema import SCHEMA_STATEMENTS


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    pass


class DatabaseManager:
    """Database manager for match state, processing jobs and summaries.

    Example:
        >>> with DatabaseManager(host="localhost", dbname="topfrag") as db:
        ...     db.create_schema()
        ...     with db.transaction() as cur:
        ...         cur.execute("SELECT 1")
    """

    def __init__(
        self,
        host: str,
        dbname: str,
        user: str,
        password: str,
        port: int = 5432,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        sslmode: str = "prefer",
    ):
        """Initialize database manager with connection pooling.

        Args:
            host: Database host
            dbname: Database name
            user: Database user
            password: Database password
            port: Database port (default: 5432)
            min_pool_size: Minimum pool size (default: 2)
            max_pool_size: Maximum pool size (default: 10)
            sslmode: SSL mode (default: "prefer")

        Raises:
            DatabaseError: If connection fails
        """
        self.host = host
        self.dbname = dbname
        self.user = user
        self.port = port

        conninfo = (
            f"host={host} port={port} dbname={dbname} "
            f"user={user} password={password} sslmode={sslmode}"
        )

        try:
            self._pool = ConnectionPool(
                conninfo,
                min_size=min_pool_size,
                max_size=max_pool_size,
                kwargs={"row_factory": dict_row},
            )
            logger.info(f"Database connection pool initialized: {host}:{port}/{dbname}")
        except Exception as e:
            raise DatabaseError(f"Failed to connect to database: {e}")

    @classmethod
    def from_env(cls, env: Dict[str, Optional[str]]) -> "DatabaseManager":
        """Build a manager from POSTGRES_* variables.

        Args:
            env: Mapping holding the environment (usually os.environ)

        Raises:
            ValueError: If a required variable is missing
        """
        required = ["POSTGRES_HOST", "POSTGRES_DB", "POSTGRES_USER", "POSTGRES_PASSWORD"]
        missing = [var for var in required if not env.get(var)]
        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            host=env["POSTGRES_HOST"],
            port=int(env.get("POSTGRES_PORT") or "5432"),
            dbname=env["POSTGRES_DB"],
            user=env["POSTGRES_USER"],
            password=env["POSTGRES_PASSWORD"],
        )

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - cleanup connections."""
        self.disconnect()

    @contextmanager
    def _get_connection(self) -> Iterator[psycopg.Connection]:
        """Get connection from pool (context manager).

        Yields:
            Connection from pool

        Raises:
            DatabaseError: If connection fails
        """
        conn = None
        try:
            conn = self._pool.getconn()
            yield conn
        except psycopg.Error as e:
            raise DatabaseError(f"Database connection error: {e}")
        finally:
            if conn is not None:
                self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[psycopg.Cursor]:
        """Run a unit of work on one connection inside a single transaction.

        Commits when the block exits cleanly and rolls back on any exception,
        so callers see either all of their writes or none of them.

        Yields:
            Cursor bound to the transaction

        Raises:
            DatabaseError: If any statement fails
        """
        with self._get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except psycopg.Error as e:
                conn.rollback()
                raise DatabaseError(f"Transaction failed: {e}") from e
            except Exception:
                conn.rollback()
                raise

    def disconnect(self) -> None:
        """Close all connections in pool."""
        if hasattr(self, "_pool") and self._pool:
            self._pool.close()
            logger.info("Database connection pool closed")

    # Alias for compatibility
    close = disconnect

    def ping(self) -> bool:
        """Health check - verify database connectivity.

        Returns:
            True if database is accessible, False otherwise
        """
        try:
            with self._get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    return True
        except Exception as e:
            logger.error(f"Database ping failed: {e}")
            return False

    def execute_query(
        self, query: str, params: Optional[tuple] = None, fetch: bool = True
    ) -> Optional[List[Dict[str, Any]]]:
        """Execute a single SQL statement and optionally return results.

        Args:
            query: SQL query string
            params: Query parameters (optional)
            fetch: Whether to fetch results (default: True for SELECT queries)

        Returns:
            List of dictionaries with query results if fetch=True, None otherwise

        Raises:
            DatabaseError: If query fails
        """
        try:
            with self._get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params or ())

                    if fetch:
                        return cur.fetchall()
                    else:
                        conn.commit()
                        return None
        except psycopg.Error as e:
            raise DatabaseError(f"Query execution failed: {e}")

    def create_schema(self) -> None:
        """Create all pipeline tables and indexes if they don't exist.

        Raises:
            DatabaseError: If table creation fails
        """
        with self.transaction() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        logger.info(f"Schema created/verified ({len(SCHEMA_STATEMENTS)} statements)")

    # ========================================================================
    # Group Management
    # ========================================================================

    def create_group(self, name: str) -> int:
        """Create a group (e.g. a clan) or return the existing one's id.

        Args:
            name: Unique group name

        Returns:
            Group id
        """
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO groups (name) VALUES (%s) "
                "ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name "
                "RETURNING id",
                (name,),
            )
            return cur.fetchone()["id"]

    def add_group_member(self, group_id: int, steam_id: str) -> bool:
        """Add a member to a group.

        Uses ON CONFLICT DO NOTHING for idempotency - safe to call multiple times.

        Returns:
            True if the member was added, False if already present
        """
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO group_members (group_id, steam_id) VALUES (%s, %s) "
                "ON CONFLICT (group_id, steam_id) DO NOTHING",
                (group_id, steam_id),
            )
            return cur.rowcount > 0

    def list_groups(self) -> List[Dict[str, Any]]:
        """List all groups ordered by id."""
        return self.execute_query("SELECT id, name FROM groups ORDER BY id") or []
