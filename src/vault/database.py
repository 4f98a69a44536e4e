"""Database connection and query management using asyncpg."""

import re
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg
from structlog import BoundLogger

from vault.config import DatabaseConfig
from vault.exceptions import DatabaseError
from utils.logging import get_logger


class DatabaseManager:
    """Manages the site database connection pool and queries."""

    def __init__(
        self,
        config: DatabaseConfig,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize database manager.

        Args:
            config: Database configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or get_logger("database")
        self.pool: Optional[asyncpg.Pool] = None
        self._dsn: Optional[str] = None

    @property
    def family(self) -> str:
        """Database family of the site (always postgres)."""
        return self.config.family

    @property
    def prefix(self) -> str:
        """Prefix of the site tables."""
        return self.config.table_prefix

    @property
    def dsn(self) -> str:
        """Get database connection DSN."""
        if self._dsn is None:
            try:
                password = self.config.get_password()
            except ValueError as e:
                raise DatabaseError(str(e), context={"database": self.config.name}) from e

            self._dsn = (
                f"postgresql://{self.config.user}:{password}@"
                f"{self.config.host}:{self.config.port}/{self.config.name}"
            )
        return self._dsn

    async def connect(self) -> None:
        """Create connection pool."""
        try:
            self.logger.debug(
                "Creating connection pool",
                database=self.config.name,
                host=self.config.host,
                pool_size=self.config.pool_size,
            )

            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=self.config.pool_size,
                command_timeout=None,
                server_settings={
                    "application_name": "site_vault",
                    "search_path": self.config.schema_name,
                },
            )

            async with self.pool.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                self.logger.debug(
                    "Database connection established",
                    database=self.config.name,
                    version=version.split(",")[0] if version else "unknown",
                )

        except Exception as e:
            raise DatabaseError(
                f"Failed to create connection pool: {e}",
                context={"database": self.config.name, "host": self.config.host},
            ) from e

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self.pool:
            self.logger.debug("Closing connection pool", database=self.config.name)
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection from the pool.

        Yields:
            Database connection

        Raises:
            DatabaseError: If pool is not initialized
        """
        if not self.pool:
            raise DatabaseError(
                "Connection pool not initialized. Call connect() first.",
                context={"database": self.config.name},
            )

        conn = await self.pool.acquire()
        try:
            yield conn
        finally:
            await self.pool.release(conn)

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a query that doesn't return rows.

        Args:
            query: SQL query
            *args: Query parameters

        Returns:
            Command status string

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                return await conn.execute(query, *args)
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        """Execute a query and return all rows.

        Args:
            query: SQL query
            *args: Query parameters

        Returns:
            List of records

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                return await conn.fetch(query, *args)
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetchone(self, query: str, *args: Any) -> Optional[dict[str, Any]]:
        """Execute a query and return one row as dictionary.

        Args:
            query: SQL query
            *args: Query parameters

        Returns:
            Single record as dictionary or None

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                row = await conn.fetchrow(query, *args)
                return dict(row) if row else None
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetchval(self, query: str, *args: Any) -> Any:
        """Execute a query and return a single value.

        Args:
            query: SQL query
            *args: Query parameters

        Returns:
            Single value or None

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                return await conn.fetchval(query, *args)
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def iterate(self, query: str, *args: Any, prefetch: int = 1000) -> AsyncIterator[asyncpg.Record]:
        """Stream the rows of a query through a server-side cursor.

        Args:
            query: SQL query
            *args: Query parameters
            prefetch: Rows fetched per round trip

        Yields:
            Records in query order

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                async with conn.transaction(readonly=True):
                    async for record in conn.cursor(query, *args, prefetch=prefetch):
                        yield record
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Cursor iteration failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def get_tables(self) -> list[str]:
        """List site tables (lowercase, without prefix) in the configured schema."""
        rows = await self.fetch(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = $1
              AND table_type = 'BASE TABLE'
              AND table_name LIKE $2
            ORDER BY table_name
            """,
            self.config.schema_name,
            self.prefix.replace("_", "\\_") + "%",
        )
        return [row["table_name"][len(self.prefix):].lower() for row in rows]

    async def get_server_version(self) -> str:
        """Get the database server version (e.g. "16.2")."""
        version = await self.fetchval("SELECT version()")
        if version:
            match = re.search(r"PostgreSQL (\d+\.\d+)", version)
            if match:
                return match.group(1)
        return "unknown"
