"""
Database Adapter - Compatibility Layer

Supports both SQLite (local runs, tests) and PostgreSQL (production)
behind one interface.

Features:
- Automatic query syntax translation ($1, $2 to ?1, ?2)
- Connection pooling for PostgreSQL
- Transactions joined by every call made inside them
- Unified interface for both backends
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import aiosqlite
import asyncpg

from ..config import get_settings

logger = logging.getLogger(__name__)


class DatabaseBackend(Enum):
    """Supported database backends."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class DatabaseConfig:
    """Database configuration from settings."""

    def __init__(
        self,
        backend: Optional[str] = None,
        sqlite_path: Optional[str] = None,
        postgres_url: Optional[str] = None,
        schema: Optional[str] = None,
    ):
        settings = get_settings()
        self.backend = DatabaseBackend((backend or settings.DATABASE_BACKEND).lower())
        self.sqlite_path = sqlite_path or settings.SQLITE_PATH
        self.postgres_url = postgres_url or settings.DATABASE_URL
        self.schema = schema or settings.DATABASE_SCHEMA

    def __repr__(self) -> str:
        return f"DatabaseConfig(backend={self.backend.value}, schema={self.schema})"


@dataclass
class _ActiveTransaction:
    adapter: "DatabaseAdapter"
    connection: Any


# Transaction owned by the current task, if any
_active_transaction: ContextVar[Optional[_ActiveTransaction]] = ContextVar(
    "active_transaction", default=None
)

_PLACEHOLDER = re.compile(r"\$(\d+)")
_FOR_UPDATE = re.compile(r"\s+FOR\s+UPDATE\b", re.IGNORECASE)


def affected_rows(status: str) -> int:
    """Row count from a command status string ("DELETE 1", "INSERT 0 1")."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class DatabaseAdapter:
    """
    Unified database adapter supporting both SQLite and PostgreSQL.

    Usage:
        db = DatabaseAdapter()
        await db.connect()

        # Queries work the same regardless of backend
        rows = await db.fetch("SELECT * FROM opportunities WHERE id = $1", opp_id)

        async with db.transaction():
            await db.execute("UPDATE opportunities SET ... WHERE id = $1", opp_id)
            await db.execute("INSERT INTO opportunity_stage_history ...")

        await db.disconnect()

    Query Syntax:
        Use PostgreSQL-style $1, $2 placeholders. They are converted to
        numbered ?1, ?2 parameters for SQLite, and row locks
        (FOR UPDATE) are dropped there since SQLite has a single writer.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self._pg_pool: Optional[asyncpg.Pool] = None
        self._sqlite_conn: Optional[aiosqlite.Connection] = None
        self._sqlite_lock: Optional[asyncio.Lock] = None
        self._connected = False

    @property
    def backend(self) -> DatabaseBackend:
        return self.config.backend

    async def connect(self) -> None:
        """Connect to the configured database backend."""
        if self._connected:
            return

        logger.info(f"Connecting to database: {self.config}")

        if self.config.backend == DatabaseBackend.POSTGRESQL:
            try:
                self._pg_pool = await asyncpg.create_pool(
                    self.config.postgres_url,
                    min_size=2,
                    max_size=10,
                    command_timeout=60,
                    server_settings={"search_path": self.config.schema},
                )
                logger.info("Connected to PostgreSQL")
            except Exception as e:
                logger.error(f"Failed to connect to PostgreSQL: {e}")
                raise
        else:
            self._sqlite_conn = await aiosqlite.connect(self.config.sqlite_path)
            self._sqlite_conn.row_factory = aiosqlite.Row
            await self._sqlite_conn.execute("PRAGMA foreign_keys = ON")
            self._sqlite_lock = asyncio.Lock()
            logger.info(f"Connected to SQLite: {self.config.sqlite_path}")

        self._connected = True

    async def disconnect(self) -> None:
        """Disconnect from the database."""
        if self._pg_pool:
            await self._pg_pool.close()
            self._pg_pool = None
            logger.info("Disconnected from PostgreSQL")

        if self._sqlite_conn:
            await self._sqlite_conn.close()
            self._sqlite_conn = None
            logger.info("Disconnected from SQLite")

        self._connected = False

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        """
        Fetch multiple rows.

        Args:
            query: SQL query with $1, $2, etc. placeholders
            *args: Query parameters

        Returns:
            List of dictionaries representing rows
        """
        if not self._connected:
            await self.connect()

        if self.config.backend == DatabaseBackend.POSTGRESQL:
            return await self._pg_fetch(query, *args)
        return await self._sqlite_fetch(query, *args)

    async def fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """Fetch a single row."""
        rows = await self.fetch(query, *args)
        return rows[0] if rows else None

    async def fetchval(self, query: str, *args) -> Any:
        """Fetch a single value from the first column of the first row."""
        row = await self.fetchrow(query, *args)
        if row:
            return list(row.values())[0]
        return None

    async def execute(self, query: str, *args) -> str:
        """
        Execute a query (INSERT, UPDATE, DELETE).

        Args:
            query: SQL query with $1, $2, etc. placeholders
            *args: Query parameters

        Returns:
            Status string (e.g., "INSERT 0 1", "DELETE 2")
        """
        if not self._connected:
            await self.connect()

        if self.config.backend == DatabaseBackend.POSTGRESQL:
            return await self._pg_execute(query, *args)
        return await self._sqlite_execute(query, *args)

    async def execute_script(self, script: str) -> None:
        """Run a multi-statement SQL script without parameters."""
        if not self._connected:
            await self.connect()

        if self.config.backend == DatabaseBackend.POSTGRESQL:
            async with self._pg_pool.acquire() as conn:
                await conn.execute(script)
            return

        async with self._sqlite_lock:
            await self._sqlite_conn.executescript(script)
            await self._sqlite_conn.commit()

    def in_transaction(self) -> bool:
        active = _active_transaction.get()
        return active is not None and active.adapter is self

    @asynccontextmanager
    async def transaction(self):
        """
        Context manager for transactions.

        Every fetch/execute issued on this adapter by the current task while
        the block is open runs inside the transaction. Nested blocks join
        the outer transaction.

        Usage:
            async with db.transaction():
                await db.execute("INSERT ...")
                await db.execute("UPDATE ...")
        """
        if not self._connected:
            await self.connect()

        if self.in_transaction():
            yield self
            return

        if self.config.backend == DatabaseBackend.POSTGRESQL:
            async with self._pg_pool.acquire() as conn:
                async with conn.transaction():
                    token = _active_transaction.set(_ActiveTransaction(self, conn))
                    try:
                        yield self
                    finally:
                        _active_transaction.reset(token)
            return

        async with self._sqlite_lock:
            token = _active_transaction.set(_ActiveTransaction(self, self._sqlite_conn))
            try:
                yield self
                await self._sqlite_conn.commit()
            except BaseException:
                await self._sqlite_conn.rollback()
                raise
            finally:
                _active_transaction.reset(token)

    # PostgreSQL implementations
    async def _pg_fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        """Fetch rows from PostgreSQL."""
        if self.in_transaction():
            rows = await _active_transaction.get().connection.fetch(query, *args)
            return [dict(row) for row in rows]
        async with self._pg_pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def _pg_execute(self, query: str, *args) -> str:
        """Execute a query on PostgreSQL."""
        if self.in_transaction():
            return await _active_transaction.get().connection.execute(query, *args)
        async with self._pg_pool.acquire() as conn:
            return await conn.execute(query, *args)

    # SQLite implementations
    async def _sqlite_fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        """Fetch rows from SQLite."""
        sqlite_query = self._convert_to_sqlite(query)
        params = self._convert_params(args)

        if self.in_transaction():
            async with self._sqlite_conn.execute(sqlite_query, params) as cursor:
                rows = await cursor.fetchall()
            return [dict(row) for row in rows]

        async with self._sqlite_lock:
            async with self._sqlite_conn.execute(sqlite_query, params) as cursor:
                rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def _sqlite_execute(self, query: str, *args) -> str:
        """Execute a query on SQLite."""
        sqlite_query = self._convert_to_sqlite(query)
        params = self._convert_params(args)
        verb = sqlite_query.lstrip().split(None, 1)[0].upper()

        if self.in_transaction():
            cursor = await self._sqlite_conn.execute(sqlite_query, params)
            return f"{verb} {cursor.rowcount}"

        async with self._sqlite_lock:
            cursor = await self._sqlite_conn.execute(sqlite_query, params)
            await self._sqlite_conn.commit()
            return f"{verb} {cursor.rowcount}"

    def _convert_to_sqlite(self, query: str) -> str:
        """Convert PostgreSQL query syntax to SQLite."""
        # $1, $2 become numbered ?1, ?2 so repeated placeholders still bind
        query = _PLACEHOLDER.sub(r"?\1", query)
        return _FOR_UPDATE.sub("", query)

    @staticmethod
    def _convert_params(args: tuple) -> tuple:
        converted = []
        for value in args:
            if isinstance(value, (datetime, date)):
                value = value.isoformat()
            elif isinstance(value, Decimal):
                value = float(value)
            elif isinstance(value, (dict, list)):
                value = json.dumps(value)
            converted.append(value)
        return tuple(converted)


# Global instance management
_db: Optional[DatabaseAdapter] = None


async def get_database() -> DatabaseAdapter:
    """Get the global database adapter instance."""
    global _db
    if _db is None:
        _db = DatabaseAdapter()
        await _db.connect()
    return _db


def set_database(db: Optional[DatabaseAdapter]) -> None:
    """Install an already-connected adapter as the global instance."""
    global _db
    _db = db


async def close_database() -> None:
    """Close the global database connection."""
    global _db
    if _db:
        await _db.disconnect()
        _db = None
