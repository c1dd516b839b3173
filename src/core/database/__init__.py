"""
Database abstraction layer supporting SQLite and PostgreSQL.

This module provides a unified interface for database operations that works
with both SQLite (local runs and tests) and PostgreSQL (production).

Usage:
    from src.core.database import get_database, DatabaseAdapter

    # Get the global database instance
    db = await get_database()

    # Execute queries (works with both backends)
    rows = await db.fetch("SELECT * FROM opportunities WHERE owner_id = $1", owner_id)

    async with db.transaction():
        await db.execute("UPDATE opportunities SET stage_id = $1 WHERE id = $2", stage_id, opp_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    affected_rows,
    get_database,
    set_database,
    close_database,
)
from .migrations import apply_migrations

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "affected_rows",
    "get_database",
    "set_database",
    "close_database",
    "apply_migrations",
]
