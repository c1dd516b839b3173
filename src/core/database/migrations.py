"""
Schema migrations

Applies the versioned SQL scripts for the active backend and records them
in schema_migrations. Scripts live in sql/<backend>/NNN_name.sql.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Set, Tuple

from .adapter import DatabaseAdapter, DatabaseBackend

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "sql"


def migration_files(backend: DatabaseBackend) -> List[Tuple[str, Path]]:
    """(version, path) pairs for a backend, in apply order."""
    files = sorted((MIGRATIONS_DIR / backend.value).glob("*.sql"))
    return [(f.stem.split("_")[0], f) for f in files]


async def ensure_migrations_table(db: DatabaseAdapter) -> None:
    if db.backend == DatabaseBackend.POSTGRESQL:
        await db.execute_script(f"CREATE SCHEMA IF NOT EXISTS {db.config.schema}")
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )


async def get_applied_migrations(db: DatabaseAdapter) -> Set[str]:
    """Get set of already-applied migration versions."""
    await ensure_migrations_table(db)
    rows = await db.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migrations(db: DatabaseAdapter) -> List[str]:
    """
    Run all pending migrations for the adapter's backend.

    Returns:
        Versions applied by this call, in order
    """
    applied = await get_applied_migrations(db)
    ran = []

    for version, path in migration_files(db.backend):
        if version in applied:
            continue
        logger.info(f"Applying migration {path.stem}")
        await db.execute_script(path.read_text())
        await db.execute(
            "INSERT INTO schema_migrations (version, name, applied_at) VALUES ($1, $2, $3)",
            version,
            path.stem,
            datetime.now(timezone.utc).isoformat(),
        )
        ran.append(version)

    return ran
