#!/usr/bin/env python3
"""
Database Migration Runner

Usage:
    python -m db.migrate              # Run all pending migrations
    python -m db.migrate --status     # Show migration status

Environment:
    DATABASE_BACKEND - sqlite (default) or postgresql
    SQLITE_PATH      - SQLite file for the sqlite backend
    DATABASE_URL     - PostgreSQL connection string
"""

from __future__ import annotations

import argparse
import asyncio

from src.core.database import DatabaseAdapter
from src.core.database.migrations import (
    MIGRATIONS_DIR,
    apply_migrations,
    get_applied_migrations,
    migration_files,
)


def _describe(db: DatabaseAdapter) -> str:
    if db.config.backend.value == "sqlite":
        return db.config.sqlite_path
    url = db.config.postgres_url
    return url.split("@")[1] if "@" in url else url


async def run_all_migrations() -> None:
    """Run all pending migrations."""
    print("=" * 60)
    print("SalesOps Database Migration Runner")
    print("=" * 60)

    db = DatabaseAdapter()
    await db.connect()

    try:
        print(f"\nDatabase: {_describe(db)}")
        print(f"Migrations: {MIGRATIONS_DIR / db.backend.value}\n")

        ran = await apply_migrations(db)
        if not ran:
            print("No pending migrations. Database is up to date.")
            return

        for version in ran:
            print(f"  Applied {version}")

        print("\n" + "=" * 60)
        print(f"All migrations complete ({len(ran)} applied)")
        print("=" * 60)
    finally:
        await db.disconnect()


async def show_status() -> None:
    """Show migration status."""
    print("=" * 60)
    print("Migration Status")
    print("=" * 60)

    db = DatabaseAdapter()
    await db.connect()

    try:
        print(f"\nDatabase: {_describe(db)}\n")
        applied = await get_applied_migrations(db)

        print("Migrations:")
        print("-" * 50)
        for version, path in migration_files(db.backend):
            status = "Applied" if version in applied else "Pending"
            print(f"  {version}: {path.stem}")
            print(f"      Status: {status}")
    finally:
        await db.disconnect()


async def main() -> None:
    parser = argparse.ArgumentParser(
        description="SalesOps Database Migration Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m db.migrate              # Run pending migrations
  python -m db.migrate --status     # Show status
        """
    )
    parser.add_argument("--status", action="store_true", help="Show migration status")
    args = parser.parse_args()

    if args.status:
        await show_status()
    else:
        await run_all_migrations()


if __name__ == "__main__":
    asyncio.run(main())
