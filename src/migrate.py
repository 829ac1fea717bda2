"""
Schema migrations for the device registry.

Forward-only SQL files named ``NNN_description.sql`` are applied in order,
each in its own transaction. A PostgreSQL advisory lock serialises
concurrent controller replicas starting at the same time.
"""

import logging
import re
from pathlib import Path
from typing import List, NamedTuple, Optional, Set

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

# Arbitrary key identifying the migration lock
ADVISORY_LOCK_KEY = 0x70616B74


class Migration(NamedTuple):
    version: str
    filename: str
    path: Path


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    List migration files in version order.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append(Migration(match.group(1), entry.name, entry))
    return migrations


async def get_applied_versions(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migration(conn: asyncpg.Connection, migration: Migration) -> None:
    """Apply a single migration and record it, atomically."""
    sql = migration.path.read_text(encoding="utf-8")

    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
            migration.version,
            migration.filename,
        )

    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool, directory: Optional[Path] = None) -> int:
    """
    Apply all pending migrations.

    Args:
        pool: A connected asyncpg pool.
        directory: Override for the migrations directory.

    Returns:
        Number of migrations applied.

    Raises:
        asyncpg.PostgresError: If a migration fails. It is rolled back;
            earlier migrations stay applied.
    """
    migrations = discover_migrations(directory)

    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", ADVISORY_LOCK_KEY)
        try:
            await ensure_migration_table(conn)
            applied = await get_applied_versions(conn)
            pending = [m for m in migrations if m.version not in applied]

            if not pending:
                logger.info("Database schema is up to date")
                return 0

            logger.info(f"Applying {len(pending)} pending migration(s)")
            for migration in pending:
                await apply_migration(conn, migration)
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", ADVISORY_LOCK_KEY)

    return len(pending)
