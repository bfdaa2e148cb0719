"""
Schema migrations for the PostgreSQL secret store.

Applies forward-only SQL files from the migrations/ directory, each in its
own transaction, and records a checksum per file so that edits to an
already-applied migration are reported instead of silently ignored.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, List, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

MIGRATION_TABLE = "secret_store_migrations"


def migration_checksum(sql: str) -> str:
    """SHA-256 of a migration file's text."""
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the migration tracking table if it doesn't exist."""
    await conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE} (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum VARCHAR(64) NOT NULL,
            applied_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations() -> List[Tuple[str, str, Path]]:
    """
    Discover migration files in the migrations directory.

    Returns:
        Sorted list of (version, filename, path) tuples.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    if not MIGRATIONS_DIR.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {MIGRATIONS_DIR}")

    found = []
    for entry in sorted(MIGRATIONS_DIR.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            found.append((match.group(1), entry.name, entry))
    return found


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map each applied migration version to its recorded checksum."""
    rows = await conn.fetch(f"SELECT version, checksum FROM {MIGRATION_TABLE}")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(
    pool: asyncpg.Pool, version: str, filename: str, sql: str
) -> None:
    """
    Apply a single migration in its own transaction.

    Args:
        pool: asyncpg connection pool.
        version: Migration version string (e.g. "001").
        filename: Migration filename for the audit trail.
        sql: The migration's SQL text.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                f"INSERT INTO {MIGRATION_TABLE} (version, filename, checksum) "
                "VALUES ($1, $2, $3)",
                version,
                filename,
                migration_checksum(sql),
            )

    logger.info(f"Applied migration {filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply all pending migrations in version order.

    Args:
        pool: An asyncpg connection pool (must already be connected).

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_checksums(conn)

    pending = []
    for version, filename, path in discover_migrations():
        sql = path.read_text(encoding="utf-8")
        if version not in applied:
            pending.append((version, filename, sql))
        elif applied[version] != migration_checksum(sql):
            logger.warning(
                f"Migration {filename} was modified after it was applied; "
                f"the database keeps the original version"
            )

    if not pending:
        logger.info("Secret store schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for version, filename, sql in pending:
        await apply_migration(pool, version, filename, sql)

    return len(pending)
