"""
PostgreSQL Secret Store - asyncpg-backed local secret storage.

Stores materialized local secrets keyed by (namespace, name). Every write is
a single conditional statement, so the compare-and-swap check and the
content replacement commit together.
"""

import asyncpg
import json
import logging
from typing import Any, Dict, Optional

from errors import StoreUnavailable, WriteConflict
from migrate import run_migrations
from specs import content_hash, make_spec_id
from store import LocalSecret, LocalSecretStore

logger = logging.getLogger(__name__)


class PostgresSecretStore(LocalSecretStore):
    """Local secret store persisted in PostgreSQL."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    async def get(self, name: str, namespace: str) -> Optional[LocalSecret]:
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT name, namespace, data, content_hash
                    FROM local_secrets
                    WHERE namespace = $1 AND name = $2
                    """,
                    namespace,
                    name,
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailable(
                f"Failed to read local secret {namespace}/{name}: {e}",
                spec_id=make_spec_id(namespace, name),
            )

        return self._parse_secret_row(row) if row else None

    async def put(
        self,
        name: str,
        namespace: str,
        data: Dict[str, str],
        expected_previous_hash: Optional[str],
    ) -> str:
        self._ensure_connected()
        new_hash = content_hash(data)
        data_json = json.dumps(data, sort_keys=True)

        try:
            async with self.pool.acquire() as conn:
                if expected_previous_hash is None:
                    committed = await conn.fetchval(
                        """
                        INSERT INTO local_secrets (namespace, name, data, content_hash)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (namespace, name) DO NOTHING
                        RETURNING content_hash
                        """,
                        namespace,
                        name,
                        data_json,
                        new_hash,
                    )
                else:
                    committed = await conn.fetchval(
                        """
                        UPDATE local_secrets
                        SET data = $3, content_hash = $4,
                            version = version + 1, updated_at = NOW()
                        WHERE namespace = $1 AND name = $2 AND content_hash = $5
                        RETURNING content_hash
                        """,
                        namespace,
                        name,
                        data_json,
                        new_hash,
                        expected_previous_hash,
                    )
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailable(
                f"Failed to write local secret {namespace}/{name}: {e}",
                spec_id=make_spec_id(namespace, name),
            )

        if committed is None:
            raise WriteConflict(
                f"Local secret {namespace}/{name} changed concurrently "
                f"(expected {expected_previous_hash})",
                spec_id=make_spec_id(namespace, name),
            )

        logger.debug(f"Wrote local secret {namespace}/{name} ({new_hash[:12]})")
        return committed

    async def delete(self, name: str, namespace: str) -> bool:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM local_secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
        # asyncpg returns "DELETE <count>"
        return result.split()[-1] != "0"

    def _parse_secret_row(self, row: asyncpg.Record) -> LocalSecret:
        """
        Parse a local_secrets row into a LocalSecret.

        The ``data`` column is stored as JSONB and arrives as a JSON string.
        """
        result: Dict[str, Any] = dict(row)
        data = result.get("data")
        if isinstance(data, str):
            data = json.loads(data)
        return LocalSecret(
            name=result["name"],
            namespace=result["namespace"],
            data=data or {},
            content_hash=result["content_hash"],
        )
