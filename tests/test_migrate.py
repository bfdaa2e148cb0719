"""Unit tests for migrate.py - Secret store migration runner."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from contextlib import asynccontextmanager

import migrate
from migrate import (
    MIGRATION_TABLE,
    apply_migration,
    discover_migrations,
    ensure_migration_table,
    get_applied_checksums,
    migration_checksum,
    run_migrations,
)


def _make_pool(conn):
    mock_transaction = AsyncMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=mock_transaction)
    mock_transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=mock_transaction)

    pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield conn

    pool.acquire = mock_acquire
    return pool


class TestDiscoverMigrations:
    """Tests for discover_migrations function."""

    def test_returns_sorted_list(self, tmp_path, monkeypatch):
        """Test migrations are discovered and sorted by version."""
        (tmp_path / "002_add_column.sql").write_text(
            "ALTER TABLE local_secrets ADD col TEXT;"
        )
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE test (id INT);")
        (tmp_path / "003_add_index.sql").write_text("CREATE INDEX idx ON test(id);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        result = discover_migrations()

        assert [version for version, _, _ in result] == ["001", "002", "003"]
        assert result[0][1] == "001_initial.sql"
        assert result[0][2] == tmp_path / "001_initial.sql"

    def test_skips_non_matching_files(self, tmp_path, monkeypatch):
        """Test that non-SQL files and unprefixed names are ignored."""
        (tmp_path / "001_valid.sql").write_text("SELECT 1;")
        (tmp_path / "002_readme.txt").write_text("not a migration")
        (tmp_path / "schema.sql").write_text("SELECT 1;")
        (tmp_path / "1_too_short.sql").write_text("SELECT 1;")
        (tmp_path / "003_subdir.sql").mkdir()
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        result = discover_migrations()

        assert len(result) == 1
        assert result[0][0] == "001"

    def test_missing_directory(self, tmp_path, monkeypatch):
        """Test missing directory raises FileNotFoundError."""
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path / "nonexistent")

        with pytest.raises(FileNotFoundError):
            discover_migrations()

    def test_bundled_migrations_exist(self):
        """The shipped schema migration is discoverable."""
        names = [filename for _, filename, _ in discover_migrations()]
        assert "001_local_secrets.sql" in names


class TestMigrationChecksum:
    def test_stable_and_content_sensitive(self):
        assert migration_checksum("SELECT 1;") == migration_checksum("SELECT 1;")
        assert migration_checksum("SELECT 1;") != migration_checksum("SELECT 2;")


@pytest.mark.asyncio
class TestEnsureMigrationTable:
    """Tests for ensure_migration_table function."""

    async def test_executes_create_table(self):
        """Test that CREATE TABLE is executed."""
        conn = AsyncMock()

        await ensure_migration_table(conn)

        conn.execute.assert_called_once()
        sql = conn.execute.call_args[0][0]
        assert f"CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE}" in sql
        assert "checksum" in sql
        assert "applied_at" in sql


@pytest.mark.asyncio
class TestGetAppliedChecksums:
    """Tests for get_applied_checksums function."""

    async def test_returns_version_map(self):
        conn = AsyncMock()
        conn.fetch = AsyncMock(
            return_value=[
                {"version": "001", "checksum": "aaa"},
                {"version": "002", "checksum": "bbb"},
            ]
        )

        result = await get_applied_checksums(conn)

        assert result == {"001": "aaa", "002": "bbb"}

    async def test_returns_empty_map(self):
        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[])

        assert await get_applied_checksums(conn) == {}


@pytest.mark.asyncio
class TestApplyMigration:
    """Tests for apply_migration function."""

    async def test_executes_sql_and_records(self):
        """Test that migration SQL is executed and recorded with its checksum."""
        sql = "CREATE TABLE test (id INT);"
        conn = AsyncMock()
        pool = _make_pool(conn)

        await apply_migration(pool, "001", "001_initial.sql", sql)

        assert conn.execute.call_count == 2
        conn.execute.assert_any_call(sql)
        conn.execute.assert_any_call(
            f"INSERT INTO {MIGRATION_TABLE} (version, filename, checksum) "
            "VALUES ($1, $2, $3)",
            "001",
            "001_initial.sql",
            migration_checksum(sql),
        )

    async def test_propagates_exception(self):
        """Test that SQL errors propagate."""
        conn = AsyncMock()
        pool = _make_pool(conn)
        conn.execute = AsyncMock(side_effect=Exception("syntax error"))

        with pytest.raises(Exception, match="syntax error"):
            await apply_migration(pool, "001", "001_bad.sql", "INVALID SQL;")


@pytest.mark.asyncio
class TestRunMigrations:
    """Tests for run_migrations function."""

    async def test_applies_pending_migrations(self, tmp_path, monkeypatch):
        """Test that only pending migrations are applied."""
        first = "CREATE TABLE t1 (id INT);"
        (tmp_path / "001_initial.sql").write_text(first)
        (tmp_path / "002_update.sql").write_text("ALTER TABLE t1 ADD col TEXT;")
        (tmp_path / "003_index.sql").write_text("CREATE INDEX idx ON t1(id);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        conn = AsyncMock()
        conn.fetch = AsyncMock(
            return_value=[{"version": "001", "checksum": migration_checksum(first)}]
        )
        pool = _make_pool(conn)

        result = await run_migrations(pool)

        assert result == 2

    async def test_fresh_database(self, tmp_path, monkeypatch):
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t1 (id INT);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[])
        pool = _make_pool(conn)

        assert await run_migrations(pool) == 1

    async def test_modified_migration_is_reported_not_reapplied(
        self, tmp_path, monkeypatch, caplog
    ):
        (tmp_path / "001_initial.sql").write_text("CREATE TABLE t1 (id BIGINT);")
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        conn = AsyncMock()
        conn.fetch = AsyncMock(
            return_value=[{"version": "001", "checksum": "stale-checksum"}]
        )
        pool = _make_pool(conn)

        result = await run_migrations(pool)

        assert result == 0
        assert "modified after it was applied" in caplog.text

    async def test_ensures_migration_table_first(self, tmp_path, monkeypatch):
        monkeypatch.setattr(migrate, "MIGRATIONS_DIR", tmp_path)

        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[])
        pool = _make_pool(conn)

        assert await run_migrations(pool) == 0

        conn.execute.assert_called_once()
        sql = conn.execute.call_args[0][0]
        assert f"CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE}" in sql
