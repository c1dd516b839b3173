"""
Tests for the SQLite side of the database adapter.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from src.core.database import DatabaseAdapter, DatabaseConfig, affected_rows


@pytest.fixture
def adapter(tmp_path) -> DatabaseAdapter:
    return DatabaseAdapter(DatabaseConfig(backend="sqlite", sqlite_path=str(tmp_path / "adapter.db")))


class TestAffectedRows:

    @pytest.mark.parametrize("status,expected", [
        ("DELETE 1", 1),
        ("UPDATE 0", 0),
        ("INSERT 0 3", 3),
        ("", 0),
        ("garbage", 0),
    ])
    def test_parse(self, status, expected):
        assert affected_rows(status) == expected


class TestQueryConversion:

    def test_placeholders_numbered(self, adapter):
        converted = adapter._convert_to_sqlite("SELECT * FROM t WHERE a = $1 OR b = $1 AND c = $2")
        assert converted == "SELECT * FROM t WHERE a = ?1 OR b = ?1 AND c = ?2"

    def test_row_lock_dropped(self, adapter):
        converted = adapter._convert_to_sqlite("SELECT * FROM opportunities WHERE id = $1 FOR UPDATE")
        assert "FOR UPDATE" not in converted

    def test_params_converted(self):
        moment = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        params = DatabaseAdapter._convert_params(
            (moment, date(2026, 3, 31), Decimal("12.50"), {"a": 1}, ["x"], "plain", None)
        )
        assert params == (
            moment.isoformat(),
            "2026-03-31",
            12.5,
            '{"a": 1}',
            '["x"]',
            "plain",
            None,
        )


class TestTransactions:

    async def test_rollback_discards_writes(self, adapter):
        await adapter.connect()
        try:
            await adapter.execute("CREATE TABLE items (id TEXT PRIMARY KEY)")
            with pytest.raises(RuntimeError):
                async with adapter.transaction():
                    await adapter.execute("INSERT INTO items (id) VALUES ($1)", "a")
                    raise RuntimeError("boom")
            assert await adapter.fetchval("SELECT COUNT(*) FROM items") == 0
        finally:
            await adapter.disconnect()

    async def test_nested_calls_join_transaction(self, adapter):
        await adapter.connect()
        try:
            await adapter.execute("CREATE TABLE items (id TEXT PRIMARY KEY)")
            async with adapter.transaction():
                assert adapter.in_transaction()
                await adapter.execute("INSERT INTO items (id) VALUES ($1)", "a")
                assert await adapter.fetchval("SELECT COUNT(*) FROM items") == 1
            assert not adapter.in_transaction()
            assert await adapter.fetchval("SELECT COUNT(*) FROM items") == 1
        finally:
            await adapter.disconnect()
