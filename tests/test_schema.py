"""
Tests for notevault/db/schema.py
"""

import aiosqlite
import pytest

from notevault.db.schema import (
    INDEXES,
    SCHEMA_VERSION,
    IndexSpec,
    apply_indexes,
    indexes_by_table,
    init_schema,
    list_indexes,
    table_sizes,
)


@pytest.fixture
async def conn(tmp_path):
    conn = await aiosqlite.connect(str(tmp_path / "schema.db"), isolation_level=None)
    yield conn
    await conn.close()


class TestInitSchema:
    """Tests for init_schema"""

    @pytest.mark.asyncio
    async def test_creates_every_index(self, conn):
        report = await init_schema(conn)

        assert report.ok
        assert report.schema_version == SCHEMA_VERSION
        names = await list_indexes(conn)
        for spec in INDEXES:
            assert spec.name in names

    @pytest.mark.asyncio
    async def test_running_twice_is_harmless(self, conn):
        await init_schema(conn)
        first = await list_indexes(conn)

        report = await init_schema(conn)

        assert report.ok
        assert await list_indexes(conn) == first
        assert len(first) == len(set(first))

    @pytest.mark.asyncio
    async def test_records_schema_version_once(self, conn):
        await init_schema(conn)
        await init_schema(conn)

        async with conn.execute("SELECT version FROM schema_version") as cursor:
            rows = await cursor.fetchall()

        assert [row[0] for row in rows] == [SCHEMA_VERSION]

    def test_index_names_are_unique(self):
        names = [spec.name for spec in INDEXES]

        assert len(names) == len(set(names))


class TestApplyIndexes:
    """Tests for apply_indexes warnings"""

    @pytest.mark.asyncio
    async def test_bad_column_becomes_warning(self, conn, caplog):
        await init_schema(conn)
        specs = [
            IndexSpec("idx_notes_missing", "notes", ("no_such_column",)),
            IndexSpec("idx_notes_title_again", "notes", ("title",)),
        ]

        with caplog.at_level("WARNING", logger="notevault.db.schema"):
            report = await apply_indexes(conn, specs)

        assert not report.ok
        assert [w.index for w in report.warnings] == ["idx_notes_missing"]
        assert report.warnings[0].table == "notes"
        assert report.indexes_applied == ["idx_notes_title_again"]
        assert "idx_notes_missing" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_table_becomes_warning(self, conn):
        report = await apply_indexes(conn, [IndexSpec("idx_ghost_id", "ghost", ("id",))])

        assert len(report.warnings) == 1
        assert "ghost" in report.warnings[0].message

    def test_create_sql(self):
        spec = IndexSpec("idx_notes_workspace_id_updated_at", "notes", ("workspace_id", "updated_at"))

        assert spec.create_sql() == (
            "CREATE INDEX IF NOT EXISTS idx_notes_workspace_id_updated_at "
            "ON notes(workspace_id, updated_at)"
        )


class TestInspection:
    """Tests for index and size inspection helpers"""

    @pytest.mark.asyncio
    async def test_indexes_grouped_by_table(self, conn):
        await init_schema(conn)

        grouped = await indexes_by_table(conn)

        for spec in INDEXES:
            assert spec.name in grouped[spec.table]
        assert sum(len(names) for names in grouped.values()) == len(await list_indexes(conn))

    @pytest.mark.asyncio
    async def test_table_sizes(self, conn):
        await init_schema(conn)

        sizes = await table_sizes(conn)

        if sizes is None:
            pytest.skip("SQLite build without dbstat")
        assert sizes["notes"] > 0
        assert INDEXES[0].name in sizes
