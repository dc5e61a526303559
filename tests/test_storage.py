"""Tests for the SQLite vector and content stores."""

import sqlite3

import pytest

from vaultsearch.errors import ConfigurationMissing, EmbeddingDimensionMismatch, StoreIOFailure
from vaultsearch.index.storage import (
    NOTES_PREFIX,
    ContentStore,
    SQLiteContentStore,
    SQLiteVectorStore,
    VectorStore,
    content_key,
    iter_content_pages,
)
from vaultsearch.models import IndexEntry


def _entry(id_, vector, **metadata):
    return IndexEntry(id=id_, vector=vector, metadata={"path": f"{id_}.md", **metadata})


def _unit(index, dimension=8):
    vector = [0.0] * dimension
    vector[index] = 1.0
    return vector


class TestSQLiteDatabase:
    """Test connection handling shared by both stores."""

    def test_init_creates_database(self, tmp_path):
        db_path = tmp_path / "new.db"
        assert not db_path.exists()

        store = SQLiteVectorStore(db_path, dimension=8)

        assert db_path.exists()
        assert store.db_path == db_path
        assert store.dimension == 8
        store.close()

    def test_schema_creation(self, vector_store, content_store):
        """All tables can live in the same database file."""
        conn = vector_store.connection
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        assert {"vectors", "meta", "content"} <= tables

    def test_pragma_settings(self, vector_store):
        """WAL mode is enabled."""
        result = vector_store.connection.execute("PRAGMA journal_mode").fetchone()
        assert result[0].lower() == "wal"

    def test_protocols(self, vector_store, content_store):
        assert isinstance(vector_store, VectorStore)
        assert isinstance(content_store, ContentStore)

    def test_transaction_error_is_store_failure(self, content_store):
        """SQLite errors inside a transaction surface as StoreIOFailure."""
        with pytest.raises(StoreIOFailure):
            with content_store.transaction() as conn:
                conn.execute("INSERT INTO missing_table VALUES (1)")

    def test_transaction_rolls_back(self, content_store):
        with pytest.raises(RuntimeError):
            with content_store.transaction() as conn:
                conn.execute(
                    "INSERT INTO content(key, value, checksum, size) VALUES ('k', 'v', 'c', 1)"
                )
                raise RuntimeError("boom")
        assert content_store.connection.execute("SELECT COUNT(*) FROM content").fetchone()[0] == 0


class TestSQLiteVectorStore:
    """Test vector upsert, query and deletion."""

    @pytest.mark.asyncio
    async def test_upsert_and_query(self, vector_store):
        await vector_store.upsert(
            [_entry("a", _unit(0)), _entry("b", _unit(1)), _entry("c", [1.0, 1.0] + [0.0] * 6)]
        )

        matches = await vector_store.query(_unit(0), 2)

        assert [m.id for m in matches] == ["a", "c"]
        assert matches[0].score == pytest.approx(1.0)
        assert matches[1].score == pytest.approx(0.7071, abs=1e-4)
        assert matches[0].metadata["path"] == "a.md"

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, vector_store):
        """Upserting the same id overwrites vector and metadata."""
        await vector_store.upsert([_entry("a", _unit(0), title="Old")])
        await vector_store.upsert([_entry("a", _unit(1), title="New")])

        matches = await vector_store.query(_unit(1), 5)

        assert await vector_store.count() == 1
        assert matches[0].metadata["title"] == "New"
        assert matches[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_query_empty(self, vector_store):
        assert await vector_store.query(_unit(0), 5) == []

    @pytest.mark.asyncio
    async def test_top_k_larger_than_index(self, vector_store):
        await vector_store.upsert([_entry("a", _unit(0)), _entry("b", _unit(1))])
        assert len(await vector_store.query(_unit(0), 50)) == 2

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, vector_store):
        """Vectors of the wrong size are rejected on write and read."""
        with pytest.raises(EmbeddingDimensionMismatch):
            await vector_store.upsert([_entry("a", [1.0, 0.0])])
        with pytest.raises(EmbeddingDimensionMismatch):
            await vector_store.query([1.0, 0.0], 1)

    @pytest.mark.asyncio
    async def test_delete_by_ids(self, vector_store):
        await vector_store.upsert([_entry("a", _unit(0)), _entry("b", _unit(1))])

        await vector_store.delete_by_ids(["a", "missing"])

        assert await vector_store.count() == 1
        assert [m.id for m in await vector_store.query(_unit(0), 5)] == ["b"]

    @pytest.mark.asyncio
    async def test_closed_store_fails(self, tmp_path):
        store = SQLiteVectorStore(tmp_path / "closed.db", dimension=8)
        store.close()
        with pytest.raises(StoreIOFailure):
            await store.count()


class TestVectorDimension:
    """Test that the index keeps the vector size it was created with."""

    @pytest.mark.asyncio
    async def test_reopen_with_other_dimension(self, tmp_path):
        """A different model cannot write into an existing index."""
        db_path = tmp_path / "fixed.db"
        store = SQLiteVectorStore(db_path, dimension=4)
        await store.upsert([_entry("a", _unit(0, 4))])
        store.close()

        with pytest.raises(EmbeddingDimensionMismatch):
            SQLiteVectorStore(db_path, dimension=3)

        reopened = SQLiteVectorStore(db_path, dimension=4)
        assert [m.id for m in await reopened.query(_unit(0, 4), 5)] == ["a"]
        reopened.close()

    def test_recorded_dimension_adopted(self, tmp_path):
        db_path = tmp_path / "fixed.db"
        SQLiteVectorStore(db_path, dimension=4).close()

        store = SQLiteVectorStore(db_path)

        assert store.dimension == 4
        store.close()

    @pytest.mark.asyncio
    async def test_no_dimension_yet(self, tmp_path):
        store = SQLiteVectorStore(tmp_path / "empty.db")
        assert store.dimension is None
        assert await store.count() == 0
        with pytest.raises(ConfigurationMissing):
            await store.query(_unit(0, 4), 1)
        store.close()

    @pytest.mark.asyncio
    async def test_clear_forgets_dimension(self, tmp_path):
        """After clearing, the index accepts vectors of a new size."""
        db_path = tmp_path / "fixed.db"
        store = SQLiteVectorStore(db_path, dimension=4)
        await store.upsert([_entry("a", _unit(0, 4)), _entry("b", _unit(1, 4))])

        assert await store.clear() == 2
        store.close()

        reopened = SQLiteVectorStore(db_path, dimension=3)
        await reopened.upsert([_entry("c", _unit(0, 3))])
        assert await reopened.count() == 1
        reopened.close()


class TestSQLiteContentStore:
    """Test blob storage, checksum heads and pagination."""

    @pytest.mark.asyncio
    async def test_put_get_head(self, content_store):
        await content_store.put("notes/a.md", '{"title": "Ä"}', checksum="abc")

        record = await content_store.get("notes/a.md")
        head = await content_store.head("notes/a.md")

        assert record.json() == {"title": "Ä"}
        assert record.checksum == "abc"
        assert head.checksum == "abc"
        assert head.size == len('{"title": "Ä"}'.encode("utf-8"))

    @pytest.mark.asyncio
    async def test_missing_key(self, content_store):
        assert await content_store.get("notes/missing.md") is None
        assert await content_store.head("notes/missing.md") is None

    @pytest.mark.asyncio
    async def test_put_overwrites(self, content_store):
        await content_store.put("notes/a.md", "one", checksum="1")
        await content_store.put("notes/a.md", "two", checksum="2")

        record = await content_store.get("notes/a.md")
        assert (record.value, record.checksum) == ("two", "2")

    @pytest.mark.asyncio
    async def test_list_pagination(self, content_store):
        """Pages follow key order and hand back a token until exhausted."""
        for name in ["e", "a", "c", "b", "d"]:
            await content_store.put(content_key(f"{name}.md"), name, checksum=name)
        await content_store.put("other/x.md", "x", checksum="x")

        first = await content_store.list(NOTES_PREFIX, limit=2)
        second = await content_store.list(NOTES_PREFIX, page_token=first.next_page_token, limit=2)
        third = await content_store.list(NOTES_PREFIX, page_token=second.next_page_token, limit=2)

        assert [i.key for i in first.items] == ["notes/a.md", "notes/b.md"]
        assert [i.key for i in second.items] == ["notes/c.md", "notes/d.md"]
        assert [i.key for i in third.items] == ["notes/e.md"]
        assert third.next_page_token is None

    @pytest.mark.asyncio
    async def test_exact_page_has_no_token(self, content_store):
        for name in ["a", "b"]:
            await content_store.put(content_key(f"{name}.md"), name, checksum=name)
        page = await content_store.list(NOTES_PREFIX, limit=2)
        assert len(page.items) == 2
        assert page.next_page_token is None

    @pytest.mark.asyncio
    async def test_iter_content_pages(self, content_store):
        """Should walk every page of a listing."""
        for index in range(7):
            await content_store.put(content_key(f"n{index}.md"), "x", checksum="c")

        pages = [page async for page in iter_content_pages(content_store, page_size=3)]

        assert [len(page.items) for page in pages] == [3, 3, 1]

    @pytest.mark.asyncio
    async def test_delete(self, content_store):
        await content_store.put("notes/a.md", "x", checksum="c")
        await content_store.delete("notes/a.md")
        await content_store.delete("notes/never-existed.md")
        assert await content_store.get("notes/a.md") is None

    def test_closed_connection(self, tmp_path):
        store = SQLiteContentStore(tmp_path / "c.db")
        conn = store.connection
        store.close()
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")
