"""Vector and content stores.

The indexing and retrieval code only depends on the :class:`VectorStore` and
:class:`ContentStore` protocols. The SQLite classes below are the local
implementations used by the CLI and the web app.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import AsyncIterator, Iterator, List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from vaultsearch.errors import ConfigurationMissing, EmbeddingDimensionMismatch, StoreIOFailure
from vaultsearch.models import (
    ContentHead,
    ContentItem,
    ContentPage,
    ContentRecord,
    IndexEntry,
    VectorMatch,
)

NOTES_PREFIX = "notes/"
PAGE_SIZE = 1000


def content_key(path: str) -> str:
    """Content-store key for a sanitized note path."""
    return f"{NOTES_PREFIX}{path}"


@runtime_checkable
class VectorStore(Protocol):
    async def upsert(self, entries: Sequence[IndexEntry]) -> None: ...

    async def query(self, vector: Sequence[float], top_k: int) -> List[VectorMatch]: ...

    async def delete_by_ids(self, ids: Sequence[str]) -> None: ...

    async def count(self) -> int: ...

    async def clear(self) -> int: ...


@runtime_checkable
class ContentStore(Protocol):
    async def get(self, key: str) -> Optional[ContentRecord]: ...

    async def head(self, key: str) -> Optional[ContentHead]: ...

    async def put(self, key: str, value: str, *, checksum: str) -> None: ...

    async def list(
        self, prefix: str, page_token: Optional[str] = None, limit: int = PAGE_SIZE
    ) -> ContentPage: ...

    async def delete(self, key: str) -> None: ...


class _SQLiteDatabase:
    """Shared connection handling for the SQLite stores."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            self._ensure_schema()
        except Exception:
            self._conn.close()
            raise

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise StoreIOFailure(str(exc)) from exc
        except Exception:
            self._conn.rollback()
            raise

    def _ensure_schema(self) -> None:
        raise NotImplementedError


class SQLiteVectorStore(_SQLiteDatabase):
    """Brute-force cosine similarity over float32 vectors stored as blobs.

    The vector size is recorded in the ``meta`` table the first time a
    dimension is given and is fixed from then on. Opening the database with a
    different dimension raises :class:`EmbeddingDimensionMismatch` before
    anything is written. With ``dimension=None`` the recorded size is adopted,
    which is how read-only commands open the index without loading a model.
    """

    def __init__(self, db_path: Path, *, dimension: int | None = None) -> None:
        self.dimension = dimension
        super().__init__(db_path)

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vectors (
                    id TEXT PRIMARY KEY,
                    embedding BLOB NOT NULL,
                    metadata TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            row = conn.execute("SELECT value FROM meta WHERE key = 'dimension'").fetchone()
            if row is None:
                if self.dimension is not None:
                    conn.execute(
                        "INSERT INTO meta(key, value) VALUES ('dimension', ?)",
                        (str(self.dimension),),
                    )
                return

            stored = int(row["value"])
            if self.dimension is None:
                self.dimension = stored
            elif self.dimension != stored:
                raise EmbeddingDimensionMismatch(
                    f"Index at {self.db_path} holds {stored}-dimensional vectors but the "
                    f"embedding model produces {self.dimension}; reset the index to switch models"
                )

    def _check_dimension(self, vector: Sequence[float]) -> np.ndarray:
        if self.dimension is None:
            raise ConfigurationMissing("Vector index has no dimension yet; index some notes first")
        array = np.asarray(vector, dtype="float32")
        if array.ndim != 1 or array.shape[0] != self.dimension:
            raise EmbeddingDimensionMismatch(
                f"Vector has {array.size} dimensions, index expects {self.dimension}"
            )
        return array

    async def upsert(self, entries: Sequence[IndexEntry]) -> None:
        rows = [
            (
                entry.id,
                sqlite3.Binary(self._check_dimension(entry.vector).tobytes()),
                json.dumps(entry.metadata, ensure_ascii=True),
            )
            for entry in entries
        ]
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO vectors(id, embedding, metadata) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    embedding = excluded.embedding,
                    metadata = excluded.metadata,
                    updated_at = CURRENT_TIMESTAMP
                """,
                rows,
            )

    async def query(self, vector: Sequence[float], top_k: int) -> List[VectorMatch]:
        query = self._check_dimension(vector)
        try:
            rows = self._conn.execute("SELECT id, embedding, metadata FROM vectors").fetchall()
        except sqlite3.Error as exc:
            raise StoreIOFailure(str(exc)) from exc

        if not rows or top_k <= 0:
            return []

        embeddings = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])
        norms = np.linalg.norm(embeddings, axis=1) * (np.linalg.norm(query) or 1.0)
        norms[norms == 0] = 1.0
        scores = (embeddings @ query) / norms

        if top_k < len(scores):
            top_indices = np.argpartition(scores, -top_k)[-top_k:]
            top_indices = top_indices[np.argsort(-scores[top_indices], kind="stable")]
        else:
            top_indices = np.argsort(-scores, kind="stable")

        return [
            VectorMatch(
                id=rows[idx]["id"],
                score=float(scores[idx]),
                metadata=json.loads(rows[idx]["metadata"]),
            )
            for idx in top_indices
        ]

    async def delete_by_ids(self, ids: Sequence[str]) -> None:
        with self.transaction() as conn:
            conn.executemany("DELETE FROM vectors WHERE id = ?", [(id_,) for id_ in ids])

    async def count(self) -> int:
        try:
            return int(self._conn.execute("SELECT COUNT(*) FROM vectors").fetchone()[0])
        except sqlite3.Error as exc:
            raise StoreIOFailure(str(exc)) from exc

    async def clear(self) -> int:
        """Delete every vector and forget the recorded dimension."""
        with self.transaction() as conn:
            deleted = conn.execute("DELETE FROM vectors").rowcount
            conn.execute("DELETE FROM meta WHERE key = 'dimension'")
        self.dimension = None
        return int(deleted)


class SQLiteContentStore(_SQLiteDatabase):
    """Key/value blob store with checksum metadata and keyset pagination."""

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS content (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    checksum TEXT,
                    size INTEGER NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    def _fetchone(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise StoreIOFailure(str(exc)) from exc

    async def get(self, key: str) -> Optional[ContentRecord]:
        row = self._fetchone("SELECT key, value, checksum, size FROM content WHERE key = ?", (key,))
        if row is None:
            return None
        return ContentRecord(
            key=row["key"], value=row["value"], checksum=row["checksum"], size=row["size"]
        )

    async def head(self, key: str) -> Optional[ContentHead]:
        row = self._fetchone("SELECT checksum, size FROM content WHERE key = ?", (key,))
        if row is None:
            return None
        return ContentHead(checksum=row["checksum"], size=row["size"])

    async def put(self, key: str, value: str, *, checksum: str) -> None:
        size = len(value.encode("utf-8"))
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO content(key, value, checksum, size) VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    checksum = excluded.checksum,
                    size = excluded.size,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, value, checksum, size),
            )

    async def list(
        self, prefix: str, page_token: Optional[str] = None, limit: int = PAGE_SIZE
    ) -> ContentPage:
        limit = max(1, limit)
        try:
            rows = self._conn.execute(
                """
                SELECT key, size FROM content
                WHERE substr(key, 1, ?) = ? AND key > ?
                ORDER BY key
                LIMIT ?
                """,
                (len(prefix), prefix, page_token or "", limit + 1),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreIOFailure(str(exc)) from exc

        items = [ContentItem(key=row["key"], size=row["size"]) for row in rows[:limit]]
        next_token = items[-1].key if len(rows) > limit else None
        return ContentPage(items=items, next_page_token=next_token)

    async def delete(self, key: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM content WHERE key = ?", (key,))


async def iter_content_pages(
    store: ContentStore, prefix: str = NOTES_PREFIX, page_size: int = PAGE_SIZE
) -> AsyncIterator[ContentPage]:
    """Yield every page of a listing, following page tokens to the end."""
    token: Optional[str] = None
    while True:
        page = await store.list(prefix, page_token=token, limit=page_size)
        yield page
        token = page.next_page_token
        if not token:
            return
