"""Shared fixtures: an offline embedder, SQLite stores and a small vault."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import List, Sequence

import pytest

from vaultsearch.index.storage import SQLiteContentStore, SQLiteVectorStore

DIMENSION = 8


class FakeEmbedder:
    """Deterministic hash-based vectors, so no model download is needed."""

    def __init__(self, dimension: int = DIMENSION) -> None:
        self.dimension = dimension
        self.batches: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [digest[i] / 255.0 + 0.01 for i in range(self.dimension)]

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.batches.append(list(texts))
        return [self.vector_for(text) for text in texts]

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "vaultsearch.db"


@pytest.fixture
def vector_store(db_path: Path):
    store = SQLiteVectorStore(db_path, dimension=DIMENSION)
    yield store
    store.close()


@pytest.fixture
def content_store(db_path: Path):
    store = SQLiteContentStore(db_path)
    yield store
    store.close()


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    (root / "projects").mkdir(parents=True)
    (root / ".obsidian").mkdir()
    (root / "node_modules" / "pkg").mkdir(parents=True)

    (root / "welcome.md").write_text(
        "---\ntitle: Welcome\ntags: [intro, home]\n---\nHello #vault world\n",
        encoding="utf-8",
    )
    (root / "projects" / "alpha.md").write_text(
        "# Alpha\nProject notes about #python and search.\n", encoding="utf-8"
    )
    (root / "projects" / "beta.md").write_text("Beta plan\n", encoding="utf-8")
    (root / ".obsidian" / "workspace.md").write_text("hidden", encoding="utf-8")
    (root / "node_modules" / "pkg" / "README.md").write_text("vendored", encoding="utf-8")
    (root / "image.png").write_bytes(b"\x89PNG")
    return root


class SmallPages:
    """Content store wrapper that forces short listing pages."""

    def __init__(self, store, page_size: int = 3) -> None:
        self.store = store
        self.page_size = page_size
        self.calls = 0

    async def list(self, prefix, page_token=None, limit=1000):
        self.calls += 1
        return await self.store.list(prefix, page_token=page_token, limit=self.page_size)

    def __getattr__(self, name):
        return getattr(self.store, name)


@pytest.fixture
def small_pages(content_store) -> SmallPages:
    return SmallPages(content_store)
