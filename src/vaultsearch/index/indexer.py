"""Document indexing pipeline.

Notes are embedded and upserted to the vector store batch by batch. Every note
with a usable path is then written to the content store when its checksum
changed, whether or not its vector made it in. The two stores are updated
independently and may briefly disagree.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

from vaultsearch.embedding.encoder import Embedder, validate_batch
from vaultsearch.errors import (
    EmbeddingDimensionMismatch,
    EmbeddingFailure,
    InvalidPath,
    StoreIOFailure,
)
from vaultsearch.index.storage import ContentStore, VectorStore, content_key
from vaultsearch.ingestion.markdown_loader import load_document
from vaultsearch.models import Document, IndexEntry, IndexStats
from vaultsearch.utils.files import compute_checksum, hash_path, list_note_paths
from vaultsearch.utils.paths import sanitize_path
from vaultsearch.utils.text import truncate

LOGGER = logging.getLogger(__name__)

CORE_METADATA_KEYS = ("path", "title", "content", "tags", "createdAt", "modifiedAt")
MAX_EXTENSION_VALUE_CHARS = 2048


def extension_metadata(frontmatter: Dict[str, Any] | None) -> Dict[str, Any]:
    """Front-matter fields carried into vector metadata.

    Only the size of each value is checked; core keys are never overridden.
    """
    extension: Dict[str, Any] = {}
    for key, value in (frontmatter or {}).items():
        if key in CORE_METADATA_KEYS:
            continue
        if len(json.dumps(value, ensure_ascii=False)) > MAX_EXTENSION_VALUE_CHARS:
            LOGGER.warning("Dropping oversized front-matter field %r", key)
            continue
        extension[key] = value
    return extension


class Indexer:
    """Coordinates note ingestion into the vector and content stores."""

    def __init__(
        self,
        embedder: Embedder,
        vector_store: VectorStore,
        content_store: ContentStore,
        *,
        vault_path: Path | None = None,
        batch_size: int = 10,
        batch_delay: float = 0.1,
        preview_chars: int = 1000,
    ) -> None:
        self.embedder = embedder
        self.vector_store = vector_store
        self.content_store = content_store
        self.vault_path = vault_path
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.preview_chars = preview_chars

    async def sync(self, paths: Iterable[str] | None = None) -> IndexStats:
        """Load notes from the vault and index them.

        With no ``paths`` the whole vault is enumerated.
        """
        if self.vault_path is None:
            return _aborted(IndexStats(), "No vault configured")
        vault = Path(self.vault_path)

        try:
            relative_paths = sorted(paths if paths is not None else list_note_paths(vault))
        except OSError as exc:
            LOGGER.error("Cannot enumerate notes in %s: %s", vault, exc)
            return _aborted(IndexStats(), f"Cannot enumerate notes: {exc}")

        stats = IndexStats()
        documents: List[Document] = []
        for relative_path in relative_paths:
            # InvalidPath and UnicodeDecodeError are both ValueErrors.
            try:
                documents.append(load_document(vault, relative_path).value)
            except (OSError, ValueError) as exc:
                LOGGER.warning("Failed to load %s: %s", relative_path, exc)
                stats.increment("failed", relative_path)

        LOGGER.info("Loaded %d notes from %s", len(documents), vault)
        return await self._run(documents, stats)

    async def index_documents(self, documents: Sequence[Document]) -> IndexStats:
        """Index already-loaded notes."""
        return await self._run(list(documents), IndexStats())

    async def _run(self, documents: List[Document], stats: IndexStats) -> IndexStats:
        sanitized: List[Document] = []
        total_batches = (len(documents) + self.batch_size - 1) // self.batch_size

        for number, start in enumerate(range(0, len(documents), self.batch_size), start=1):
            batch = documents[start : start + self.batch_size]
            if number > 1 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)
            LOGGER.info("Processing batch %d/%d", number, total_batches)

            accepted = self._accept(batch, stats)
            if not accepted:
                continue
            sanitized.extend(accepted)
            try:
                await self._index_batch(accepted)
            except EmbeddingDimensionMismatch as exc:
                LOGGER.error("Aborting run, embedding shape is wrong: %s", exc)
                for document in accepted:
                    stats.increment("failed", document.path)
                remaining = len(documents) - start - len(batch)
                await self._store_contents(sanitized, stats)
                return _aborted(stats, f"{exc} ({remaining} notes not processed)")
            except (EmbeddingFailure, StoreIOFailure) as exc:
                LOGGER.error("Batch %d failed: %s", number, exc)
                for document in accepted:
                    stats.increment("failed", document.path)
                continue

            for document in accepted:
                stats.increment("indexed", document.path)

        await self._store_contents(sanitized, stats)
        stats.message = stats.summary()
        return stats

    def _accept(self, batch: Sequence[Document], stats: IndexStats) -> List[Document]:
        """Sanitize paths, dropping (and counting) the documents that fail."""
        accepted: List[Document] = []
        for document in batch:
            try:
                accepted.append(replace(document, path=sanitize_path(document.path)))
            except InvalidPath as exc:
                LOGGER.warning("Skipping note: %s", exc)
                stats.increment("failed", str(document.path))
        return accepted

    async def _index_batch(self, batch: Sequence[Document]) -> None:
        texts = [document.embedding_text() for document in batch]
        vectors = await self.embedder.embed_batch(texts)
        validate_batch(texts, vectors, self.embedder.dimension)
        entries = [self.build_entry(doc, vector) for doc, vector in zip(batch, vectors)]
        await self.vector_store.upsert(entries)

    def build_entry(self, document: Document, vector: Sequence[float]) -> IndexEntry:
        metadata = extension_metadata(document.frontmatter)
        metadata.update(
            {
                "path": document.path,
                "title": document.title,
                "content": truncate(document.body, self.preview_chars),
                "tags": list(document.tags),
                "createdAt": document.created_at or "",
                "modifiedAt": document.modified_at or "",
            }
        )
        return IndexEntry(
            id=hash_path(document.path),
            vector=[float(value) for value in vector],
            metadata=metadata,
        )

    async def _store_contents(self, documents: Sequence[Document], stats: IndexStats) -> None:
        """Write full notes whose checksum differs from the stored one."""
        for document in documents:
            key = content_key(document.path)
            serialized = document.serialize()
            checksum = compute_checksum(serialized)
            try:
                existing = await self.content_store.head(key)
                if existing is not None and existing.checksum == checksum:
                    stats.skipped += 1
                    continue
                await self.content_store.put(key, serialized, checksum=checksum)
                stats.updated += 1
            except StoreIOFailure as exc:
                LOGGER.error("Failed to store content for %s: %s", document.path, exc)
                stats.content_failed += 1


def _aborted(stats: IndexStats, message: str) -> IndexStats:
    stats.success = False
    stats.message = message
    return stats

