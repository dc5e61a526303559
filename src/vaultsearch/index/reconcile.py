"""Orphan detection and cleanup.

An orphan is a note present in the content store whose source file is gone
from the vault. Purging removes both the stored note and its vector. A reset
removes everything so the vault can be indexed from scratch.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Set

from vaultsearch.errors import InvalidPath, StoreIOFailure
from vaultsearch.index.storage import (
    NOTES_PREFIX,
    ContentStore,
    VectorStore,
    content_key,
    iter_content_pages,
)
from vaultsearch.models import OrphanReport, PurgeResult, ResetResult
from vaultsearch.utils.files import hash_path
from vaultsearch.utils.paths import sanitize_path

LOGGER = logging.getLogger(__name__)


class Reconciler:
    """Compare the vault against what has been indexed."""

    def __init__(self, vector_store: VectorStore, content_store: ContentStore) -> None:
        self.vector_store = vector_store
        self.content_store = content_store

    async def list_indexed(self) -> List[str]:
        """Every note path stored under ``notes/``, across all pages."""
        paths: List[str] = []
        async for page in iter_content_pages(self.content_store, NOTES_PREFIX):
            paths.extend(item.key[len(NOTES_PREFIX) :] for item in page.items)
        return paths

    async def find_orphans(self, source_paths: Iterable[str]) -> OrphanReport:
        """Indexed paths with no matching file in ``source_paths``."""
        sources: Set[str] = set()
        for path in source_paths:
            try:
                sources.add(sanitize_path(path))
            except InvalidPath:
                LOGGER.debug("Ignoring invalid source path %r", path)

        indexed = await self.list_indexed()
        orphans = sorted(set(indexed) - sources)
        LOGGER.info(
            "Found %d orphaned notes (%d in vault, %d indexed)",
            len(orphans),
            len(sources),
            len(indexed),
        )
        return OrphanReport(source_count=len(sources), indexed_count=len(indexed), orphans=orphans)

    async def purge(self, paths: Iterable[str]) -> PurgeResult:
        """Delete the stored note and vector for each path.

        Invalid paths are skipped and store errors are recorded per path;
        neither stops the rest of the purge.
        """
        result = PurgeResult()
        for raw_path in paths:
            try:
                path = sanitize_path(raw_path)
            except InvalidPath as exc:
                LOGGER.warning("Skipping purge of invalid path: %s", exc)
                result.skipped.append(str(raw_path))
                continue

            try:
                await self.content_store.delete(content_key(path))
                await self.vector_store.delete_by_ids([hash_path(path)])
            except StoreIOFailure as exc:
                LOGGER.error("Failed to delete %s: %s", path, exc)
                result.failed.append(path)
                continue
            LOGGER.info("Deleted orphaned note %s", path)
            result.deleted_count += 1
        return result

    async def reset(self) -> ResetResult:
        """Remove every indexed note and vector.

        The vector index also forgets its dimension, so the next run may use
        a different embedding model.
        """
        keys: List[str] = []
        async for page in iter_content_pages(self.content_store, NOTES_PREFIX):
            keys.extend(item.key for item in page.items)
        for key in keys:
            await self.content_store.delete(key)
        vectors_deleted = await self.vector_store.clear()
        LOGGER.info("Reset index: %d vectors, %d notes removed", vectors_deleted, len(keys))
        return ResetResult(vectors_deleted=vectors_deleted, notes_deleted=len(keys))
