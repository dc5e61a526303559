"""Storage statistics."""

from __future__ import annotations

import logging
from typing import List

from vaultsearch.index.storage import NOTES_PREFIX, ContentStore, iter_content_pages
from vaultsearch.models import SampleFile, StoreStats

LOGGER = logging.getLogger(__name__)

SAMPLE_SIZE = 5


class StatsAggregator:
    def __init__(self, content_store: ContentStore, *, dimensions: int) -> None:
        self.content_store = content_store
        self.dimensions = dimensions

    async def stats(self) -> StoreStats:
        """Count and size every stored note.

        The vector count is reported as equal to the note count since each
        indexed note has exactly one vector.
        """
        count = 0
        total = 0
        samples: List[SampleFile] = []
        async for page in iter_content_pages(self.content_store, NOTES_PREFIX):
            for item in page.items:
                count += 1
                total += item.size
                if len(samples) < SAMPLE_SIZE:
                    samples.append(SampleFile(key=item.key, size_bytes=item.size))

        LOGGER.debug("Content store holds %d notes (%d bytes)", count, total)
        return StoreStats(
            count=count,
            total_size_bytes=total,
            sample_files=samples,
            vector_count=count,
            dimensions=self.dimensions,
        )
