"""Tests for storage statistics."""

from __future__ import annotations

import pytest

from vaultsearch.index.stats import SAMPLE_SIZE, StatsAggregator
from vaultsearch.index.storage import content_key


class TestStatsAggregator:
    @pytest.mark.asyncio
    async def test_empty(self, content_store) -> None:
        stats = await StatsAggregator(content_store, dimensions=1024).stats()

        assert stats.count == 0
        assert stats.total_size == "0.00 MB"
        assert stats.sample_files == []
        assert stats.dimensions == 1024

    @pytest.mark.asyncio
    async def test_counts_and_samples(self, content_store) -> None:
        """Counts every note and keeps only the first few as samples."""
        for index in range(8):
            await content_store.put(content_key(f"n{index}.md"), "x" * 1024, checksum="c")
        await content_store.put("other/ignored.md", "x" * 4096, checksum="c")

        stats = await StatsAggregator(content_store, dimensions=384).stats()

        assert stats.count == 8
        assert stats.total_size_bytes == 8 * 1024
        assert stats.vector_count == 8
        assert len(stats.sample_files) == SAMPLE_SIZE
        assert stats.sample_files[0].key == "notes/n0.md"
        assert stats.sample_files[0].size == "1.00 KB"
        assert stats.to_dict()["vectors"] == {"count": 8, "dimensions": 384}

    @pytest.mark.asyncio
    async def test_exact_over_many_pages(self, content_store, small_pages) -> None:
        """Totals stay exact when the listing spans several pages."""
        for index in range(10):
            key = content_key(f"n{index:02d}.md")
            await content_store.put(key, "x" * (index + 1), checksum="c")

        stats = await StatsAggregator(small_pages, dimensions=8).stats()

        assert small_pages.calls == 4
        assert stats.count == 10
        assert stats.total_size_bytes == sum(range(1, 11))
        assert [s.key for s in stats.sample_files] == [
            f"notes/n{index:02d}.md" for index in range(SAMPLE_SIZE)
        ]
