"""Semantic search interface.

Scores come from the vector store; everything after that (thresholds, tag
filters, freshness boosting, ordering and content hydration) happens here.
Session bookkeeping is passed in and returned, never kept on the searcher.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional, Sequence

from vaultsearch.embedding.encoder import Embedder
from vaultsearch.errors import ConfigurationMissing, InvalidPath, StoreIOFailure
from vaultsearch.index.storage import (
    NOTES_PREFIX,
    ContentStore,
    VectorStore,
    content_key,
    iter_content_pages,
)
from vaultsearch.ingestion.markdown_loader import derive_title
from vaultsearch.models import (
    NoteSummary,
    NoteView,
    ScoredResult,
    SearchOutcome,
    SessionState,
    VectorMatch,
)
from vaultsearch.utils.paths import sanitize_path
from vaultsearch.utils.text import preview

LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 50
MAX_CONNECTIONS = 20
MAX_LIST_LIMIT = 100
DEFAULT_MIN_SCORE = 0.7
DEFAULT_CONNECTION_SCORE = 0.6
SORT_FIELDS = {"relevance": None, "createdAt": "createdAt", "modifiedAt": "modifiedAt"}
LIST_SORT_FIELDS = ("title", "createdAt", "modifiedAt")

FRESHNESS_WINDOWS = {5: 30, 4: 60, 3: 90}
_FRESHNESS_MARKER = re.compile(r"--QDF=(\d)")


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        # Arbitrarily large ints compare fine but overflow float().
        return value
    if not isinstance(value, (str, float)):
        return None
    try:
        number = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return number


def clamp_limit(value: Any, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    """Coerce any input into an integer in ``[1, maximum]``; never raises."""
    number = _to_number(value)
    if number is None:
        return default
    if number < 1:
        return 1
    if number > maximum:
        return maximum
    return int(math.floor(number))


def clamp_min_score(value: Any, default: float = DEFAULT_MIN_SCORE) -> float:
    """Coerce any input into a score threshold in ``[0, 1]``."""
    number = _to_number(value)
    if number is None:
        return default
    return float(min(max(number, 0.0), 1.0))


def parse_freshness(query: str) -> tuple[str, Optional[int]]:
    """Strip a ``--QDF=<level>`` marker from the query.

    Returns the cleaned query and the level (0-5), or None when absent.
    """
    match = _FRESHNESS_MARKER.search(query)
    if match is None:
        return query.strip(), None
    level = min(int(match.group(1)), 5)
    return _FRESHNESS_MARKER.sub("", query, count=1).strip(), level


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def apply_freshness(
    matches: Sequence[VectorMatch], level: Optional[int], *, now: datetime | None = None
) -> List[VectorMatch]:
    """Boost recently modified matches for freshness levels 3-5.

    In-window scores are multiplied by ``1 + 0.05 * (level - 2)`` and capped at
    1.0, then everything is re-sorted by score.
    """
    if level is None or level < 3:
        return list(matches)

    days = FRESHNESS_WINDOWS[level]
    boost = 1 + 0.05 * (level - 2)
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    LOGGER.debug("Applying freshness level %d to notes modified in the last %d days", level, days)

    boosted: List[VectorMatch] = []
    for match in matches:
        modified = _parse_timestamp(match.metadata.get("modifiedAt"))
        if modified is not None and modified > cutoff:
            match = VectorMatch(match.id, min(1.0, match.score * boost), match.metadata)
        boosted.append(match)
    return sorted(boosted, key=lambda m: m.score, reverse=True)


def filter_by_tags(
    matches: Iterable[VectorMatch], tags: Optional[Sequence[str]]
) -> List[VectorMatch]:
    """Keep matches sharing at least one tag with ``tags`` (OR semantics)."""
    if not tags:
        return list(matches)
    wanted = set(tags)
    return [m for m in matches if wanted.intersection(m.metadata.get("tags") or [])]


def sort_matches(matches: Sequence[VectorMatch], sort_by: str) -> List[VectorMatch]:
    """Order by relevance (as given) or by a date field, newest first."""
    field = SORT_FIELDS.get(sort_by)
    if field is None:
        return list(matches)
    return sorted(matches, key=lambda m: m.metadata.get(field) or "", reverse=True)


def to_result(match: VectorMatch) -> ScoredResult:
    metadata = match.metadata
    path = str(metadata.get("path") or "")
    return ScoredResult(
        score=match.score,
        title=metadata.get("title") or derive_title(path),
        path=path,
        tags=list(metadata.get("tags") or []),
        preview=preview(metadata.get("content")),
        created_at=metadata.get("createdAt") or None,
        modified_at=metadata.get("modifiedAt") or None,
    )


class Searcher:
    """High-level API to query the index."""

    def __init__(
        self,
        embedder: Optional[Embedder],
        vector_store: VectorStore,
        content_store: ContentStore,
        *,
        use_qdf: bool = False,
    ) -> None:
        self.embedder = embedder
        self.vector_store = vector_store
        self.content_store = content_store
        self.use_qdf = use_qdf

    async def _embed(self, text: str) -> List[float]:
        if self.embedder is None:
            raise ConfigurationMissing("No embedder configured for semantic queries")
        return await self.embedder.embed(text)

    async def search(
        self,
        query: str,
        *,
        limit: Any = DEFAULT_LIMIT,
        min_score: Any = DEFAULT_MIN_SCORE,
        tags: Optional[Sequence[str]] = None,
        sort_by: str = "relevance",
        include_content: bool = False,
        state: SessionState | None = None,
        now: datetime | None = None,
    ) -> SearchOutcome:
        state = (state or SessionState()).record(query)
        top_k = clamp_limit(limit)
        threshold = clamp_min_score(min_score)
        clean_query, freshness = parse_freshness(query)
        if not clean_query:
            return SearchOutcome(False, "Query required", state=state, freshness=freshness)

        try:
            vector = await self._embed(clean_query)
            matches = await self.vector_store.query(vector, top_k)
        except Exception as exc:
            LOGGER.error("Search failed for %r: %s", clean_query, exc)
            return SearchOutcome(False, f"Error searching notes: {exc}", state=state)

        matches = [m for m in matches if m.score >= threshold]
        matches = filter_by_tags(matches, tags)
        if self.use_qdf:
            matches = apply_freshness(matches, freshness, now=now)
        matches = sort_matches(matches, sort_by)

        results = [to_result(match) for match in matches]
        if include_content:
            await self._hydrate(results)

        if not results:
            message = f'No notes found matching "{clean_query}" with minimum score {threshold}.'
        else:
            message = f'Found {len(results)} notes matching "{clean_query}"'
        return SearchOutcome(True, message, results=results, state=state, freshness=freshness)

    async def _hydrate(self, results: Sequence[ScoredResult]) -> None:
        for result in results:
            try:
                record = await self.content_store.get(content_key(result.path))
                if record is not None:
                    result.content = record.json().get("content")
            except (StoreIOFailure, ValueError) as exc:
                LOGGER.debug("Could not load content for %s: %s", result.path, exc)

    async def connections(
        self,
        reference: str,
        *,
        limit: Any = DEFAULT_LIMIT,
        min_score: Any = DEFAULT_CONNECTION_SCORE,
    ) -> SearchOutcome:
        """Find notes related to a note path, title or topic."""
        top_k = clamp_limit(limit, maximum=MAX_CONNECTIONS)
        threshold = clamp_min_score(min_score, DEFAULT_CONNECTION_SCORE)
        try:
            vector = await self._embed(reference)
            # One extra in case the reference note itself comes back.
            matches = await self.vector_store.query(vector, top_k + 1)
        except Exception as exc:
            LOGGER.error("Connection analysis failed for %r: %s", reference, exc)
            return SearchOutcome(False, f"Error analyzing connections: {exc}")

        related = [
            m
            for m in matches
            if m.score >= threshold
            and m.metadata.get("title") != reference
            and m.metadata.get("path") != reference
        ][:top_k]

        results = [to_result(match) for match in related]
        if not results:
            return SearchOutcome(
                True, f'No related notes found for "{reference}" with minimum score {threshold}.'
            )
        return SearchOutcome(True, f'Found {len(results)} notes related to "{reference}"', results)

    async def get_note(
        self, path: str | None = None, *, search_term: str | None = None
    ) -> Optional[NoteView]:
        """Return the full stored note by path, or the best match for a search term."""
        if not path and not search_term:
            return None

        if not path:
            try:
                vector = await self._embed(search_term or "")
                matches = await self.vector_store.query(vector, 1)
            except Exception as exc:
                LOGGER.error("Lookup failed for %r: %s", search_term, exc)
                return None
            if not matches:
                return None
            path = str(matches[0].metadata.get("path") or "")

        try:
            record = await self.content_store.get(content_key(sanitize_path(path)))
        except (InvalidPath, StoreIOFailure) as exc:
            LOGGER.warning("Cannot read note %s: %s", path, exc)
            return None
        if record is None:
            return None

        data = record.json()
        stored_path = record.key[len(NOTES_PREFIX) :]
        return NoteView(
            path=stored_path,
            title=data.get("title") or derive_title(stored_path),
            tags=list(data.get("tags") or []),
            content=data.get("content") or "",
            created_at=data.get("createdAt"),
            modified_at=data.get("modifiedAt"),
        )

    async def list_notes(
        self,
        *,
        limit: Any = 20,
        tags: Optional[Sequence[str]] = None,
        path_prefix: str | None = None,
        sort_by: str = "title",
        date_from: str | None = None,
        date_to: str | None = None,
    ) -> List[NoteSummary]:
        """List stored notes with optional tag, folder and date filters."""
        max_notes = clamp_limit(limit, default=20, maximum=MAX_LIST_LIMIT)
        prefix = NOTES_PREFIX + (path_prefix or "")
        lower = _parse_timestamp(date_from)
        upper = _parse_timestamp(date_to)
        date_field = "createdAt" if sort_by == "createdAt" else "modifiedAt"

        notes: List[NoteSummary] = []
        async for page in iter_content_pages(self.content_store, prefix):
            for item in page.items:
                if len(notes) >= max_notes:
                    break
                try:
                    record = await self.content_store.get(item.key)
                    data = record.json() if record is not None else None
                except (StoreIOFailure, ValueError) as exc:
                    LOGGER.debug("Skipping unreadable note %s: %s", item.key, exc)
                    continue
                if data is None:
                    continue
                if tags and not set(tags).intersection(data.get("tags") or []):
                    continue
                moment = _parse_timestamp(data.get(date_field))
                if moment is not None:
                    if lower is not None and moment < lower:
                        continue
                    if upper is not None and moment > upper:
                        continue
                path = item.key[len(NOTES_PREFIX) :]
                notes.append(
                    NoteSummary(
                        title=data.get("title") or derive_title(path),
                        path=path,
                        tags=list(data.get("tags") or []),
                        created_at=data.get("createdAt"),
                        modified_at=data.get("modifiedAt"),
                    )
                )
            if len(notes) >= max_notes:
                break

        if sort_by == "title" or sort_by not in LIST_SORT_FIELDS:
            notes.sort(key=lambda n: n.title.lower())
        else:
            attr = "created_at" if sort_by == "createdAt" else "modified_at"
            notes.sort(key=lambda n: getattr(n, attr) or "", reverse=True)
        return notes
