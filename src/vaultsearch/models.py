"""Core VaultSearch data models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Generic, List, Optional, TypeVar

from vaultsearch.errors import ParseWarning

T = TypeVar("T")

FrontmatterValue = str | List[str]


@dataclass(slots=True)
class Document:
    """A single note with its derived metadata."""

    path: str
    title: str
    body: str
    tags: List[str] = field(default_factory=list)
    frontmatter: Optional[Dict[str, FrontmatterValue]] = None
    created_at: Optional[str] = None
    modified_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "title": self.title,
            "content": self.body,
            "tags": list(self.tags),
            "frontmatter": self.frontmatter,
            "createdAt": self.created_at,
            "modifiedAt": self.modified_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            path=str(data.get("path") or ""),
            title=str(data.get("title") or ""),
            body=str(data.get("content") or ""),
            tags=[str(tag) for tag in data.get("tags") or []],
            frontmatter=data.get("frontmatter"),
            created_at=data.get("createdAt"),
            modified_at=data.get("modifiedAt"),
        )

    def serialize(self) -> str:
        """Stable JSON form stored in the content store."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def embedding_text(self) -> str:
        return f"{self.title}\n\n{self.body}"


@dataclass(slots=True)
class ParsedNote:
    """Front-matter, body and derived fields of a raw note."""

    frontmatter: Optional[Dict[str, FrontmatterValue]]
    body: str
    title: str
    tags: List[str]


@dataclass(slots=True)
class ParseResult(Generic[T]):
    """Always-present value plus an optional diagnostic."""

    value: T
    diagnostic: Optional[ParseWarning] = None

    @property
    def ok(self) -> bool:
        return self.diagnostic is None


@dataclass(slots=True)
class IndexEntry:
    id: str
    vector: List[float]
    metadata: Dict[str, Any]


@dataclass(slots=True)
class VectorMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ContentHead:
    checksum: Optional[str]
    size: int = 0


@dataclass(slots=True)
class ContentRecord:
    key: str
    value: str
    checksum: Optional[str]
    size: int = 0

    def json(self) -> Dict[str, Any]:
        return json.loads(self.value)


@dataclass(slots=True)
class ContentItem:
    key: str
    size: int


@dataclass(slots=True)
class ContentPage:
    items: List[ContentItem]
    next_page_token: Optional[str] = None


@dataclass(slots=True)
class IndexStats:
    """Outcome of a sync run."""

    indexed: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    content_failed: int = 0
    processed_files: List[str] = field(default_factory=list)
    success: bool = True
    message: str = ""

    def increment(self, status: str, path: str) -> None:
        if status == "indexed":
            self.indexed += 1
        elif status == "updated":
            self.updated += 1
        elif status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.processed_files.append(path)

    @property
    def success_rate(self) -> float:
        """Percentage of documents indexed out of those attempted."""
        attempted = self.indexed + self.failed
        if attempted == 0:
            return 0.0
        return self.indexed / attempted * 100

    def summary(self) -> str:
        return (
            f"Indexed: {self.indexed}, updated: {self.updated}, "
            f"skipped: {self.skipped}, failed: {self.failed}, "
            f"content write failures: {self.content_failed} "
            f"(success rate {self.success_rate:.1f}%)"
        )


@dataclass(frozen=True, slots=True)
class SessionState:
    """Session bookkeeping owned by the caller, never by the engine."""

    last_search_query: Optional[str] = None
    search_count: int = 0

    def record(self, query: str) -> "SessionState":
        return replace(self, last_search_query=query, search_count=self.search_count + 1)


@dataclass(slots=True)
class ScoredResult:
    score: float
    title: str
    path: str
    tags: List[str]
    preview: str = ""
    content: Optional[str] = None
    created_at: Optional[str] = None
    modified_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "score": self.score,
            "title": self.title,
            "path": self.path,
            "tags": list(self.tags),
            "preview": self.preview,
            "createdAt": self.created_at,
            "modifiedAt": self.modified_at,
        }
        if self.content is not None:
            data["content"] = self.content
        return data


@dataclass(slots=True)
class SearchOutcome:
    success: bool
    message: str
    results: List[ScoredResult] = field(default_factory=list)
    state: SessionState = field(default_factory=SessionState)
    freshness: Optional[int] = None


@dataclass(slots=True)
class NoteSummary:
    title: str
    path: str
    tags: List[str]
    created_at: Optional[str] = None
    modified_at: Optional[str] = None


@dataclass(slots=True)
class NoteView:
    path: str
    title: str
    tags: List[str]
    content: str
    created_at: Optional[str] = None
    modified_at: Optional[str] = None


@dataclass(slots=True)
class OrphanReport:
    source_count: int
    indexed_count: int
    orphans: List[str]


@dataclass(slots=True)
class PurgeResult:
    deleted_count: int = 0
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def message(self) -> str:
        return (
            f"Deleted {self.deleted_count} orphaned notes "
            f"({len(self.skipped)} skipped, {len(self.failed)} failed)"
        )


@dataclass(slots=True)
class ResetResult:
    vectors_deleted: int = 0
    notes_deleted: int = 0

    @property
    def message(self) -> str:
        return (
            f"Removed {self.vectors_deleted} vectors and {self.notes_deleted} notes; "
            "re-index the vault to search again"
        )


@dataclass(slots=True)
class SampleFile:
    key: str
    size_bytes: int

    @property
    def size(self) -> str:
        return f"{self.size_bytes / 1024:.2f} KB"


@dataclass(slots=True)
class StoreStats:
    count: int
    total_size_bytes: int
    sample_files: List[SampleFile]
    vector_count: int
    dimensions: int

    @property
    def total_size(self) -> str:
        return f"{self.total_size_bytes / 1024 / 1024:.2f} MB"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vectors": {"count": self.vector_count, "dimensions": self.dimensions},
            "content": {
                "objectCount": self.count,
                "totalSize": self.total_size,
                "totalSizeBytes": self.total_size_bytes,
                "sampleFiles": [{"key": s.key, "size": s.size} for s in self.sample_files],
            },
        }
