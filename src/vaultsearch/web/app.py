"""FastAPI application exposing the VaultSearch operations over HTTP."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from vaultsearch.config import AppConfig
from vaultsearch.embedding.encoder import Embedder, EmbeddingConfig, EmbeddingModel
from vaultsearch.errors import ConfigurationMissing, EmbeddingDimensionMismatch
from vaultsearch.index.indexer import Indexer
from vaultsearch.index.reconcile import Reconciler
from vaultsearch.index.search import Searcher
from vaultsearch.index.stats import StatsAggregator
from vaultsearch.index.storage import SQLiteContentStore, SQLiteVectorStore
from vaultsearch.ingestion.markdown_loader import parse_document
from vaultsearch.models import Document, SearchOutcome, SessionState
from vaultsearch.utils.files import list_note_paths

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="VaultSearch", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class NotePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str
    content: str
    title: str | None = None
    tags: List[str] | None = None
    created_at: str | None = Field(default=None, alias="createdAt")
    modified_at: str | None = Field(default=None, alias="modifiedAt")


class IndexPayload(BaseModel):
    notes: List[NotePayload]
    db: Path | None = None


class SessionPayload(BaseModel):
    last_search_query: str | None = None
    search_count: int = 0


class SearchPayload(BaseModel):
    query: str
    db: Path | None = None
    limit: Any = 10
    min_score: Any = None
    tags: List[str] | None = None
    sort_by: str = "relevance"
    include_content: bool = False
    use_qdf: bool | None = None
    state: SessionPayload | None = None


class ConnectionsPayload(BaseModel):
    reference: str
    db: Path | None = None
    limit: Any = 10
    min_score: Any = 0.6


class CleanupPayload(BaseModel):
    vault: Path | None = None
    db: Path | None = None
    dry_run: bool = False


class ResetPayload(BaseModel):
    db: Path | None = None
    confirm: bool = False


@dataclass(slots=True)
class Services:
    """Stores (and optionally an embedder) opened for a single request."""

    config: AppConfig
    vector_store: SQLiteVectorStore
    content_store: SQLiteContentStore
    embedder: Optional[Embedder] = None

    def close(self) -> None:
        self.vector_store.close()
        self.content_store.close()


def _load_config() -> AppConfig:
    try:
        return AppConfig.from_env()
    except ConfigurationMissing as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _resolve_db_path(db: Path | None) -> Path:
    config = _load_config()
    if db is not None:
        config.db_path = db
    return config.resolve_db_path(Path.cwd())


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _existing_db(db: Path | None) -> Path:
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        raise HTTPException(
            status_code=404,
            detail=f"Database not found at {resolved_db}. Index the vault first.",
        )
    return resolved_db


@lru_cache(maxsize=2)
def _get_embedder(model_name: str, dimensions: int | None) -> EmbeddingModel:
    return EmbeddingModel(EmbeddingConfig(model_name=model_name, dimensions=dimensions))


def _open_services(db_path: Path, *, with_embedder: bool = True) -> Services:
    config = _load_config()
    embedder = _get_embedder(config.model_name, config.dimensions) if with_embedder else None
    dimension = embedder.dimension if embedder is not None else None
    try:
        vector_store = SQLiteVectorStore(db_path, dimension=dimension)
    except EmbeddingDimensionMismatch as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Services(
        config=config,
        vector_store=vector_store,
        content_store=SQLiteContentStore(db_path),
        embedder=embedder,
    )


def _note_to_document(note: NotePayload) -> Document:
    parsed = parse_document(note.content, note.path).value
    return Document(
        path=note.path,
        title=note.title or parsed.title,
        body=parsed.body,
        tags=note.tags if note.tags is not None else parsed.tags,
        frontmatter=parsed.frontmatter,
        created_at=note.created_at,
        modified_at=note.modified_at,
    )


def _outcome_response(outcome: SearchOutcome) -> Dict[str, Any]:
    return {
        "success": outcome.success,
        "message": outcome.message,
        "results": [result.to_dict() for result in outcome.results],
        "freshness": outcome.freshness,
        "state": asdict(outcome.state),
    }


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.post("/api/index")
async def index_notes(payload: IndexPayload) -> dict[str, Any]:
    if not payload.notes:
        raise HTTPException(status_code=400, detail="No notes provided")

    resolved_db = _resolve_db_path(payload.db)
    _ensure_db_parent(resolved_db)
    documents = [_note_to_document(note) for note in payload.notes]

    services = _open_services(resolved_db)
    indexer = Indexer(
        services.embedder,
        services.vector_store,
        services.content_store,
        batch_size=services.config.batch_size,
        batch_delay=services.config.batch_delay,
        preview_chars=services.config.preview_chars,
    )
    try:
        stats = await indexer.index_documents(documents)
    finally:
        services.close()

    return {
        "success": stats.success,
        "message": stats.message,
        "db": str(resolved_db),
        "stats": {
            "indexed": stats.indexed,
            "updated": stats.updated,
            "skipped": stats.skipped,
            "failed": stats.failed,
            "content_failed": stats.content_failed,
            "success_rate": stats.success_rate,
            "processed_files": stats.processed_files,
        },
    }


@app.post("/api/search")
async def search_notes(payload: SearchPayload) -> dict[str, Any]:
    if not payload.query.strip():
        raise HTTPException(status_code=400, detail="Empty query")

    resolved_db = _existing_db(payload.db)
    services = _open_services(resolved_db)
    use_qdf = services.config.use_qdf if payload.use_qdf is None else payload.use_qdf
    searcher = Searcher(
        services.embedder, services.vector_store, services.content_store, use_qdf=use_qdf
    )
    state = SessionState(**payload.state.model_dump()) if payload.state else None
    min_score = payload.min_score
    if min_score is None:
        min_score = services.config.default_min_score
    try:
        outcome = await searcher.search(
            payload.query,
            limit=payload.limit,
            min_score=min_score,
            tags=payload.tags,
            sort_by=payload.sort_by,
            include_content=payload.include_content,
            state=state,
        )
    finally:
        services.close()
    return _outcome_response(outcome)


@app.post("/api/connections")
async def note_connections(payload: ConnectionsPayload) -> dict[str, Any]:
    if not payload.reference.strip():
        raise HTTPException(status_code=400, detail="Empty reference")

    resolved_db = _existing_db(payload.db)
    services = _open_services(resolved_db)
    searcher = Searcher(services.embedder, services.vector_store, services.content_store)
    try:
        outcome = await searcher.connections(
            payload.reference, limit=payload.limit, min_score=payload.min_score
        )
    finally:
        services.close()
    return _outcome_response(outcome)


@app.get("/api/notes/{note_path:path}")
async def get_note(note_path: str, db: Path | None = None) -> dict[str, Any]:
    resolved_db = _existing_db(db)
    services = _open_services(resolved_db, with_embedder=False)
    searcher = Searcher(None, services.vector_store, services.content_store)
    try:
        view = await searcher.get_note(note_path)
    finally:
        services.close()

    if view is None:
        raise HTTPException(status_code=404, detail=f"Note not found: {note_path}")
    return {
        "path": view.path,
        "title": view.title,
        "tags": view.tags,
        "content": view.content,
        "createdAt": view.created_at,
        "modifiedAt": view.modified_at,
    }


@app.get("/api/notes")
async def list_notes(
    db: Path | None = None,
    limit: int = 20,
    tag: List[str] | None = Query(default=None),
    folder: str | None = None,
    sort_by: str = "title",
    date_from: str | None = None,
    date_to: str | None = None,
) -> dict[str, Any]:
    resolved_db = _existing_db(db)
    services = _open_services(resolved_db, with_embedder=False)
    searcher = Searcher(None, services.vector_store, services.content_store)
    try:
        notes = await searcher.list_notes(
            limit=limit,
            tags=tag,
            path_prefix=folder,
            sort_by=sort_by,
            date_from=date_from,
            date_to=date_to,
        )
    finally:
        services.close()
    return {"notes": [asdict(note) for note in notes], "count": len(notes)}


@app.get("/api/list-indexed")
async def list_indexed(db: Path | None = None) -> dict[str, Any]:
    resolved_db = _resolve_db_path(db)
    if not resolved_db.exists():
        return {"paths": [], "count": 0}

    services = _open_services(resolved_db, with_embedder=False)
    try:
        paths = await Reconciler(services.vector_store, services.content_store).list_indexed()
    finally:
        services.close()
    return {"paths": paths, "count": len(paths)}


@app.post("/api/cleanup")
async def cleanup_orphans(payload: CleanupPayload) -> dict[str, Any]:
    resolved_db = _existing_db(payload.db)
    config = _load_config()
    if payload.vault is not None:
        config.vault_path = payload.vault
    try:
        vault = config.require_vault()
    except ConfigurationMissing as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    services = _open_services(resolved_db, with_embedder=False)
    reconciler = Reconciler(services.vector_store, services.content_store)
    try:
        report = await reconciler.find_orphans(list_note_paths(vault))
        if payload.dry_run or not report.orphans:
            return {
                "status": "ok",
                "orphans": report.orphans,
                "deleted_count": 0,
                "source_count": report.source_count,
                "indexed_count": report.indexed_count,
            }
        result = await reconciler.purge(report.orphans)
    finally:
        services.close()

    return {
        "status": "ok" if result.success else "partial",
        "message": result.message,
        "orphans": report.orphans,
        "deleted_count": result.deleted_count,
        "skipped": result.skipped,
        "failed": result.failed,
        "source_count": report.source_count,
        "indexed_count": report.indexed_count,
    }


@app.post("/api/reset")
async def reset_index(payload: ResetPayload) -> dict[str, Any]:
    if not payload.confirm:
        raise HTTPException(
            status_code=400, detail="Reset deletes every indexed note; send confirm=true"
        )

    resolved_db = _existing_db(payload.db)
    services = _open_services(resolved_db, with_embedder=False)
    try:
        result = await Reconciler(services.vector_store, services.content_store).reset()
    finally:
        services.close()
    return {
        "status": "ok",
        "message": result.message,
        "vectors_deleted": result.vectors_deleted,
        "notes_deleted": result.notes_deleted,
    }


@app.get("/api/stats")
async def store_stats(db: Path | None = None) -> dict[str, Any]:
    resolved_db = _existing_db(db)
    services = _open_services(resolved_db, with_embedder=False)
    try:
        dimensions = services.vector_store.dimension or services.config.dimensions
        stats = await StatsAggregator(services.content_store, dimensions=dimensions).stats()
    finally:
        services.close()
    return stats.to_dict()
