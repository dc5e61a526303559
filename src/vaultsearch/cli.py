"""Command line interface for VaultSearch."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from vaultsearch.config import AppConfig
from vaultsearch.embedding.encoder import (
    EmbeddingConfig,
    EmbeddingModel,
    get_embedding_dimensions,
)
from vaultsearch.errors import ConfigurationMissing, EmbeddingDimensionMismatch
from vaultsearch.index.indexer import Indexer
from vaultsearch.index.reconcile import Reconciler
from vaultsearch.index.search import Searcher
from vaultsearch.index.stats import StatsAggregator
from vaultsearch.index.storage import SQLiteContentStore, SQLiteVectorStore
from vaultsearch.models import SearchOutcome
from vaultsearch.utils.files import list_note_paths
from vaultsearch.utils.text import one_line
from vaultsearch.web.app import app as web_app


console = Console()
app = typer.Typer(help="VaultSearch - semantic search for Markdown note vaults")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _load_config(
    db: Path | None = None, vault: Path | None = None, model: str | None = None
) -> AppConfig:
    try:
        config = AppConfig.from_env()
    except ConfigurationMissing as exc:
        raise typer.BadParameter(str(exc)) from exc
    if db is not None:
        config.db_path = db
    if vault is not None:
        config.vault_path = vault
    if model:
        config.model_name = model
        config.dimensions = get_embedding_dimensions(model)
    return config


def _existing_db(config: AppConfig) -> Path:
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        raise typer.BadParameter(f"Database not found: {resolved_db}")
    return resolved_db


def _require_vault(config: AppConfig) -> Path:
    try:
        return config.require_vault()
    except ConfigurationMissing as exc:
        raise typer.BadParameter(str(exc)) from exc


def _build_embedder(config: AppConfig) -> EmbeddingModel:
    return EmbeddingModel(
        EmbeddingConfig(model_name=config.model_name, dimensions=config.dimensions)
    )


def _open_stores(
    db_path: Path, dimension: int | None = None
) -> Tuple[SQLiteVectorStore, SQLiteContentStore]:
    """Open both stores; ``dimension=None`` adopts the size recorded in the index."""
    try:
        vector_store = SQLiteVectorStore(db_path, dimension=dimension)
    except EmbeddingDimensionMismatch as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        console.print("Run [bold]vaultsearch reset[/bold] before indexing with a different model.")
        raise typer.Exit(code=1) from exc
    return vector_store, SQLiteContentStore(db_path)


def _print_results(outcome: SearchOutcome, as_json: bool) -> None:
    if as_json:
        payload = {
            "success": outcome.success,
            "message": outcome.message,
            "results": [result.to_dict() for result in outcome.results],
        }
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    if not outcome.success:
        console.print(f"[red]{escape(outcome.message)}[/red]")
        raise typer.Exit(code=1)
    if not outcome.results:
        console.print(f"[yellow]{escape(outcome.message)}[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Title")
    table.add_column("Path")
    table.add_column("Tags")
    table.add_column("Preview")

    for result in outcome.results:
        table.add_row(
            f"{result.score:.4f}",
            escape(result.title),
            escape(result.path),
            escape(", ".join(result.tags)),
            escape(one_line(result.preview)[:180]),
        )
    console.print(table)

    for result in outcome.results:
        if result.content is not None:
            console.rule(escape(result.title))
            console.print(result.content, markup=False)


@app.command()
def index(
    vault: Path = typer.Option(None, "--vault", help="Vault directory (or OBSIDIAN_VAULT_PATH)"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Sentence-transformer model name"),
    batch_size: int = typer.Option(10, help="Notes per embedding batch"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index every Markdown note in the vault."""
    _setup_logging(verbose)
    config = _load_config(db, vault, model)
    config.batch_size = max(1, batch_size)
    vault_path = _require_vault(config)

    resolved_db = config.resolve_db_path(Path.cwd())
    _ensure_db_parent(resolved_db)

    embedder = _build_embedder(config)
    vector_store, content_store = _open_stores(resolved_db, embedder.dimension)
    indexer = Indexer(
        embedder,
        vector_store,
        content_store,
        vault_path=vault_path,
        batch_size=config.batch_size,
        batch_delay=config.batch_delay,
        preview_chars=config.preview_chars,
    )

    console.print(f"Indexing [bold]{vault_path}[/bold] into [bold]{resolved_db}[/bold]...")
    try:
        stats = asyncio.run(indexer.sync())
    finally:
        vector_store.close()
        content_store.close()

    if stats.success and not stats.processed_files:
        console.print("[yellow]No notes found.[/yellow]")
        return

    console.print(stats.summary())
    if not stats.success:
        console.print(f"[red]{escape(stats.message)}[/red]")
        raise typer.Exit(code=1)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text, optionally with --QDF=<0-5>"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Sentence-transformer model name"),
    limit: int = typer.Option(10, help="Maximum number of results (1-50)"),
    min_score: Optional[float] = typer.Option(None, "--min-score", help="Score threshold"),
    tag: Optional[List[str]] = typer.Option(None, "--tag", help="Only notes with this tag"),
    sort_by: str = typer.Option("relevance", help="relevance, createdAt or modifiedAt"),
    content: bool = typer.Option(False, "--content", help="Include full note content"),
    qdf: bool = typer.Option(False, "--qdf", help="Honour freshness markers in the query"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Execute a semantic search."""
    _setup_logging(verbose)
    config = _load_config(db, model=model)
    resolved_db = _existing_db(config)

    embedder = _build_embedder(config)
    vector_store, content_store = _open_stores(resolved_db, embedder.dimension)
    searcher = Searcher(embedder, vector_store, content_store, use_qdf=qdf or config.use_qdf)
    try:
        outcome = asyncio.run(
            searcher.search(
                query,
                limit=limit,
                min_score=config.default_min_score if min_score is None else min_score,
                tags=tag or None,
                sort_by=sort_by,
                include_content=content,
            )
        )
    finally:
        vector_store.close()
        content_store.close()

    _print_results(outcome, as_json)


@app.command()
def connections(
    reference: str = typer.Argument(..., help="Note path, title or topic"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Sentence-transformer model name"),
    limit: int = typer.Option(10, help="Maximum number of related notes (1-20)"),
    min_score: float = typer.Option(0.6, "--min-score", help="Score threshold"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """Find notes semantically related to a note or topic."""
    config = _load_config(db, model=model)
    resolved_db = _existing_db(config)

    embedder = _build_embedder(config)
    vector_store, content_store = _open_stores(resolved_db, embedder.dimension)
    searcher = Searcher(embedder, vector_store, content_store)
    try:
        outcome = asyncio.run(searcher.connections(reference, limit=limit, min_score=min_score))
    finally:
        vector_store.close()
        content_store.close()

    _print_results(outcome, as_json)


@app.command()
def note(
    path: Optional[str] = typer.Argument(None, help="Vault-relative note path"),
    search_term: Optional[str] = typer.Option(None, "--search", help="Best match for a term"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Sentence-transformer model name"),
) -> None:
    """Print a stored note in full."""
    if not path and not search_term:
        raise typer.BadParameter("Provide a note path or --search")
    config = _load_config(db, model=model)
    resolved_db = _existing_db(config)

    embedder = _build_embedder(config)
    vector_store, content_store = _open_stores(resolved_db, embedder.dimension)
    searcher = Searcher(embedder, vector_store, content_store)
    try:
        view = asyncio.run(searcher.get_note(path, search_term=search_term))
    finally:
        vector_store.close()
        content_store.close()

    if view is None:
        console.print(f"[yellow]Note not found: {escape(path or search_term or '')}[/yellow]")
        raise typer.Exit(code=1)

    console.rule(f"[bold]{escape(view.title)}[/bold]")
    console.print(f"Path: {escape(view.path)}")
    if view.tags:
        console.print(f"Tags: {escape(', '.join(view.tags))}")
    if view.modified_at:
        console.print(f"Modified: {view.modified_at}")
    console.print()
    console.print(view.content, markup=False)


@app.command("list")
def list_notes(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    limit: int = typer.Option(20, help="Maximum number of notes (1-100)"),
    tag: Optional[List[str]] = typer.Option(None, "--tag", help="Only notes with this tag"),
    folder: Optional[str] = typer.Option(None, "--folder", help="Only notes under this folder"),
    sort_by: str = typer.Option("title", help="title, createdAt or modifiedAt"),
    date_from: Optional[str] = typer.Option(None, "--from", help="ISO date lower bound"),
    date_to: Optional[str] = typer.Option(None, "--to", help="ISO date upper bound"),
) -> None:
    """List stored notes."""
    config = _load_config(db)
    resolved_db = _existing_db(config)

    vector_store, content_store = _open_stores(resolved_db)
    # Listing never embeds, so no model is loaded here.
    searcher = Searcher(None, vector_store, content_store)
    try:
        notes = asyncio.run(
            searcher.list_notes(
                limit=limit,
                tags=tag or None,
                path_prefix=folder,
                sort_by=sort_by,
                date_from=date_from,
                date_to=date_to,
            )
        )
    finally:
        vector_store.close()
        content_store.close()

    if not notes:
        console.print("[yellow]No notes found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Title")
    table.add_column("Path")
    table.add_column("Tags")
    table.add_column("Modified")
    for summary in notes:
        table.add_row(
            escape(summary.title),
            escape(summary.path),
            escape(", ".join(summary.tags)),
            summary.modified_at or "",
        )
    console.print(table)


@app.command()
def cleanup(
    vault: Path = typer.Option(None, "--vault", help="Vault directory (or OBSIDIAN_VAULT_PATH)"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Delete without asking"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Remove indexed notes that no longer exist in the vault."""
    _setup_logging(verbose)
    config = _load_config(db, vault)
    vault_path = _require_vault(config)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Database not found, nothing to clean up.[/yellow]")
        return

    vector_store, content_store = _open_stores(resolved_db)
    reconciler = Reconciler(vector_store, content_store)
    try:
        report = asyncio.run(reconciler.find_orphans(list_note_paths(vault_path)))
        if not report.orphans:
            console.print(
                f"No orphaned notes found ({report.indexed_count} indexed, "
                f"{report.source_count} in vault)."
            )
            return

        console.print(f"Found {len(report.orphans)} orphaned notes:")
        for orphan in report.orphans:
            console.print(f"  - {escape(orphan)}")
        if not yes and not typer.confirm("Delete them from the index?"):
            console.print("Aborted.")
            return

        result = asyncio.run(reconciler.purge(report.orphans))
    finally:
        vector_store.close()
        content_store.close()

    console.print(result.message)
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def reset(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Reset without asking"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Delete every indexed note so the vault can be re-indexed."""
    _setup_logging(verbose)
    config = _load_config(db)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Database not found, nothing to reset.[/yellow]")
        return

    console.print(f"This deletes ALL indexed notes in [bold]{resolved_db}[/bold].")
    if not yes and not typer.confirm("Do you want to continue?"):
        console.print("Reset cancelled.")
        return

    vector_store, content_store = _open_stores(resolved_db)
    try:
        result = asyncio.run(Reconciler(vector_store, content_store).reset())
    finally:
        vector_store.close()
        content_store.close()
    console.print(result.message)


@app.command()
def stats(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    as_json: bool = typer.Option(False, "--json", help="Print statistics as JSON"),
) -> None:
    """Show storage statistics."""
    config = _load_config(db)
    resolved_db = _existing_db(config)

    vector_store, content_store = _open_stores(resolved_db)
    dimensions = vector_store.dimension or config.dimensions
    try:
        store_stats = asyncio.run(StatsAggregator(content_store, dimensions=dimensions).stats())
    finally:
        vector_store.close()
        content_store.close()

    if as_json:
        typer.echo(json.dumps(store_stats.to_dict(), indent=2))
        return

    console.print(f"Notes: {store_stats.count} ({store_stats.total_size})")
    console.print(f"Vectors: {store_stats.vector_count} x {store_stats.dimensions} dimensions")
    if store_stats.sample_files:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key")
        table.add_column("Size")
        for sample in store_stats.sample_files:
            table.add_row(escape(sample.key), sample.size)
        console.print(table)


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Start the HTTP API."""
    import uvicorn

    config = _load_config(db)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Warning: database not found, searches might fail.[/yellow]")
    # The server process reads its database location from the environment.
    os.environ["VAULTSEARCH_DB"] = str(resolved_db)

    console.print(f"Starting web interface on http://{host}:{port} (database: {resolved_db})")
    uvicorn.run(
        web_app,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
