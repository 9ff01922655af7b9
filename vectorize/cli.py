"""Command-line interface: init, refresh, search, status, config and serve."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, Optional, TypeVar

import typer

from vectorize.core.config import (
    Settings,
    VectorizationConfig,
    get_settings,
    load_vectorization_config,
    manifest_path,
    save_vectorization_config,
)
from vectorize.core.exceptions import ConfigurationError, IndexMissingError, VectorizeError
from vectorize.core.index import open_index
from vectorize.models.search import SearchFilters, SemanticSearchInput
from vectorize.services.embedding import create_embedding_provider
from vectorize.services.git import ensure_gitignored, install_git_hook
from vectorize.services.tool import format_search_results, semantic_search
from vectorize.workers.ingest import IncrementalIndexer
from vectorize.workers.refresh import collect_status, refresh_if_stale

T = TypeVar("T")

app = typer.Typer(
    help="Vectorize: hybrid semantic search over your codebase",
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


def _load_config(settings: Settings) -> VectorizationConfig:
    config = load_vectorization_config(settings.project_root) or VectorizationConfig()
    if config.storage != "local":
        raise ConfigurationError("Only local storage is supported")
    return config


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, turning engine errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except VectorizeError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc


def _format_bytes(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


@app.callback()
def main(
    ctx: typer.Context,
    project: Optional[Path] = typer.Option(
        None,
        "--project",
        "-C",
        help="Project root (defaults to the current directory).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    settings = get_settings()
    if project is not None:
        settings = settings.model_copy(update={"project_root": project.resolve()})
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"settings": settings}


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------

@app.command("init")
def init(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Estimate size and cost without indexing."),
    skip_database: bool = typer.Option(False, "--skip-database", help="Do not index the database."),
    no_contextual: bool = typer.Option(False, "--no-contextual", help="Skip contextual enrichment."),
) -> None:
    """
    Build the index from scratch.

    Writes a default vectorization section into the project manifest when it
    has none, ignores the index directory in git and installs refresh hooks.
    """
    settings = _settings(ctx)
    root = settings.project_root

    async def _init() -> None:
        config = load_vectorization_config(root)
        if config is None:
            config = VectorizationConfig()
            path = save_vectorization_config(root, config)
            typer.echo(f"Wrote default vectorization config to {path}")
        if not config.enabled:
            raise ConfigurationError(f"Vectorization is disabled in {manifest_path(root)}")
        if config.storage != "local":
            raise ConfigurationError("Only local storage is supported")

        provider = create_embedding_provider(config, settings)
        async with open_index(root, settings) as handle:
            indexer = IncrementalIndexer(
                handle,
                config,
                provider,
                settings=settings,
                skip_database=skip_database,
                contextual=not no_contextual,
            )

            if dry_run:
                estimate = await indexer.estimate()
                typer.echo(f"Files:      {estimate.files}")
                typer.echo(f"Chunks:     {estimate.chunks}")
                typer.echo(f"Tokens:     ~{estimate.tokens:,}")
                typer.echo(f"Languages:  {', '.join(estimate.languages) or '-'}")
                typer.echo(f"Embeddings: {estimate.embedding_model} ~${estimate.embedding_cost:.4f}")
                if estimate.contextual_enabled:
                    typer.echo(f"Contextual: ~${estimate.contextual_cost:.4f}")
                typer.echo(f"Total:      ~${estimate.total_cost:.4f}")
                return

            if ensure_gitignored(root, f"{settings.index_dir_name}/"):
                typer.echo(f"Added {settings.index_dir_name}/ to .gitignore")
            if config.refresh.on_git_change:
                for hook in install_git_hook(root):
                    typer.echo(f"Installed {hook.name} hook")

            result = await indexer.build()
            typer.secho(
                f"Indexed {result.files} files into {result.chunks} chunks "
                f"({result.enriched} with context) in {result.elapsed_ms / 1000:.1f}s",
                fg=typer.colors.GREEN,
            )

    _run(_init())


# ---------------------------------------------------------------------------
# refresh
# ---------------------------------------------------------------------------

@app.command("refresh")
def refresh(
    ctx: typer.Context,
    full: bool = typer.Option(False, "--full", help="Rebuild everything."),
    files: Optional[str] = typer.Option(None, "--files", help="Comma-separated changed files."),
    if_stale: bool = typer.Option(False, "--if-stale", help="Only refresh when past maxAge."),
) -> None:
    """Bring the index up to date (incremental unless --full)."""
    settings = _settings(ctx)
    root = settings.project_root

    async def _refresh() -> None:
        config = _load_config(settings)
        async with open_index(root, settings) as handle:
            metadata = handle.read_metadata()
            if metadata is None:
                raise IndexMissingError("No index found. Run 'vectorize init' first.")
            provider = create_embedding_provider(
                config,
                settings,
                indexed_model=None if full else metadata.config.embedding_model,
            )
            indexer = IncrementalIndexer(handle, config, provider, settings=settings)

            if if_stale:
                result = await refresh_if_stale(indexer, config.refresh.max_age_delta)
                if result is None:
                    typer.echo("Index is fresh.")
                    return
            else:
                changed = [f.strip() for f in files.split(",") if f.strip()] if files else None
                result = await indexer.refresh(changed_files=changed, full=full)

            typer.secho(
                f"Refreshed: {result.chunks_updated} chunks updated, "
                f"{result.chunks} total in {result.files} files",
                fg=typer.colors.GREEN,
            )

    _run(_refresh())


# ---------------------------------------------------------------------------
# search
# ---------------------------------------------------------------------------

@app.command("search")
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Natural-language query."),
    top_k: Optional[int] = typer.Option(None, "--top-k", "-k", min=1, max=100),
    content_type: Optional[str] = typer.Option(None, "--type", "-t", help="code, schema, config or docs."),
    language: Optional[list[str]] = typer.Option(None, "--language", "-l"),
    file_pattern: Optional[list[str]] = typer.Option(None, "--file", "-f", help="Glob filter."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw tool output."),
) -> None:
    """Search the index."""
    settings = _settings(ctx)
    if content_type is not None and content_type not in ("code", "schema", "config", "docs"):
        raise typer.BadParameter("must be one of code, schema, config, docs", param_hint="--type")

    filters = None
    if content_type or language or file_pattern:
        filters = SearchFilters(
            content_type=content_type,
            languages=language or None,
            file_patterns=file_pattern or None,
        )
    request = SemanticSearchInput(query=query, filters=filters, top_k=top_k)

    async def _search():
        return await semantic_search(
            request,
            settings.project_root,
            settings=settings,
            config=_load_config(settings),
        )

    output = _run(_search())
    if as_json:
        typer.echo(output.model_dump_json(indent=2))
    else:
        typer.echo(format_search_results(output))


# ---------------------------------------------------------------------------
# status / config
# ---------------------------------------------------------------------------

@app.command("status")
def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Machine-readable output."),
) -> None:
    """Show index counts, staleness and storage size."""
    settings = _settings(ctx)

    async def _status():
        config = _load_config(settings)
        async with open_index(settings.project_root, settings) as handle:
            return collect_status(handle, config.refresh.max_age_delta)

    report = _run(_status())
    if as_json:
        typer.echo(report.model_dump_json(indent=2))
        return

    typer.echo(f"Status:       {report.status} ({report.state.value})")
    typer.echo(f"Index:        {report.index_dir}")
    if report.generation is None:
        typer.echo("No index found. Run 'vectorize init'.")
        return
    typer.echo(f"Last updated: {report.last_updated:%Y-%m-%d %H:%M:%S} UTC ({report.index_age} ago)")
    typer.echo(f"Max age:      {report.max_age}")
    typer.echo(f"Git head:     {report.git_head or '-'}")
    if report.codebase:
        typer.echo(
            f"Codebase:     {report.codebase.files} files, {report.codebase.chunks} chunks "
            f"({', '.join(report.codebase.languages) or '-'})"
        )
    if report.database:
        typer.echo(f"Database:     {report.database.tables} tables, {report.database.chunks} chunks")
    if report.config:
        typer.echo(
            f"Embeddings:   {report.config.embedding_model} ({report.config.embedding_dimensions}d)"
        )
    typer.echo(f"Storage:      {_format_bytes(report.storage_bytes)}")


@app.command("config")
def config_cmd(ctx: typer.Context) -> None:
    """Print the effective vectorization configuration."""
    settings = _settings(ctx)
    try:
        config = load_vectorization_config(settings.project_root) or VectorizationConfig()
    except VectorizeError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc
    typer.echo(json.dumps(config.dump(), indent=2))


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------

@app.command("serve")
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to."),
    port: int = typer.Option(8000, "--port", "-p", help="Port to listen on."),
) -> None:
    """Serve the search tool over HTTP."""
    import uvicorn

    settings = _settings(ctx)
    os.environ["VECTORIZE_PROJECT_ROOT"] = str(settings.project_root)
    get_settings.cache_clear()
    uvicorn.run("vectorize.main:app", host=host, port=port)


if __name__ == "__main__":
    app()
