"""
CLI interface for the repository indexer.

Provides commands for:
- Incremental indexing of a working tree
- Repository statistics
- Index state and collection status
- Orphan cleanup and reset
- Configuration validation

Usage Examples:
    # Index the current directory into a local Qdrant
    repoindex index . --qdrant-url http://localhost:6333

    # Index with a run timeout and debug logging
    repoindex index ~/src/myproject --timeout 600 --debug

    # Show language and contributor statistics
    repoindex stats ~/src/myproject

Exit codes for ``index``: 0 success, 1 partial failure, 2 fatal error.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Config
from .utils import (
    ConfigError,
    RepoIndexError,
    check_state_health,
    check_vector_store_health,
    setup_logging,
)

app = typer.Typer(
    name="repoindex",
    help="Incremental repository indexer for Qdrant",
    add_completion=False,
)

console = Console()

EXIT_FATAL = 2


def _load_config(
    config_path: Optional[Path],
    root: Optional[Path] = None,
    name: Optional[str] = None,
    collection: Optional[str] = None,
    qdrant_url: Optional[str] = None,
    model: Optional[str] = None,
) -> Config:
    """Load config and apply command-line overrides."""
    load_dotenv()
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(EXIT_FATAL)

    config.repository.override(root, name, collection)

    if qdrant_url:
        config.qdrant.url = qdrant_url
        config.qdrant.location = None
        config.qdrant.path = None
    if model:
        config.embedding.model_name = model
    return config


def _setup_logging(config: Config, verbose: bool, debug: bool) -> None:
    level = "DEBUG" if debug else ("INFO" if verbose else config.logging.level)
    setup_logging(
        level=level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
        verbose=not debug,
    )


def _open_pipeline(config: Config, embed_fn=None):
    from .embedder import SentenceTransformerEmbedder
    from .pipeline import IndexingPipeline

    # The model loads on first use, so maintenance commands never load it
    embed_fn = embed_fn or SentenceTransformerEmbedder.from_config(config.embedding)
    try:
        return IndexingPipeline(config, embed_fn)
    except RepoIndexError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_FATAL)


# =============================================================================
# Index Commands
# =============================================================================

@app.command("index")
def index_repository(
    root: Optional[Path] = typer.Argument(None, help="Repository root to index (default: repository.root)"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to repoindex.yaml",
    ),
    name: Optional[str] = typer.Option(None, "--name", help="Repository name"),
    collection: Optional[str] = typer.Option(
        None,
        "--collection",
        help="Qdrant collection (default: repo_<name>)",
    ),
    qdrant_url: Optional[str] = typer.Option(None, "--qdrant-url", help="Qdrant URL"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Embedding model name"),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout", "-t",
        help="Run timeout in seconds",
    ),
    verify: bool = typer.Option(
        False,
        "--verify",
        help="Check that indexed vectors still exist before planning",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """
    Index a repository incrementally.

    Only new and modified files are embedded; vectors of removed files are
    deleted. Re-running without changes does nothing.
    """
    config = _load_config(config_path, root, name, collection, qdrant_url, model)
    _setup_logging(config, verbose, debug)

    if timeout is not None:
        config.sync.run_timeout_seconds = timeout
    if verify:
        config.sync.verify_remote = True

    from .embedder import SentenceTransformerEmbedder

    embedder = SentenceTransformerEmbedder.from_config(config.embedding)
    try:
        dimension = embedder.dimension
    except Exception as e:
        console.print(f"[red]Cannot load embedding model {config.embedding.model_name}: {e}[/red]")
        raise typer.Exit(EXIT_FATAL)
    if dimension != config.embedding.vector_size:
        console.print(
            f"[yellow]Model produces {dimension}-dimensional vectors, "
            f"overriding embedding.vector_size={config.embedding.vector_size}[/yellow]"
        )
        config.embedding.vector_size = dimension

    console.print(f"[blue]Indexing {config.repository.root} → {config.repository.collection_name}[/blue]")

    with _open_pipeline(config, embedder) as pipeline:
        result = pipeline.run()

    stats = result.stats
    color = {0: "green", 1: "yellow"}.get(result.exit_code, "red")
    console.print(Panel(
        f"[{color}]Run {result.phase.value}[/{color}]\n\n"
        f"Revision: {result.revision or 'n/a'}\n"
        f"Files scanned: {stats.files_scanned}\n"
        f"Files skipped: {stats.files_skipped}\n"
        f"Unchanged: {stats.files_unchanged}\n"
        f"Embedded: {stats.files_embedded}\n"
        f"Vectors upserted: {stats.vectors_upserted}\n"
        f"Vectors deleted: {stats.vectors_deleted}\n"
        f"Failures: {len(result.failures)}\n"
        f"Duration: {stats.duration_seconds:.2f}s"
        + (f"\n\n{result.message}" if result.message else ""),
        title=config.repository.name,
    ))

    if result.failures:
        table = Table(title="Pending Files", box=box.ROUNDED)
        table.add_column("File", style="cyan")
        table.add_column("Stage", style="yellow")
        table.add_column("Error", style="red")
        for failure in result.failures[:50]:
            table.add_row(failure.identifier, failure.stage.value, failure.error)
        console.print(table)
        if len(result.failures) > 50:
            console.print(f"[dim]... and {len(result.failures) - 50} more[/dim]")

    raise typer.Exit(result.exit_code)


@app.command("reconcile")
def reconcile(
    root: Optional[Path] = typer.Argument(None, help="Repository root"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to repoindex.yaml",
    ),
    collection: Optional[str] = typer.Option(None, "--collection", help="Qdrant collection"),
    qdrant_url: Optional[str] = typer.Option(None, "--qdrant-url", help="Qdrant URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """Delete vectors that no index entry references."""
    config = _load_config(config_path, root, collection=collection, qdrant_url=qdrant_url)
    _setup_logging(config, verbose, False)

    with _open_pipeline(config) as pipeline:
        try:
            deleted = pipeline.reconcile()
        except RepoIndexError as e:
            console.print(f"[red]Reconcile failed: {e}[/red]")
            raise typer.Exit(EXIT_FATAL)

    console.print(f"[green]Deleted {deleted} orphan vectors[/green]")


@app.command("reset")
def reset(
    root: Optional[Path] = typer.Argument(None, help="Repository root"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to repoindex.yaml",
    ),
    collection: Optional[str] = typer.Option(None, "--collection", help="Qdrant collection"),
    qdrant_url: Optional[str] = typer.Option(None, "--qdrant-url", help="Qdrant URL"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Drop the collection and clear the index state."""
    config = _load_config(config_path, root, collection=collection, qdrant_url=qdrant_url)
    _setup_logging(config, False, False)

    collection_name = config.repository.collection_name
    if not yes:
        confirm = typer.confirm(f"Drop collection {collection_name} and clear its index state?")
        if not confirm:
            console.print("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)

    with _open_pipeline(config) as pipeline:
        try:
            removed = pipeline.reset()
        except RepoIndexError as e:
            console.print(f"[red]Reset failed: {e}[/red]")
            raise typer.Exit(EXIT_FATAL)

    console.print(f"[green]Reset {collection_name}: {removed} entries removed[/green]")


# =============================================================================
# Status Commands
# =============================================================================

@app.command("status")
def show_status(
    root: Optional[Path] = typer.Argument(None, help="Repository root"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to repoindex.yaml",
    ),
    collection: Optional[str] = typer.Option(None, "--collection", help="Qdrant collection"),
    qdrant_url: Optional[str] = typer.Option(None, "--qdrant-url", help="Qdrant URL"),
):
    """Show index state, last run and collection health."""
    config = _load_config(config_path, root, collection=collection, qdrant_url=qdrant_url)
    _setup_logging(config, False, False)

    console.print(Panel(f"[blue]Repository Index Status: {config.repository.name}[/blue]"))

    with _open_pipeline(config) as pipeline:
        console.print("\n[bold]Health Checks[/bold]")

        store_health = check_vector_store_health(pipeline.store)
        status = "[green]✓[/green]" if store_health.healthy else "[red]✗[/red]"
        console.print(f"  {status} Qdrant ({config.qdrant.target}): {store_health.message}")

        state_health = check_state_health(config.state.path)
        status = "[green]✓[/green]" if state_health.healthy else "[red]✗[/red]"
        console.print(f"  {status} State ({config.state.path}): {state_health.message}")

        state_stats = pipeline.state.get_stats()
        last_run = pipeline.state.last_run()
        info = pipeline.store.collection_info() if store_health.healthy else None

    table = Table(title="Index State", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Collection", config.repository.collection_name)
    table.add_row("Indexed files", str(state_stats["entry_count"]))
    table.add_row("Runs recorded", str(state_stats["run_count"]))
    table.add_row("State size", f"{state_stats['db_size_bytes'] / 1024:.1f} KB")
    if info:
        table.add_row("Vectors", str(info["points_count"]))
        table.add_row("Collection status", info["status"])
    else:
        table.add_row("Vectors", "[yellow]collection not found[/yellow]")
    console.print(table)

    if last_run:
        console.print(
            f"\nLast run: [bold]{last_run.status}[/bold] at {last_run.finished_at:%Y-%m-%d %H:%M:%S} "
            f"(revision {last_run.revision[:8] if last_run.revision else 'n/a'}, "
            f"{last_run.files_embedded} embedded, {last_run.entries_removed} removed, "
            f"{last_run.failures} failures)"
        )
    else:
        console.print("\n[dim]No runs recorded[/dim]")


@app.command("stats")
def show_stats(
    root: Optional[Path] = typer.Argument(None, help="Repository root (default: repository.root)"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to repoindex.yaml",
    ),
    name: Optional[str] = typer.Option(None, "--name", help="Repository name"),
):
    """Show language and contributor statistics for a repository."""
    config = _load_config(config_path, root, name)
    _setup_logging(config, False, False)

    from .pipeline import summarize_repository

    try:
        summary = summarize_repository(config)
    except RepoIndexError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_FATAL)

    console.print(Panel(
        f"[blue]{summary.name}[/blue]\n\n"
        f"Predominant language: {summary.predominant_language or 'n/a'}\n"
        f"Files: {summary.num_files}\n"
        f"Code lines: {summary.code_lines}\n"
        f"Size: {summary.size_bytes / 1024:.1f} KB\n"
        f"Commits: {summary.num_commits}\n"
        f"Revision: {summary.revision or 'n/a'}"
    ))

    table = Table(title="Languages", box=box.ROUNDED)
    table.add_column("Language", style="cyan")
    table.add_column("Files", justify="right")
    table.add_column("Code", justify="right", style="green")
    table.add_column("Comments", justify="right")
    table.add_column("Blanks", justify="right")
    table.add_column("Share", justify="right", style="magenta")
    for lang in summary.languages:
        table.add_row(
            lang.name,
            str(lang.files),
            str(lang.code),
            str(lang.comments),
            str(lang.blanks),
            f"{lang.percentage:.1f}%",
        )
    console.print(table)

    if summary.contributors:
        table = Table(title="Contributors", box=box.ROUNDED)
        table.add_column("Name", style="cyan")
        table.add_column("Commits", justify="right")
        table.add_column("Share", justify="right", style="magenta")
        table.add_column("Last contribution", style="yellow")
        for contributor in summary.contributors[:20]:
            table.add_row(
                contributor.name,
                str(contributor.commits),
                f"{contributor.percentage:.1f}%",
                f"{contributor.last_contribution:%Y-%m-%d}",
            )
        console.print(table)


@app.command("validate")
def validate_config(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to repoindex.yaml",
    ),
):
    """Validate configuration file."""
    load_dotenv()
    try:
        config = Config.load(config_path)
    except ConfigError as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(EXIT_FATAL)

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  • {error}")
        raise typer.Exit(EXIT_FATAL)

    console.print("[green]✓ Configuration is valid[/green]")
    console.print(f"  Repository: {config.repository.root} ({config.repository.name})")
    console.print(f"  Collection: {config.repository.collection_name}")
    console.print(f"  Qdrant: {config.qdrant.target}")
    console.print(f"  Model: {config.embedding.model_name} (D={config.embedding.vector_size})")
    console.print(f"  State: {config.state.path}")


if __name__ == "__main__":
    app()
