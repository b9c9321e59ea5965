"""Command line interface for memdex."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from memdex.config import AppConfig, ConfigurationError, MemoryConfig
from memdex.manager import MemoryManager
from memdex.workspace import MemoryWorkspace, WorkspaceError


console = Console()
app = typer.Typer(help="memdex - hybrid search over markdown memory notes")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _open_manager(
    workspace: Path,
    data_dir: Optional[Path],
    user: str,
    provider: str,
    model: Optional[str] = None,
) -> MemoryManager:
    try:
        app_config = AppConfig(
            workspace_dir=workspace,
            data_dir=data_dir if data_dir is not None else workspace / ".memdex",
            user_id=user,
        )
        memory_config = MemoryConfig(provider=provider, model=model)
        return MemoryManager(app_config, memory_config)
    except ConfigurationError as exc:
        raise typer.BadParameter(str(exc)) from exc


WorkspaceOption = typer.Option(
    Path("."), "--workspace", "-w", help="Workspace holding MEMORY.md and memory/", resolve_path=True
)
DataDirOption = typer.Option(None, "--data-dir", help="Directory for the index database")
UserOption = typer.Option("default", "--user", help="Owner id used to namespace the index")
ProviderOption = typer.Option("local", "--provider", help="Embedding provider: local, openai or none")


@app.command()
def sync(
    workspace: Path = WorkspaceOption,
    data_dir: Optional[Path] = DataDirOption,
    user: str = UserOption,
    provider: str = ProviderOption,
    model: Optional[str] = typer.Option(None, help="Embedding model name"),
    force: bool = typer.Option(False, "--force", help="Re-check every file even if nothing changed"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index new and changed memory files, drop deleted ones."""
    _setup_logging(verbose)
    with _open_manager(workspace, data_dir, user, provider, model) as manager:
        stats = manager.sync(force=force)
        if stats is None:
            console.print("[yellow]Index already up to date.[/yellow]")
            return
        console.print(
            f"Inserted: {stats.inserted}, updated: {stats.updated}, skipped: {stats.skipped}, "
            f"deleted: {stats.deleted}, failed: {stats.failed}"
        )
        if stats.degraded:
            console.print(
                f"[yellow]{stats.degraded} file(s) indexed without embeddings "
                "(keyword search only).[/yellow]"
            )


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    workspace: Path = WorkspaceOption,
    data_dir: Optional[Path] = DataDirOption,
    user: str = UserOption,
    provider: str = ProviderOption,
    model: Optional[str] = typer.Option(None, help="Embedding model name"),
    max_results: int = typer.Option(MemoryConfig().max_results, "--max-results", "-n", help="Number of results"),
    min_score: float = typer.Option(MemoryConfig().min_score, "--min-score", help="Minimum combined score"),
    source: Optional[str] = typer.Option(None, help="Only return chunks with this source tag"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Run a hybrid keyword + semantic search."""
    _setup_logging(verbose)
    with _open_manager(workspace, data_dir, user, provider, model) as manager:
        try:
            results = manager.search(
                query, max_results=max_results, min_score=min_score, source=source
            )
        except ConfigurationError as exc:
            raise typer.BadParameter(str(exc)) from exc

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("File")
    table.add_column("Lines")
    table.add_column("Snippet")

    for result in results:
        snippet = result.snippet.replace("\n", " ")
        table.add_row(
            f"{result.score:.3f}",
            result.path,
            f"{result.start_line}-{result.end_line}",
            snippet[:180],
        )

    console.print(table)


@app.command()
def get(
    path: str = typer.Argument(..., help="Memory file, relative to the workspace"),
    workspace: Path = WorkspaceOption,
    from_line: Optional[int] = typer.Option(None, "--from", help="First line (1-based)"),
    lines: Optional[int] = typer.Option(None, "--lines", help="Number of lines"),
) -> None:
    """Print a memory file or a range of its lines."""
    try:
        text = MemoryWorkspace(workspace).read(path, from_line=from_line, lines=lines)
    except WorkspaceError as exc:
        raise typer.BadParameter(str(exc)) from exc
    console.print(text, markup=False, highlight=False)


@app.command()
def store(
    path: str = typer.Argument(..., help="Memory file, relative to the workspace"),
    content: Optional[str] = typer.Argument(None, help="Markdown content"),
    file: Optional[Path] = typer.Option(None, "--file", help="Read content from this file"),
    workspace: Path = WorkspaceOption,
) -> None:
    """Create or replace a memory file."""
    if content is None and file is None:
        raise typer.BadParameter("Provide CONTENT or --file")
    body = file.read_text(encoding="utf-8") if file is not None else content or ""
    try:
        written = MemoryWorkspace(workspace).write(path, body)
    except WorkspaceError as exc:
        raise typer.BadParameter(str(exc)) from exc
    console.print(f"Saved [bold]{written}[/bold]. Run 'memdex sync' to index it.")


@app.command()
def delete(
    path: str = typer.Argument(..., help="Memory file, relative to the workspace"),
    workspace: Path = WorkspaceOption,
) -> None:
    """Delete a memory file (MEMORY.md is protected)."""
    try:
        MemoryWorkspace(workspace).delete(path)
    except WorkspaceError as exc:
        raise typer.BadParameter(str(exc)) from exc
    console.print(f"Deleted {path}.")


@app.command()
def stats(
    workspace: Path = WorkspaceOption,
    data_dir: Optional[Path] = DataDirOption,
    user: str = UserOption,
) -> None:
    """Show index statistics."""
    with _open_manager(workspace, data_dir, user, "none") as manager:
        info = manager.stats()
    table = Table(show_header=False)
    for key in ("workspace_dir", "db_path", "file_count", "chunk_count", "fts_available"):
        table.add_row(key, str(info[key]))
    console.print(table)


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    workspace: Path = WorkspaceOption,
    data_dir: Optional[Path] = DataDirOption,
    user: str = UserOption,
    provider: str = ProviderOption,
    watch: bool = typer.Option(
        True, "--watch/--no-watch", help="Re-index when memory files change on disk"
    ),
) -> None:
    """Serve the HTTP API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - optional extra
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    from memdex.web.app import app as web_app, configure

    manager = configure(
        AppConfig(
            workspace_dir=workspace,
            data_dir=data_dir if data_dir is not None else workspace / ".memdex",
            user_id=user,
        ),
        MemoryConfig(provider=provider),
    )
    if watch:
        manager.watch()
    console.print(f"Starting memdex API on http://{host}:{port} (workspace: {workspace})")
    uvicorn.run(web_app, host=host, port=port, reload=False, log_level="info")
