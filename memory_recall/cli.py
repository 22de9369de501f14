"""Command line entry point for memory-recall."""

import asyncio
from pathlib import Path

import typer

from memory_recall.config import Config, set_config
from memory_recall.hybrid import SearchResult
from memory_recall.logging import configure_logging
from memory_recall.manager import IndexReport, MemoryIndexManager, SyncReport
from memory_recall.recall import build_recall_context


app = typer.Typer(help="memory-recall - semantic memory index for Markdown workspaces")

ConfigOption = typer.Option("", "-c", "--config", help="Path to config file")
VerboseOption = typer.Option(False, "-v", "--verbose", help="Debug logging")


def _bootstrap(config_path: str, verbose: bool) -> Config:
    config = Config.load(config_path or None)
    if verbose:
        config.logging.level = "DEBUG"
    set_config(config)
    configure_logging(config)
    return config


def _build_manager(config: Config) -> MemoryIndexManager:
    return MemoryIndexManager(config.memory)


async def _index_targets(config: Config, targets: list[Path]) -> list[IndexReport]:
    manager = _build_manager(config)
    try:
        return [await manager.index_directory(target) for target in targets]
    finally:
        await manager.aclose()


async def _sync(config: Config) -> SyncReport:
    manager = _build_manager(config)
    try:
        return await manager.sync()
    finally:
        await manager.aclose()


async def _search(config: Config, query: str, top_k: int | None) -> list[SearchResult]:
    manager = _build_manager(config)
    try:
        return await manager.search(query, top_k)
    finally:
        await manager.aclose()


async def _recall(config: Config, query: str, top_k: int, max_chars: int) -> str:
    manager = _build_manager(config)
    try:
        return await build_recall_context(manager, query, top_k=top_k, max_chars=max_chars)
    finally:
        await manager.aclose()


@app.command()
def index(
    directory: str = typer.Argument("", help="Directory to index (default: configured source dirs)"),
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Index Markdown files under a directory."""
    cfg = _bootstrap(config, verbose)
    targets = [Path(directory)] if directory else cfg.memory.resolved_source_dirs()
    for report in asyncio.run(_index_targets(cfg, targets)):
        typer.echo(
            f"{report.directory}: {report.files_indexed} indexed, "
            f"{report.files_unchanged} unchanged, {report.files_skipped} skipped, "
            f"{report.sources_removed} removed"
        )


@app.command()
def sync(
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Re-index every configured source directory."""
    cfg = _bootstrap(config, verbose)
    report = asyncio.run(_sync(cfg))
    typer.echo(f"Synced {len(report.directories)} directories: {report.files_indexed} files indexed")


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    top_k: int = typer.Option(0, "-k", "--top-k", help="Maximum results (default from config)"),
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Search the memory index."""
    cfg = _bootstrap(config, verbose)
    results = asyncio.run(_search(cfg, query, top_k or None))
    if not results:
        typer.echo("No memory matches.")
        return
    for position, item in enumerate(results, start=1):
        snippet = " ".join(item.content.split())
        if len(snippet) > 160:
            snippet = snippet[:160].rstrip() + "..."
        typer.echo(f"{position}. [{item.score:.3f}] {item.source}\n   {snippet}")


@app.command()
def recall(
    query: str = typer.Argument(..., help="Conversation query"),
    top_k: int = typer.Option(3, "-k", "--top-k", help="Maximum recalled blocks"),
    max_chars: int = typer.Option(2200, "--max-chars", help="Character budget"),
    config: str = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Print the prompt recall block for a query."""
    cfg = _bootstrap(config, verbose)
    context = asyncio.run(_recall(cfg, query, top_k, max_chars))
    typer.echo(context or "No memory matches.")


@app.command()
def version() -> None:
    """Show version information."""
    from memory_recall import __version__

    typer.echo(f"memory-recall v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
