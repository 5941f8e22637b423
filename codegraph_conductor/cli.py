"""Typer-based CLI for the CodeGraph conductor."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .conductor import Conductor
from .config import ensure_base_dirs, load_settings
from .errors import ConductorError
from .operations import OPERATIONS

app = typer.Typer(
    help="CodeGraph Conductor: code graph indexing and hybrid search.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"CodeGraph Conductor v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.toml."),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Override the store directory."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
):
    """Index source trees into a code graph and query them."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_path": config_path, "data_dir": data_dir}


def _run(ctx: typer.Context, fn: Callable[[Conductor], Awaitable[Any]]) -> Any:
    """Build a conductor from the CLI options, run *fn*, and close it."""
    options = ctx.obj or {}
    settings = load_settings(options.get("config_path"))
    if options.get("data_dir"):
        settings.data_dir = options["data_dir"].expanduser()
    else:
        ensure_base_dirs()

    async def _go() -> Any:
        conductor = Conductor(settings)
        try:
            result = await fn(conductor)
            await conductor.drain()
            return result
        finally:
            await conductor.aclose()

    try:
        return asyncio.run(_go())
    except ConductorError as exc:
        typer.echo(f"❌ {exc.code}: {exc.message}", err=True)
        if exc.details:
            typer.echo(json.dumps(exc.details, indent=2, default=str), err=True)
        raise typer.Exit(code=1)


@app.command("index")
def index_project(
    ctx: typer.Context,
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Path to source project."),
    full: bool = typer.Option(False, "--full", help="Re-parse every file, ignoring stored hashes."),
    reset: bool = typer.Option(False, "--reset", help="Drop the graph before indexing."),
    exclude: List[str] = typer.Option([], "--exclude", "-x", help="Glob pattern to skip (repeatable)."),
):
    """Parse and index a project into the code graph."""
    args = {
        "directory": str(project_path.resolve()),
        "fullScan": full,
        "reset": reset,
        "excludePatterns": exclude,
    }
    summary = _run(ctx, lambda c: c.submit("index", args))

    typer.echo(f"Indexed '{summary['directory']}'.")
    typer.echo(
        f"Processed: {summary['processed']} | Skipped: {summary['skipped']} | "
        f"Failed: {summary['failed']} | Deleted: {summary['deletedFiles']}"
    )
    typer.echo(
        f"Entities +{summary['entitiesInserted']} ~{summary['entitiesUpdated']} "
        f"-{summary['entitiesDeleted']} | Relationships written: {summary['relationshipsWritten']}"
    )
    for failure in summary["failures"]:
        typer.echo(f"  ⚠ {failure['item']}: {failure['code']} {failure['message']}", err=True)


@app.command("search")
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Search text."),
    top_k: int = typer.Option(10, "--top-k", "-k", min=1, max=200, help="Maximum number of matches."),
    rerank: bool = typer.Option(True, "--rerank/--no-rerank", help="Re-rank the fused prefix."),
):
    """Run hybrid (structural + semantic) search."""
    response = _run(ctx, lambda c: c.submit("hybrid_search", {"query": query, "limit": top_k, "rerank": rerank}))

    if not response["results"]:
        typer.echo("No matches found.")
        raise typer.Exit(code=0)

    table = Table(show_header=True, show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Kind")
    table.add_column("Symbol")
    table.add_column("Location")
    table.add_column("Score", justify="right")
    for i, hit in enumerate(response["results"], start=1):
        entity = hit.get("entity") or {}
        table.add_row(
            str(i),
            entity.get("kind", "?"),
            entity.get("qualname", hit["entityId"]),
            f"{entity.get('file_path', '?')}:{(entity.get('span') or {}).get('start_line', '?')}",
            f"{hit['score']:.4f}",
        )
    console.print(table)
    if response["degraded"]:
        console.print(f"[yellow]Degraded: {', '.join(response['degradedReasons'])}[/yellow]")


@app.command("query")
def query(
    ctx: typer.Context,
    text: str = typer.Argument(..., help="Natural-language question, e.g. 'who calls parse_file'."),
    limit: int = typer.Option(10, min=1, max=200, help="Maximum number of results."),
):
    """Answer a natural-language question from the graph."""
    payload = _run(ctx, lambda c: c.submit("query", {"query": text, "limit": limit}))
    plan = payload["plan"]
    typer.echo(f"Intent: {plan['intent']}" + (f" ({plan['target']})" if plan.get("target") else ""))
    if payload.get("message"):
        typer.echo(payload["message"])
    for item in payload["results"]:
        entity = item.get("entity", item)
        name = entity.get("qualname", item.get("entityId", "?"))
        path = entity.get("filePath") or entity.get("file_path", "")
        typer.echo(f"- {name}  {path}")


@app.command("impact")
def impact(
    ctx: typer.Context,
    symbol: str = typer.Argument(..., help="Entity id or symbol name."),
    depth: int = typer.Option(2, min=1, max=10, help="Dependency traversal depth."),
    show_graph: bool = typer.Option(True, "--show-graph/--no-graph", help="Include ASCII graph output."),
):
    """Show what depends on a symbol."""
    report = _run(ctx, lambda c: c.submit("analyze_code_impact", {"entityId": symbol, "depth": depth}))
    typer.echo(f"Root: {report['roots'][0]['qualname']}  (risk: {report['riskLevel']})")
    if report["impacted"]:
        typer.echo("Impacted symbols:")
        for item in report["impacted"]:
            typer.echo(f"- {item['qualname']}  [{item['filePath']}] depth={item['depth']}")
    else:
        typer.echo("Impacted symbols: none found")
    if show_graph and report.get("graph"):
        typer.echo("\nASCII graph:")
        typer.echo(report["graph"])


@app.command("run")
def run_operation(
    ctx: typer.Context,
    operation: str = typer.Argument(..., help="Operation name (see 'operations')."),
    args: str = typer.Argument("{}", help="JSON object of arguments."),
):
    """Run any operation and print its JSON result."""
    try:
        parsed: Dict[str, Any] = json.loads(args)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"Arguments must be JSON: {exc}")
    envelope = _run(ctx, lambda c: c.execute(operation, parsed))
    typer.echo(envelope["content"][0]["text"])


@app.command("operations")
def list_operations():
    """List available operations."""
    table = Table(show_header=True, show_lines=False)
    table.add_column("Operation")
    table.add_column("Worker")
    table.add_column("Description")
    for spec in OPERATIONS.values():
        table.add_row(spec.name, spec.worker, spec.description)
    console.print(table)


@app.command("stats")
def stats(ctx: typer.Context):
    """Print graph counts."""
    payload = _run(ctx, lambda c: c.submit("get_graph_stats", {}))
    typer.echo(f"Files: {payload['files']} (failed: {payload['failedFiles']})")
    typer.echo(f"Entities: {payload['entities']} | Relationships: {payload['relationships']} "
               f"| Pending: {payload['pendingRelationships']}")
    for kind, count in payload["entitiesByKind"].items():
        typer.echo(f"  {kind}: {count}")


if __name__ == "__main__":
    app()
