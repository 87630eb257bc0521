"""CLI entry-point: submit and inspect generations, run the poll sweep, trigger catalog syncs."""

import json
import logging
import time

import typer
from rich.console import Console
from rich.table import Table

from igen.catalog.models import SyncScope
from igen.config import get_settings
from igen.errors import IgenError
from igen.generations.models import Generation, GenerationFilter, GenerationStatus
from igen.services import build_sweeper, get_orchestrator, get_reconciler, get_sync_tracker

app = typer.Typer(help="Image-generation orchestration")
console = Console()


def _setup_logging() -> None:
    logging.basicConfig(level=get_settings().igen_log_level.upper())


def _fail(e: IgenError) -> None:
    console.print(f"[red]Error ({e.kind.value}): {e.message}[/red]")
    raise typer.Exit(1)


def _parse_input(raw: str) -> dict:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]Error: --input is not valid JSON ({e})[/red]")
        raise typer.Exit(1)
    if not isinstance(value, dict):
        console.print("[red]Error: --input must be a JSON object[/red]")
        raise typer.Exit(1)
    return value


def _print_generation(gen: Generation) -> None:
    console.print_json(gen.model_dump_json())


@app.command()
def create(
    endpoint: str = typer.Argument(..., help="Model endpoint, e.g. fal-ai/flux/dev or horde/stable_diffusion"),
    input: str = typer.Option("{}", "--input", "-i", help="JSON object of model input"),
    tag: list[str] = typer.Option(default=[], help="Tag to attach (repeatable)"),
):
    """Submit a generation."""
    _setup_logging()
    try:
        gen = get_orchestrator().create_generation(endpoint, _parse_input(input), tag or None)
    except IgenError as e:
        _fail(e)
    _print_generation(gen)


@app.command()
def get(gen_id: str = typer.Argument(..., help="Generation id")):
    """Show one generation."""
    try:
        gen = get_orchestrator().get_generation(gen_id)
    except IgenError as e:
        _fail(e)
    _print_generation(gen)


@app.command("list")
def list_(
    status: GenerationStatus | None = typer.Option(None, help="pending | ready | failed"),
    endpoint: str | None = typer.Option(None, help="Exact endpoint match"),
    tag: list[str] = typer.Option(default=[], help="Require tag (repeatable)"),
    limit: int = typer.Option(20, help="Page size (1-100)"),
    cursor: str | None = typer.Option(None, help="Cursor from a previous page"),
):
    """List generations, newest first."""
    try:
        page = get_orchestrator().list_generations(
            GenerationFilter(status=status, endpoint=endpoint, tags=tag), cursor, limit
        )
    except IgenError as e:
        _fail(e)
    table = Table("id", "status", "endpoint", "tags", "created")
    for gen in page.items:
        table.add_row(gen.id, gen.status.value, gen.endpoint, ", ".join(gen.tags), gen.created_at.isoformat())
    console.print(table)
    if page.next_cursor:
        console.print(f"next cursor: {page.next_cursor}")


@app.command()
def regenerate(
    gen_id: str = typer.Argument(..., help="Generation to repeat"),
    tag: list[str] = typer.Option(default=[], help="Override tags (repeatable); default copies the original's"),
):
    """Submit a new generation with the same endpoint and input."""
    _setup_logging()
    try:
        gen = get_orchestrator().regenerate(gen_id, tag or None)
    except IgenError as e:
        _fail(e)
    _print_generation(gen)


@app.command()
def tag(
    gen_id: str = typer.Argument(..., help="Generation id"),
    add: list[str] = typer.Option(default=[], help="Tag to add (repeatable)"),
    remove: list[str] = typer.Option(default=[], help="Tag to remove (repeatable)"),
):
    """Add and remove tags."""
    try:
        tags = get_orchestrator().update_tags(gen_id, add, remove)
    except IgenError as e:
        _fail(e)
    console.print(", ".join(tags) or "(no tags)")


@app.command()
def delete(gen_id: str = typer.Argument(..., help="Generation id")):
    """Delete a generation and its artifact."""
    try:
        get_orchestrator().delete_generation(gen_id)
    except IgenError as e:
        _fail(e)
    console.print(f"[green]Deleted {gen_id}[/green]")


@app.command()
def sweep(once: bool = typer.Option(False, "--once", help="Run a single sweep and exit")):
    """Poll pending generations whose provider has not reported back."""
    _setup_logging()
    if once:
        try:
            stats = get_reconciler().sweep_once()
        except IgenError as e:
            _fail(e)
        console.print(
            f"examined={stats.examined} applied={stats.applied} pending={stats.pending} "
            f"duplicate={stats.duplicate} errors={stats.errors}"
        )
        return
    sweeper = build_sweeper()
    console.print("Sweeping (Ctrl+C to stop)...")
    try:
        sweeper.run()
    except KeyboardInterrupt:
        sweeper.stop()
        console.print("Stopped.")


@app.command("sync-start")
def sync_start(
    scope: SyncScope | None = typer.Option(None, help="standard | all (default: both)"),
    wait: bool = typer.Option(False, "--wait", help="Block until the sync finishes"),
):
    """Queue a model catalog refresh."""
    _setup_logging()
    tracker = get_sync_tracker()
    try:
        started = {scope.value: tracker.start_sync(scope)} if scope else tracker.start_all()
        for name, status in started.items():
            console.print(f"{name}: {status.state.value}")
        while wait and any(tracker.get_status(name).state.is_active for name in started):
            time.sleep(1)
    except IgenError as e:
        _fail(e)
    if wait:
        sync_status()


@app.command("sync-status")
def sync_status():
    """Show catalog sync status for each scope."""
    try:
        statuses = get_sync_tracker().get_sync_status()
    except IgenError as e:
        _fail(e)
    table = Table("scope", "state", "started", "finished", "models", "error")
    for name, status in statuses.items():
        table.add_row(
            name,
            status.state.value,
            status.started_at.isoformat() if status.started_at else "",
            status.finished_at.isoformat() if status.finished_at else "",
            "" if status.models_synced is None else str(status.models_synced),
            status.error_message or "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
