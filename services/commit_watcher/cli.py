#!/usr/bin/env python3
"""
CommitRelay CLI Tool

Starts the commit watcher daemon and inspects its state: connectivity to the
collection service, the configured projects and the durable retry queue.
"""

import asyncio
import json
import sys
from typing import Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config.settings import Settings, export_config, get_settings
from shared.models import ProjectConfig

from . import __version__
from .main import build_client, build_queue, configure_logging, run_daemon

# Initialize Rich console for beautiful output
console = Console()


def _load_settings() -> Settings:
    try:
        return get_settings()
    except Exception as e:
        console.print(f"[red]❌ Invalid configuration: {str(e)}[/red]")
        sys.exit(1)


def display_queue(retry_queue) -> None:
    """Display queued payloads in a table format."""
    items = retry_queue.get_items()

    if not items:
        console.print(Panel("Retry queue is empty.", title="📦 Retry Queue"))
        return

    table = Table(title="📦 Retry Queue", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan")
    table.add_column("Project", style="green")
    table.add_column("Commits", style="yellow", justify="right")
    table.add_column("Attempts", style="blue", justify="right")
    table.add_column("Queued", style="white")
    table.add_column("Last Error", style="red")

    for item in items:
        error = item.error or ""
        table.add_row(
            item.id,
            item.payload.project_name or item.payload.project_id or "N/A",
            str(len(item.payload.commits)),
            str(item.attempts),
            item.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            error[:47] + "..." if len(error) > 50 else error,
        )

    console.print(table)


@click.group()
@click.version_option(version=__version__, prog_name="commit-relay")
def cli():
    """CommitRelay CLI - Relay Git commits to a collection service."""
    pass


@cli.command()
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.option(
    '--project', '-p', 'extra_projects', type=(str, str), multiple=True,
    metavar='PATH NAME', help='Watch an additional repository (repeatable)'
)
def start(debug: bool, extra_projects: Tuple[Tuple[str, str], ...]):
    """Start watching configured projects."""
    settings = _load_settings()

    projects = list(settings.projects)
    projects.extend(ProjectConfig(path=path, name=name) for path, name in extra_projects)

    if not projects:
        console.print(
            "[yellow]⚠️  No projects configured. Set PROJECTS or pass --project PATH NAME.[/yellow]"
        )
        sys.exit(1)

    update = {"projects": projects}
    if debug:
        update["monitoring"] = settings.monitoring.model_copy(update={"log_level": "DEBUG"})
    settings = settings.model_copy(update=update)

    console.print(Panel(
        "\n".join(f"📁 {p.name}: {p.path}" for p in projects),
        title=Text(f"🚀 {settings.app_name} v{settings.version}", style="bold green"),
        border_style="green",
    ))

    try:
        run_daemon(settings)
    except KeyboardInterrupt:
        pass


@cli.command()
def health():
    """Check whether the collection service is reachable."""
    settings = _load_settings()

    async def run() -> bool:
        async with build_client(settings) as client:
            return await client.health_check()

    if asyncio.run(run()):
        console.print(f"[green]✅ Collection service is reachable at {settings.api.url}[/green]")
    else:
        console.print(f"[red]❌ Collection service is not responding at {settings.api.url}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print the configuration as JSON')
def status(as_json: bool):
    """Show configuration, projects and retry queue statistics."""
    settings = _load_settings()
    config = export_config(settings)
    stats = build_queue(settings).get_stats()

    if as_json:
        config["queue"]["stats"] = stats.model_dump(mode="json")
        click.echo(json.dumps(config, indent=2))
        return

    oldest = stats.oldest_item.strftime("%Y-%m-%d %H:%M:%S") if stats.oldest_item else "N/A"
    content = f"""
    🌐 API URL: {config['api']['url']}
    🔑 Authenticated: {'yes' if config['api']['authenticated'] else 'no'}
    ⏱️ Debounce: {config['watcher']['debounce_ms']}ms
    📦 Queued payloads: {stats.pending}
    🔁 Total attempts: {stats.total_attempts}
    📅 Oldest item: {oldest}
    🗂️ Queue file: {config['queue']['file']}
    """
    console.print(Panel(content, title=Text("📊 CommitRelay Status", style="bold blue"), border_style="blue"))

    if not settings.projects:
        console.print("[yellow]No projects configured[/yellow]")
        return

    table = Table(title="📁 Projects", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Path", style="green")
    table.add_column("Project ID", style="yellow")
    for project in settings.projects:
        table.add_row(project.name, project.path, project.project_id or "-")
    console.print(table)


@cli.group()
def queue():
    """Inspect and manage the retry queue."""
    pass


@queue.command("list")
def queue_list():
    """List queued payloads."""
    display_queue(build_queue(_load_settings()))


@queue.command("clear")
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
def queue_clear(yes: bool):
    """Discard every queued payload."""
    retry_queue = build_queue(_load_settings())

    if retry_queue.is_empty():
        console.print("[dim]Retry queue is already empty[/dim]")
        return

    if not yes and not click.confirm(f"Discard {len(retry_queue)} queued payload(s)?"):
        console.print("[dim]Aborted[/dim]")
        return

    retry_queue.clear()
    console.print("[green]✅ Retry queue cleared[/green]")


@queue.command("retry")
@click.option('--debug', is_flag=True, help='Enable debug logging')
def queue_retry(debug: bool):
    """Redeliver queued payloads now."""
    settings = _load_settings()
    configure_logging("DEBUG" if debug else "WARNING", settings.monitoring.log_format)
    retry_queue = build_queue(settings)

    if retry_queue.is_empty():
        console.print("[dim]Retry queue is empty[/dim]")
        return

    total = len(retry_queue)

    async def run() -> int:
        async with build_client(settings) as client:
            return await retry_queue.process_queue(client.push_stats)

    delivered = asyncio.run(run())
    remaining = len(retry_queue)

    if remaining == 0:
        console.print(f"[green]✅ Delivered {delivered}/{total} queued payload(s)[/green]")
    else:
        console.print(
            f"[yellow]⚠️  Delivered {delivered}/{total} queued payload(s); "
            f"{remaining} still queued[/yellow]"
        )
        sys.exit(1)


if __name__ == "__main__":
    cli()
