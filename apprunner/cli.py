"""
CLI for app-runner.

Runs the dashboard server and offers local views of projects, builds,
stats and realtime sessions.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from apprunner.config import RunnerConfig
from apprunner.errors import RunnerError

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, default_level: int = logging.WARNING):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else default_level
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,
    )


def get_config(data_dir: Optional[str] = None) -> RunnerConfig:
    """Load configuration from environment, exiting on malformed values."""
    try:
        config = RunnerConfig.from_env()
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)
    if data_dir:
        config.data_dir = Path(data_dir).expanduser()
    return config


def _open_db(config: RunnerConfig):
    from apprunner.web.database import Database

    try:
        return Database(str(config.stats_db_path))
    except RunnerError as e:
        console.print(f"[red]Error:[/red] {e.message}: {e.details}")
        sys.exit(1)


def server_building(config: RunnerConfig) -> list[str]:
    """Project ids the local server is building; empty when it is not running."""
    host = "127.0.0.1" if config.host == "0.0.0.0" else config.host
    try:
        resp = httpx.get(f"http://{host}:{config.port}/api/health", timeout=2.0)
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.debug("No server build status available: %s", e)
        return []
    building = data.get("building") if isinstance(data, dict) else None
    return building if isinstance(building, list) else []


data_dir_option = click.option(
    "--data-dir", "-d", type=click.Path(file_okay=False), help="Projects directory (RUNNER_DATA_DIR)"
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """app-runner - build and launch locally staged web apps."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    setup_logging(verbose)


@main.command()
@click.option("--host", default=None, help="Bind address (RUNNER_HOST)")
@click.option("--port", "-p", type=int, default=None, help="Port (RUNNER_PORT)")
@data_dir_option
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], data_dir: Optional[str]):
    """Run the dashboard API and realtime channel."""
    import uvicorn

    # The app reads its settings from the environment at startup
    if host:
        os.environ["RUNNER_HOST"] = host
    if port:
        os.environ["RUNNER_PORT"] = str(port)
    if data_dir:
        os.environ["RUNNER_DATA_DIR"] = str(Path(data_dir).expanduser().resolve())

    config = get_config()
    setup_logging(ctx.obj.get("verbose", False), default_level=logging.INFO)
    console.print(Panel(
        f"Listening: http://{config.host}:{config.port}\n"
        f"Projects: {config.data_dir}\n"
        f"Stats DB: {config.stats_db_path}",
        title="app-runner",
    ))
    uvicorn.run("apprunner.api.main:app", host=config.host, port=config.port, log_config=None)


@main.command()
@data_dir_option
def projects(data_dir: Optional[str]):
    """List projects and whether they are built."""
    from apprunner.registry import ProjectRegistry

    config = get_config(data_dir)
    found = ProjectRegistry(config.data_dir).list()

    if not found:
        console.print(f"[yellow]No projects found in {config.data_dir}[/yellow]")
        return

    table = Table(title="Projects", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Description", style="dim")
    table.add_column("Built", justify="center")
    table.add_column("package.json", justify="center")

    for project in found:
        table.add_row(
            project.id,
            project.name,
            project.description[:60],
            "[green]yes[/green]" if project.has_dist else "[red]no[/red]",
            "yes" if project.has_package_json else "no",
        )

    console.print(table)


@main.command()
@click.argument("project_id")
@data_dir_option
@click.option("--quiet", "-q", is_flag=True, help="Only print logs on failure")
def build(project_id: str, data_dir: Optional[str], quiet: bool):
    """Install dependencies and build PROJECT_ID.

    Builds started here are not tracked by a running server, so the
    command asks the server (RUNNER_HOST/RUNNER_PORT) which ids it is
    building and refuses to start one of them.  The check is best effort:
    an HTTP build requested after it passes can still overlap.
    """
    from apprunner.builder import BuildOrchestrator

    config = get_config(data_dir)
    if project_id in server_building(config):
        console.print(f"[red]Error:[/red] Build already in progress on the server for {project_id}")
        sys.exit(1)
    builder = BuildOrchestrator(
        config.data_dir,
        max_output_bytes=config.build_max_output,
        npm_command=config.npm_command,
    )

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task(f"Building {project_id}...", total=None)
            result = builder.build(project_id)
            progress.remove_task(task)
    except RunnerError as e:
        console.print(f"[red]Error:[/red] {e.message}" + (f" ({e.details})" if e.details else ""))
        sys.exit(1)

    if result.ok:
        if not quiet:
            console.print(result.logs, markup=False, highlight=False)
        console.print(f"[green][OK][/green] Built {project_id}")
        return

    console.print(result.logs, markup=False, highlight=False)
    console.print(f"[red][FAIL][/red] {result.error}")
    sys.exit(1)


@main.command()
@data_dir_option
def stats(data_dir: Optional[str]):
    """Show launch counts, ratings and the online count."""
    config = get_config(data_dir)
    db = _open_db(config)
    try:
        snapshot = db.snapshot()
    finally:
        db.close()

    project_ids = sorted(set(snapshot.launches) | set(snapshot.ratings))
    console.print(f"Online: [bold]{snapshot.online}[/bold]   Schema: v{snapshot.version}")
    if not project_ids:
        console.print("[yellow]No stats recorded yet[/yellow]")
        return

    table = Table(title="Usage", show_header=True)
    table.add_column("Project", style="cyan")
    table.add_column("Launches", justify="right")
    table.add_column("Rating", justify="right")
    table.add_column("Ratings", justify="right", style="dim")

    for project_id in project_ids:
        summary = snapshot.ratings.get(project_id)
        table.add_row(
            project_id,
            str(snapshot.launches.get(project_id, 0)),
            f"{summary.average:.1f}" if summary else "-",
            str(summary.count) if summary else "0",
        )

    console.print(table)


@main.command(name="sessions")
@data_dir_option
@click.option("--limit", "-n", default=20, help="Maximum results")
def list_sessions(data_dir: Optional[str], limit: int):
    """List recent realtime sessions, newest first."""
    config = get_config(data_dir)
    db = _open_db(config)
    try:
        sessions = db.list_sessions(limit=limit)
    finally:
        db.close()

    if not sessions:
        console.print("[yellow]No sessions recorded[/yellow]")
        return

    table = Table(title="Realtime Sessions", show_header=True)
    table.add_column("Session ID", style="cyan")
    table.add_column("Connected", style="dim")
    table.add_column("Disconnected", style="dim")
    table.add_column("Status", justify="center")

    for session in sessions:
        table.add_row(
            session.id[:32],
            session.connected_at[:19],
            (session.disconnected_at or "")[:19],
            "[green]online[/green]" if session.disconnected_at is None else "closed",
        )

    console.print(table)


if __name__ == "__main__":
    main()
