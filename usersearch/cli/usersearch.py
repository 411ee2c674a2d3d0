#!/usr/bin/env python3
"""
Command line front end for usersearch.

Usage:
    usersearch search "query"          - Search users and show avatars status
    usersearch search "query" --no-avatars
    usersearch config show             - Print the effective configuration
    usersearch config init PATH        - Write a default config file
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click
import yaml
from loguru import logger
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from usersearch.core.assets import AssetCache
from usersearch.core.client import RemoteClient
from usersearch.core.config import Config
from usersearch.core.models import AssetSlot, Entity, EntityId, QueryState, SlotState
from usersearch.core.query import QueryController

console = Console()

EMPTY_QUERY_MESSAGE = "Please enter a name to search."

SLOT_STYLES = {
    SlotState.ABSENT: "[dim]-[/dim]",
    SlotState.PENDING: "[yellow]pending[/yellow]",
    SlotState.LOADED: "[green]loaded[/green]",
    SlotState.FAILED: "[red]failed[/red]",
}


def setup_logging(config: Config, verbose: bool = False) -> None:
    """Route loguru output to stderr and, if configured, a rotating file."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level="DEBUG" if verbose else config.logging.level
    )

    if config.logging.file:
        log_file = Path(config.logging.file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation="1 day",
            retention="7 days",
            level="DEBUG"
        )


def load_config(config_path: Optional[str]) -> Config:
    try:
        return Config.load(Path(config_path) if config_path else None)
    except FileNotFoundError as e:
        raise click.ClickException(str(e))
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")


async def run_search(
    query: str,
    config: Config,
    avatars: bool = True,
    limit: Optional[int] = None,
    client=None
) -> Tuple[QueryState, Dict[EntityId, AssetSlot]]:
    """Run one search and, optionally, fetch avatars for the visible rows."""
    owns_client = client is None
    if client is None:
        client = RemoteClient(config)

    try:
        async with QueryController(client) as controller, AssetCache(client, config) as cache:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                transient=True,
                console=console
            ) as progress:
                progress.add_task(description="Loading...", total=None)
                await controller.search(query)

                visible: List[Entity] = controller.results[:limit] if limit else controller.results
                if avatars and visible:
                    progress.add_task(description="Fetching avatars...", total=None)
                    await cache.request_many(visible)

            return controller.state, cache.snapshot()
    finally:
        if owns_client:
            await client.close()


def display_results(state: QueryState, slots: Dict[EntityId, AssetSlot],
                    limit: Optional[int] = None, avatars: bool = True) -> None:
    """Display search results in a table."""
    if state.last_error is not None:
        console.print(f"[red]Search failed:[/red] {state.last_error.message}")
        return

    results = list(state.results)
    if not results:
        console.print("[yellow]No users found[/yellow]")
        return

    shown = results[:limit] if limit else results
    table = Table(title=f"Users matching '{state.query}' ({len(results)})")
    table.add_column("Login", style="cyan")
    table.add_column("ID", justify="right")
    if avatars:
        table.add_column("Avatar")
        table.add_column("Size", justify="right")

    for entity in shown:
        row = [entity.login, str(entity.id)]
        if avatars:
            slot = slots.get(entity.id) or AssetSlot.absent()
            size = f"{len(slot.data)} B" if slot.data else ""
            row.extend([SLOT_STYLES[slot.state], size])
        table.add_row(*row)

    console.print(table)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config_path: Optional[str], verbose: bool):
    """usersearch - search remote users and load their avatars."""
    config = load_config(config_path)
    setup_logging(config, verbose)
    ctx.obj = config


@cli.command()
@click.argument("query", default="")
@click.option("--avatars/--no-avatars", default=True, help="Fetch avatars for shown users")
@click.option("--limit", "-l", type=int, default=None, help="Max rows to show")
@click.pass_obj
def search(config: Config, query: str, avatars: bool, limit: Optional[int]):
    """Search users by name."""
    query = query.strip()
    if not query:
        console.print(f"[red]{EMPTY_QUERY_MESSAGE}[/red]")
        sys.exit(1)

    state, slots = asyncio.run(run_search(query, config, avatars=avatars, limit=limit))
    display_results(state, slots, limit=limit, avatars=avatars)
    if state.last_error is not None:
        sys.exit(1)


@cli.group(name="config")
def config_group():
    """Inspect or create configuration files."""


@config_group.command(name="show")
@click.pass_obj
def config_show(config: Config):
    """Print the effective configuration."""
    click.echo(yaml.safe_dump(config.model_dump(mode='json'), default_flow_style=False))


@config_group.command(name="init")
@click.argument("path", type=click.Path(dir_okay=False))
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(path: str, force: bool):
    """Write a default configuration file."""
    target = Path(path)
    if target.exists() and not force:
        raise click.ClickException(f"{target} already exists (use --force)")
    Config().save(target)
    console.print(f"[green]✓[/green] Wrote {target}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
