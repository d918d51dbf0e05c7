"""Main CLI entry point for managed-lhapdf.

Provides command-line access to the cache: inspect the configuration, resolve
LHAIDs, pre-fetch sets and refresh the index.
"""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from managed_lhapdf.cache.config import CacheConfig, ConfigStore, prepare_environment
from managed_lhapdf.cache.fetcher import DatasetFetcher, make_session
from managed_lhapdf.manager import LhapdfManager

# Global console for Rich output
console = Console()


def load_config(config_path: Optional[str]) -> CacheConfig:
    """Resolve the configuration, creating the default file if needed."""
    config = ConfigStore(Path(config_path) if config_path else None).load_or_create()
    prepare_environment(config)
    return config


def build_manager(config: CacheConfig, show_progress: bool = True) -> LhapdfManager:
    """Manager whose fetcher reports download progress on the console."""
    session = make_session()
    return LhapdfManager(
        config,
        fetcher=DatasetFetcher(config, session=session, show_progress=show_progress),
        session=session,
    )


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Path to the configuration file (default: per-user configuration directory)",
)
@click.pass_context
def cli(ctx, config_path):
    """managed-lhapdf CLI - Manage the local cache of LHAPDF sets."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command("config")
@click.pass_context
def show_config(ctx):
    """Show the resolved configuration.

    Example:
        managed-lhapdf config
    """
    try:
        config = load_config(ctx.obj.get("config_path"))

        console.print(f"\n[bold cyan]Configuration:[/bold cyan] {config.config_path}")
        console.print("=" * 60)
        if config.read_only:
            console.print("[bold]Write directory:[/bold] [yellow]none (read-only)[/yellow]")
        else:
            console.print(f"[bold]Write directory:[/bold] {config.cache_write_dir}")
        console.print(f"[bold]Read directories ({len(config.cache_read_dirs)}):[/bold]")
        for path in config.cache_read_dirs:
            console.print(f"  • {path}")
        console.print(f"[bold]Index URL:[/bold] {config.index_url}")
        console.print(f"[bold]Repositories ({len(config.repository_urls)}):[/bold]")
        for url in config.repository_urls:
            console.print(f"  • {url}")

    except Exception as e:
        console.print(f"[red]✗[/red] Error: {e}", style="red")
        sys.exit(1)


@cli.command("lookup")
@click.argument("lhaid", type=int)
@click.pass_context
def lookup(ctx, lhaid):
    """Resolve an LHAID to its set name and member.

    Example:
        managed-lhapdf lookup 324900
    """
    try:
        config = load_config(ctx.obj.get("config_path"))
        result = build_manager(config).lookup_pdf(lhaid)
        if result is None:
            console.print(f"[yellow]Unknown LHAID {lhaid}[/yellow]")
            sys.exit(1)

        setname, member = result
        console.print(f"{lhaid}: [cyan]{setname}[/cyan] member {member}")

    except Exception as e:
        console.print(f"[red]✗[/red] Error: {e}", style="red")
        sys.exit(1)


@cli.command("fetch")
@click.argument("setnames", nargs=-1, required=True)
@click.option("--force", "-f", is_flag=True, help="Download even if already installed")
@click.option("--quiet", "-q", is_flag=True, help="Don't show download progress")
@click.pass_context
def fetch(ctx, setnames, force, quiet):
    """Download PDF sets into the cache.

    Example:
        managed-lhapdf fetch CT18NLO NNPDF40_nnlo_as_01180
    """
    try:
        config = load_config(ctx.obj.get("config_path"))
        manager = build_manager(config, show_progress=not quiet)

        for setname in setnames:
            installed = manager.fetcher.is_installed(setname)
            if installed is not None and not force:
                console.print(f"[yellow]•[/yellow] '{setname}' already installed in {installed}")
                continue
            manager.acquire_set(setname, force=force)
            console.print(f"[green]✓[/green] Fetched '{setname}'")

    except Exception as e:
        console.print(f"[red]✗[/red] Error: {e}", style="red")
        sys.exit(1)


@cli.command("update-index")
@click.pass_context
def update_index(ctx):
    """Download the LHAID index again.

    Example:
        managed-lhapdf update-index
    """
    try:
        config = load_config(ctx.obj.get("config_path"))
        manager = build_manager(config)
        index_path = manager.index.refresh()
        console.print(f"[green]✓[/green] Updated index {index_path}")

    except Exception as e:
        console.print(f"[red]✗[/red] Error: {e}", style="red")
        sys.exit(1)


@cli.command("list")
@click.pass_context
def list_sets(ctx):
    """List PDF sets installed in the search paths.

    Example:
        managed-lhapdf list
    """
    try:
        config = load_config(ctx.obj.get("config_path"))
        sets = DatasetFetcher(config).installed_sets()

        if not sets:
            console.print("[yellow]No PDF sets installed[/yellow]")
            return

        table = Table(title=f"PDF sets ({len(sets)})")
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Location", style="white")
        table.add_column("Writable", style="green")

        for setname, directory, writable in sets:
            table.add_row(setname, str(directory.parent), "yes" if writable else "no")

        console.print(table)

    except Exception as e:
        console.print(f"[red]✗[/red] Error: {e}", style="red")
        sys.exit(1)


if __name__ == "__main__":
    cli()
