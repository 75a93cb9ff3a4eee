"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from hls_offline import __version__
from hls_offline.core.drm import DrmBindingStage
from hls_offline.core.notifier import EventNotifier
from hls_offline.core.persistence_manager import AssetPersistenceManager
from hls_offline.exceptions import AssetNotFoundError, HlsOfflineError
from hls_offline.media.downloader import Downloader, close_connection_pool
from hls_offline.models.asset import Asset, DownloadState
from hls_offline.models.config import DownloadConfig
from hls_offline.models.stats import DownloadStats
from hls_offline.storage.config_manager import ConfigManager
from hls_offline.storage.index import PersistedIndex
from hls_offline.storage.kvstore import SqliteKeyValueStore

from .formatters import (
    format_state,
    print_config,
    print_index_table,
    print_stats_table,
    print_summary_panel,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("hls_offline")

app = typer.Typer(
    name="hls-offline",
    help=(
        "Download HLS streams for offline playback. Use 'hls-offline <command>"
        " --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "hls-offline"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"
INDEX_DB_NAME = "download_index.sqlite"


def _load_config(cli_options: dict | None = None) -> DownloadConfig:
    try:
        return ConfigManager(CONFIG_FILE).load_config(cli_options)
    except HlsOfflineError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e


def _open_index(config: DownloadConfig) -> PersistedIndex:
    store = SqliteKeyValueStore(CONFIG_DIR / INDEX_DB_NAME)
    return PersistedIndex(store, config.base_dir)


def _stored_asset(index: PersistedIndex, name: str) -> Asset:
    """Rebuilds enough of an asset from its index entry to act on it."""
    relative = index.get(name)
    if relative is None:
        raise AssetNotFoundError(f"No download recorded under '{name}'.")
    program_id = Path(relative).parts[0]
    return Asset(name=name, url="", program_id=program_id, local_manifest_path=relative)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """HLS Offline Downloader CLI"""
    if version:
        console.print(f"[bold]hls-offline[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("hls_offline").setLevel(log_level)

    if show_config:
        config_manager = ConfigManager(CONFIG_FILE)
        if not CONFIG_FILE.is_file():
            console.print(
                "[yellow]No config file found, showing defaults.[/] Run "
                "[cyan]hls-offline init[/cyan] to create one."
            )
        print_config(CONFIG_FILE, config_manager.get_config_as_dict())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    download_dir: Path | None = typer.Option(  # noqa: B008
        None, "--download-dir", "-d", help="Where downloaded assets are stored."
    ),
    local_server_url: str | None = typer.Option(
        None,
        "--local-server-url",
        help="Base URL of the local file server that serves the download directory.",
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration file."
    ),
):
    """Create the configuration file with default settings."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {}
    if download_dir is not None:
        settings["download_dir"] = str(download_dir.expanduser())
    if local_server_url is not None:
        settings["local_server_url"] = local_server_url

    config_manager = ConfigManager(CONFIG_FILE)
    try:
        # Validate before writing anything.
        DownloadConfig(
            **{**config_manager.get_config_as_dict(), **settings},
            config_path=str(CONFIG_DIR),
        )
    except ValueError as e:
        console.print(f"[red]✗ Invalid settings: {e}[/red]")
        raise typer.Exit(code=1) from e

    config_manager.save_new_config(settings)
    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print(
        "Ready to download! Try: [cyan]hls-offline download <URL> --name <NAME>"
        " --program-id <ID>[/cyan]"
    )


@app.command(name="download")
def download_command(
    url: str = typer.Argument(..., help="URL of the HLS master manifest."),
    name: str = typer.Option(
        ..., "--name", "-n", help="Name the download is recorded under."
    ),
    program_id: str = typer.Option(
        ..., "--program-id", "-p", help="Program the asset belongs to."
    ),
    content_id: str = typer.Option(
        "", "--content-id", "-c", help="Content identifier, used for DRM scoping."
    ),
    protected: bool = typer.Option(
        False, "--protected", help="The stream is DRM protected."
    ),
    workers: int | None = typer.Option(
        None,
        "-w",
        "--workers",
        help="Number of simultaneous fetches (default 8, override default in config).",
    ),
    download_dir: Path | None = typer.Option(  # noqa: B008
        None, "--download-dir", "-d", help="Override the configured download directory."
    ),
):
    """Download an HLS stream for offline playback."""
    cli_options = {
        key: value
        for key, value in {
            "max_workers": workers,
            "download_dir": str(download_dir) if download_dir else None,
        }.items()
        if value is not None
    }
    config = _load_config(cli_options)

    asset = Asset(
        name=name,
        url=url,
        program_id=program_id,
        content_id=content_id,
        protected=protected,
    )

    async def _download_async() -> tuple[DownloadStats, float, DownloadState]:
        stats = DownloadStats()
        notifier = EventNotifier()
        index = _open_index(config)
        transport = Downloader(stats, config.max_workers)
        manager = AssetPersistenceManager(
            config, transport, index, notifier, DrmBindingStage(), stats
        )
        final_state = DownloadState.NOT_DOWNLOADED
        start_time = time.monotonic()

        async with ProgressManager(console=console) as progress_manager:
            unsubscribe = notifier.subscribe(progress_manager.handle_event)
            try:
                await manager.restore()
                if manager.download(asset):
                    console.print(
                        f"[bold cyan]📺 Downloading '{asset.name}'...[/bold cyan]"
                    )
                    try:
                        final_state = await manager.wait_until_settled(asset.name)
                    except asyncio.CancelledError:
                        manager.cancel(asset)
                        raise
                else:
                    final_state = manager.download_state(asset)
            finally:
                await manager.close()
                await close_connection_pool()
                unsubscribe()

        return stats, time.monotonic() - start_time, final_state

    stats, duration, final_state = asyncio.run(_download_async())
    print_summary_panel(stats, duration, final_state)
    if final_state is not DownloadState.DOWNLOADED:
        raise typer.Exit(code=1)


@app.command()
def status(name: str = typer.Argument(..., help="Name of the download.")):
    """Show the stored state of one download."""
    config = _load_config()
    index = _open_index(config)
    state = index.state_of(name)
    console.print(f"[bold]{name}[/bold]: {format_state(state)}")
    if local_path := index.resolve_local_path(name):
        console.print(f"[dim]{local_path}[/dim]")
    if index.is_pending(name):
        console.print("[yellow]⚠️  An earlier run was interrupted mid-download.[/yellow]")
    elif index.is_dangling(name):
        console.print("[yellow]⚠️  The local manifest is missing on disk.[/yellow]")


@app.command(name="list")
def list_command():
    """List every download recorded in the index."""
    config = _load_config()
    index = _open_index(config)
    rows = [
        (name, path, index.state_of(name))
        for name, path in sorted(index.entries().items())
    ]
    print_index_table(rows)


@app.command()
def delete(
    name: str = typer.Argument(..., help="Name of the download."),
    force: bool = typer.Option(
        False, "--force", "-f", help="Bypass the confirmation prompt."
    ),
):
    """Delete a downloaded asset and its index entry."""
    config = _load_config()
    index = _open_index(config)
    asset = _stored_asset(index, name)

    if not force and not typer.confirm(f"Delete the local copy of '{name}'?"):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    manager = AssetPersistenceManager(config, Downloader(), index)
    if manager.delete(asset):
        console.print(f"[green]✓ Deleted '{name}'.[/green]")
    else:
        console.print(f"[red]✗ Could not delete '{name}'.[/red]")
        raise typer.Exit(code=1)


@app.command(name="local-url")
def local_url(
    name: str = typer.Argument(..., help="Name of the download."),
    content_id: str = typer.Option("", "--content-id", "-c"),
):
    """Print the URL that plays a download through the local file server."""
    config = _load_config()
    index = _open_index(config)
    asset = _stored_asset(index, name)
    manager = AssetPersistenceManager(config, Downloader(), index)
    local = manager.local_asset_for_stream(name, content_id, asset.program_id)
    if local is None or local.state is not DownloadState.DOWNLOADED:
        raise AssetNotFoundError(f"'{name}' is not available offline.")
    console.print(local.url, highlight=False, soft_wrap=True)


@app.command()
def stats():
    """Show statistics from the download index."""

    async def _get_stats():
        config = _load_config()
        stats_data = await _open_index(config).store.get_stats()
        if stats_data:
            print_stats_table(stats_data)
        else:
            console.print("[yellow]Could not retrieve stats.[/yellow]")

    asyncio.run(_get_stats())


@app.command()
def vacuum():
    """Optimize the download index database."""

    async def _vacuum():
        console.print("[cyan]Optimizing index database...[/cyan]")
        config = _load_config()
        if await _open_index(config).store.vacuum():
            console.print("[green]✓ Database optimized.[/green]")
        else:
            console.print("[red]✗ Optimization failed.[/red]")

    asyncio.run(_vacuum())


@app.command(name="clear-index")
def clear_index(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Bypass the confirmation prompt.",
    ),
):
    """Forget every recorded download. Files on disk are left in place."""
    if not force and not typer.confirm(
        "Are you sure you want to clear the download index? Downloaded files stay "
        "on disk but will no longer be recognised."
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    async def _clear_index_async():
        console.print("[cyan]Clearing download index...[/cyan]")
        config = _load_config()
        if await _open_index(config).store.clear():
            console.print("[green]✓ Download index cleared successfully.[/green]")
        else:
            console.print("[red]✗ Failed to clear download index.[/red]")

    asyncio.run(_clear_index_async())
