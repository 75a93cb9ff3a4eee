"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from hls_offline.models.asset import DownloadState
from hls_offline.models.stats import DownloadStats
from hls_offline.utils.formatting import format_duration, format_size

STATE_STYLES = {
    DownloadState.DOWNLOADED: ("✓ downloaded", "green"),
    DownloadState.DOWNLOADING: ("… downloading", "cyan"),
    DownloadState.NOT_DOWNLOADED: ("✗ not downloaded", "yellow"),
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your configuration file (--show-config).",
            "• Run `hls-offline init --force` to recreate it with defaults.",
        ],
        "ManifestParseError": [
            "• The manifest does not reference a variant playlist or segments.",
            "• Make sure the URL points at an HLS master playlist (.m3u8).",
        ],
        "TransportError": [
            "• A network connection issue occurred.",
            "• The CDN may be unavailable or the URL may have expired.",
            "• Downloads are not retried automatically; run the command again.",
        ],
        "AssetNotFoundError": [
            "• Use `hls-offline list` to see what is stored locally.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def format_state(state: DownloadState) -> str:
    label, color = STATE_STYLES[state]
    return f"[{color}]{label}[/{color}]"


def print_config(config_file: Path, config_data: dict[str, Any]) -> None:
    console = Console()
    table = Table(
        title=f"Configuration ([dim]{config_file}[/dim])",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in sorted(config_data.items()):
        table.add_row(key, str(value))
    console.print(table)


def print_index_table(rows: list[tuple[str, str, DownloadState]]) -> None:
    """Prints `(name, path, state)` rows of the persisted index."""
    console = Console()
    if not rows:
        console.print("[dim]No downloads recorded.[/dim]")
        return
    table = Table(box=box.ROUNDED, header_style="bold cyan")
    table.add_column("Asset", style="bold")
    table.add_column("Local manifest", style="dim")
    table.add_column("State")
    for name, path, state in rows:
        table.add_row(name, path, format_state(state))
    console.print(table)


def print_stats_table(stats_data: dict[str, Any]) -> None:
    console = Console()
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column()
    table.add_row("Index entries:", str(stats_data.get("total_entries", 0)))
    table.add_row("Last updated:", str(stats_data.get("last_updated") or "never"))
    console.print(Panel(table, title="[bold]🗂 Download Index[/bold]", expand=False))


def print_summary_panel(
    stats: DownloadStats, duration: float, final_state: DownloadState | None
) -> None:
    """Prints a summary of the session."""
    console = Console()
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column()
    if final_state is not None:
        table.add_row("Result:", format_state(final_state))
    table.add_row("Fetches completed:", f"[green]{stats.fetches_completed}[/green]")
    if stats.fetches_failed:
        table.add_row("Fetches failed:", f"[red]{stats.fetches_failed}[/red]")
    if stats.fetches_cancelled:
        table.add_row("Fetches cancelled:", f"[yellow]{stats.fetches_cancelled}[/yellow]")
    table.add_row("Downloaded:", format_size(stats.total_size_downloaded))
    table.add_row("Duration:", format_duration(duration))
    if stats.peak_speed_bps > 0:
        table.add_row(
            "Peak speed:", f"{stats.peak_speed_bps / (1024 * 1024):.1f} MB/s"
        )
    border = "green" if final_state is DownloadState.DOWNLOADED else "yellow"
    console.print(
        Panel(
            table,
            title="[bold]📊 Session Summary[/bold]",
            border_style=border,
            expand=False,
        )
    )
