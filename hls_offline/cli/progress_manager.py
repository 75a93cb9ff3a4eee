"""
Manages a Rich Live display for running downloads. Listens to the pipeline's
events and shows one progress row per asset with the fetch currently reporting.
"""

import asyncio
import logging
from datetime import datetime

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from rich.text import Text

from hls_offline.models.asset import DownloadState
from hls_offline.models.events import ProgressChanged, RestoreComplete, StateChanged
from hls_offline.utils.formatting import shorten_url

log = logging.getLogger("hls_offline")


class ProgressManager:
    """Renders pipeline events: state changes, per-fetch progress, session counters."""

    def __init__(self, console: Console):
        self.console = console

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            TextColumn("[dim]{task.fields[current]}[/dim]"),
            "•",
            TimeElapsedColumn(),
            console=console,
            transient=False,
        )

        self._live: Live | None = None
        self._asset_tasks: dict[str, TaskID] = {}
        self._stats = {
            "start_time": None,
            "downloading": 0,
            "downloaded": 0,
            "failed": 0,
            "progress_events": 0,
            "restored": False,
        }

    def handle_event(self, event: object) -> None:
        """Event-notifier subscriber."""
        if isinstance(event, ProgressChanged):
            self._on_progress(event)
        elif isinstance(event, StateChanged):
            self._on_state_changed(event)
        elif isinstance(event, RestoreComplete):
            self._stats["restored"] = True
            log.debug("Download state restored.")
        self._refresh()

    def _on_progress(self, event: ProgressChanged) -> None:
        self._stats["progress_events"] += 1
        task_id = self._asset_tasks.get(event.asset_name)
        if task_id is None:
            return
        self.progress.update(
            task_id,
            completed=min(event.percent, 1.0) * 100,
            current=shorten_url(event.url),
        )

    def _on_state_changed(self, event: StateChanged) -> None:
        task_id = self._asset_tasks.get(event.asset_name)
        if event.state is DownloadState.DOWNLOADING:
            self._stats["downloading"] += 1
            if task_id is None:
                self._asset_tasks[event.asset_name] = self.progress.add_task(
                    f"[cyan]{event.asset_name}[/cyan]", total=100, current="starting"
                )
            return

        self._stats["downloading"] = max(0, self._stats["downloading"] - 1)
        if event.state is DownloadState.DOWNLOADED:
            self._stats["downloaded"] += 1
            if task_id is not None:
                self.progress.update(
                    task_id,
                    completed=100,
                    description=f"[green]✓ {event.asset_name}[/green]",
                    current="done",
                )
        else:
            self._stats["failed"] += 1
            if task_id is not None:
                self.progress.update(
                    task_id,
                    description=f"[red]✗ {event.asset_name}[/red]",
                    current="not downloaded",
                )
        if task_id is not None:
            self.progress.stop_task(task_id)

    def _generate_header(self) -> Panel:
        if self._stats["start_time"]:
            elapsed = (datetime.now() - self._stats["start_time"]).total_seconds()
            elapsed_str = (
                f"{int(elapsed // 3600):02d}:"
                f"{int((elapsed % 3600) // 60):02d}:{int(elapsed % 60):02d}"
            )
        else:
            elapsed_str = "00:00:00"

        stats_table = Table.grid(padding=(0, 2))
        for _ in range(6):
            stats_table.add_column()
        stats_table.add_row(
            Text("📺 HLS Offline", style="bold cyan"),
            Text(f"Session: {elapsed_str}", style="yellow"),
            "Active:",
            f"[cyan]{self._stats['downloading']}[/cyan]",
            "Downloaded:",
            f"[green]{self._stats['downloaded']}[/green]",
        )
        if self._stats["failed"]:
            stats_table.add_row(
                "", "", "Failed:", f"[red]{self._stats['failed']}[/red]", "", ""
            )
        return Panel(stats_table, border_style="cyan")

    def _render(self) -> Group:
        return Group(
            self._generate_header(),
            Panel(
                self.progress,
                title="[bold]📥 Assets[/bold]",
                border_style="green",
            ),
        )

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._render())

    async def __aenter__(self):
        self._stats["start_time"] = datetime.now()
        self._live = Live(
            self._render(),
            console=self.console,
            refresh_per_second=8,
            vertical_overflow="visible",
        )
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._live:
            await asyncio.sleep(0.2)
            self._refresh()
            self._live.stop()
            self._live = None
