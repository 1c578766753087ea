"""Command for runtime and sync status."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, render_rich

DEFAULT_MAX_ROWS = 5


def _add_rows_with_limit(
    table: Table,
    rows: Sequence[Sequence[str]],
    *,
    max_rows: int,
) -> Tuple[int, bool]:
    """Append up to max_rows rows and return total + truncated flag."""

    for row in rows[:max_rows]:
        table.add_row(*row)

    return len(rows), len(rows) > max_rows


def _format_retry(seconds: Optional[float]) -> str:
    if seconds is None:
        return "(none scheduled)"
    return f"in {seconds:.0f}s"


async def _handler(context: SlashCommandContext, args: List[str]) -> str:
    config = context.config
    show_all = any(arg.strip().lower() in {"--all", "-a", "all"} for arg in args)
    sync_status: Optional[Dict[str, Any]] = None
    if context.service is not None and context.service.started:
        sync_status = await context.service.status()

    def _render_summary(console: Console) -> None:
        info = Table.grid(padding=(0, 1))
        info.add_column("Key", style="bold", no_wrap=True)
        info.add_column("Value", overflow="fold")
        info.add_row("Data dir", str(config.data_dir))
        info.add_row("Config", config.status)
        info.add_row("Config files", str(len(config.files_loaded)))
        info.add_row("Log path", str(config.log_path or "(not initialized)"))

        console.print(Panel(info, title="Runtime", border_style="green", padding=(0, 1)))

    def _render_sync(console: Console) -> None:
        if sync_status is None:
            console.print(Panel("[yellow]Sync service not running.", title="Sync", border_style="blue"))
            return
        info = Table.grid(padding=(0, 1))
        info.add_column("Key", style="bold", no_wrap=True)
        info.add_column("Value", overflow="fold")
        info.add_row("Tenant", str(sync_status.get("tenant") or "(none)"))
        info.add_row("Connection", "online" if sync_status.get("online") else "offline")
        info.add_row("State", str(sync_status.get("state")))
        info.add_row("Pending", str(sync_status.get("pending", 0)))
        info.add_row("Last sync", str(sync_status.get("last_sync_time") or "never"))
        info.add_row("Retries", str(sync_status.get("retry_count", 0)))
        info.add_row("Next retry", _format_retry(sync_status.get("next_retry_in")))
        if sync_status.get("local_only"):
            info.add_row("Mode", "[red]local only[/red] (run 'sync' to retry)")
        console.print(Panel(info, title="Sync", border_style="blue", padding=(0, 1)))

    def _render_diagnostics(console: Console) -> None:
        if not config.diagnostics:
            return

        diag_table = Table(
            show_header=True,
            header_style="bold red",
            box=box.SIMPLE,
            pad_edge=False,
        )
        diag_table.add_column("Lvl", style="red", no_wrap=True)
        diag_table.add_column("Message", overflow="fold", ratio=2)
        diag_table.add_column("Source", overflow="fold", ratio=2)

        max_rows = len(config.diagnostics) if show_all else DEFAULT_MAX_ROWS
        rows = [
            (diag.level.upper(), diag.message, str(diag.source or config.data_dir))
            for diag in config.diagnostics
        ]
        total_rows, truncated = _add_rows_with_limit(diag_table, rows, max_rows=max_rows)
        console.print(Panel(diag_table, title="Diagnostics", border_style="red", padding=(0, 1)))
        if truncated:
            console.print(
                f"[dim]Showing {max_rows}/{total_rows}. Use 'status --all' for the full list.[/dim]"
            )

    def _render(console: Console) -> None:
        _render_summary(console)
        _render_sync(console)
        _render_diagnostics(console)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="status",
    description="Show configuration, connectivity and sync state.",
    usage="[--all]",
    handler=_handler,
)
