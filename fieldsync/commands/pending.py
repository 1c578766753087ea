"""Command listing queue entries that still await the server."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, render_rich


async def _handler(context: SlashCommandContext, args: List[str]) -> str:
    service = context.service
    entries = await service.queue.pending()
    if not entries:
        return "[pending] Nothing waiting to sync."

    limit = len(entries) if "--all" in args else 20

    def _render(console: Console) -> None:
        table = Table(title=f"Pending ({len(entries)})", show_header=True, header_style="bold cyan")
        table.add_column("#", style="dim", no_wrap=True)
        table.add_column("Collection", style="green")
        table.add_column("Record")
        table.add_column("Operation")
        table.add_column("Queued at", overflow="fold")
        for entry in entries[:limit]:
            table.add_row(
                str(entry.id),
                entry.collection.value,
                entry.record_id,
                entry.operation.value,
                entry.timestamp,
            )
        console.print(table)
        if len(entries) > limit:
            console.print(f"[dim]Showing {limit}/{len(entries)}. Use 'pending --all'.[/dim]")

    return render_rich(_render)


COMMAND = SlashCommand(
    name="pending",
    description="List changes waiting to be sent.",
    usage="[--all]",
    handler=_handler,
    requires_service=True,
)
