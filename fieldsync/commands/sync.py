"""Commands that trigger queue draining and reference-data pulls."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, render_rich
from ..sync.models import SyncEvent


async def _sync_handler(context: SlashCommandContext, _: List[str]) -> str:
    service = context.service
    if not service.monitor.is_online:
        pending = await service.pending_count()
        return f"[sync] Offline; {pending} change(s) kept on this device."

    messages: List[str] = []

    def _collect(event: SyncEvent) -> None:
        messages.append(f"{event.type.value}: {event.message}")

    unsubscribe = service.orchestrator.subscribe(_collect)
    try:
        ok = await service.orchestrator.force_sync_now()
    finally:
        unsubscribe()

    pending = await service.pending_count()
    summary = "done" if ok else "did not complete"
    lines = [f"[sync] Sync {summary}; {pending} change(s) pending."]
    lines.extend(f"  - {message}" for message in messages if not message.startswith("progress"))
    return "\n".join(lines)


async def _fullsync_handler(context: SlashCommandContext, args: List[str]) -> str:
    first_access = any(arg in {"--first", "--all"} for arg in args)
    result = await context.service.orchestrator.perform_full_sync(is_first_access=first_access)
    if result.skipped:
        return f"[fullsync] Skipped: {result.message}"
    if result.interrupted:
        return f"[fullsync] {result.message}"

    def _render(console: Console) -> None:
        table = Table(title=result.message, show_header=True, header_style="bold cyan")
        table.add_column("Collection", style="green")
        table.add_column("Fetched", justify="right")
        table.add_column("Pruned", justify="right")
        table.add_column("Error", overflow="fold")
        for name in result.collections:
            table.add_row(
                name,
                str(result.fetched.get(name, "-")),
                str(result.pruned.get(name, "-")),
                result.errors.get(name, ""),
            )
        console.print(table)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="sync",
    description="Send pending changes now, waiting for a running sync first.",
    handler=_sync_handler,
    requires_service=True,
)

FULLSYNC_COMMAND = SlashCommand(
    name="fullsync",
    description="Download templates and vehicles; --first fetches everything and prunes.",
    usage="[--first]",
    handler=_fullsync_handler,
    requires_service=True,
)
