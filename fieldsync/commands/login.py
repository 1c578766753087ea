"""Command that switches the active tenant."""

from __future__ import annotations

from typing import List

from ..slash_commands import SlashCommand, SlashCommandContext


async def _handler(context: SlashCommandContext, args: List[str]) -> str:
    if not args:
        return "[login] Usage: login <tenant>"
    outcome = await context.service.login(args[0])
    full = outcome["full_sync"]
    lines = [f"[login] Active tenant: {args[0]}"]
    if outcome["wiped"]:
        lines.append("  - local data from the previous tenant was removed")
    if full["skipped"]:
        lines.append(f"  - reference data not refreshed: {full['message']}")
    else:
        fetched = ", ".join(f"{name}={count}" for name, count in sorted(full["fetched"].items()))
        lines.append(f"  - {full['message']} ({fetched or 'nothing fetched'})")
        for name, error in sorted(full["errors"].items()):
            lines.append(f"  - {name}: {error}")
    lines.append(f"  - pending changes sent: {'yes' if outcome['synced'] else 'no'}")
    return "\n".join(lines)


COMMAND = SlashCommand(
    name="login",
    description="Switch tenant, wiping local data if it changed, then sync.",
    usage="<tenant>",
    handler=_handler,
    requires_service=True,
)
