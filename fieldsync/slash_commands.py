"""Operator command registry and rendering helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
import inspect
from io import StringIO
import logging
import shutil
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from rich.console import Console
from rich.table import Table

from .configuration import ConfigurationBundle
from .errors import FieldSyncError

if TYPE_CHECKING:
    from .service import FieldSyncService

logger = logging.getLogger("fieldsync.commands")

SlashCommandHandler = Callable[["SlashCommandContext", List[str]], Union[str, Awaitable[str]]]


@dataclass
class SlashCommandContext:
    """Context passed into each command handler."""

    config: ConfigurationBundle
    router: "CommandRouter"
    service: Optional["FieldSyncService"] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SlashCommand:
    """Metadata about an operator command."""

    name: str
    description: str
    handler: SlashCommandHandler
    usage: str = ""
    requires_ready: bool = False
    requires_service: bool = False


class CommandRouter:
    """Registry + dispatcher for operator commands.

    Handlers may be plain or async; failures from the sync layer are turned
    into a one-line message instead of a traceback.
    """

    def __init__(
        self,
        config: ConfigurationBundle,
        service: Optional["FieldSyncService"] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self.service = service
        self._commands: Dict[str, SlashCommand] = {}
        self.metadata = metadata or {}

    def register(self, command: SlashCommand) -> None:
        self._commands[command.name.lower()] = command

    async def handle(self, command_name: str, args: List[str]) -> str:
        name = command_name.lstrip("/").lower()
        command = self._commands.get(name)
        if command is None:
            return f"[router] Unknown command '{command_name}'. Try 'help'."
        if command.requires_ready and self.config.status != "ready":
            return (
                f"[router] '{name}' requires a ready configuration "
                f"(current status: {self.config.status})."
            )
        if command.requires_service and self.service is None:
            return f"[router] '{name}' needs the sync service, which is not running."
        context = SlashCommandContext(
            config=self.config,
            router=self,
            service=self.service,
            metadata=self.metadata,
        )
        try:
            result = command.handler(context, args)
            if inspect.isawaitable(result):
                result = await result
        except FieldSyncError as exc:
            logger.warning("Command '%s' failed: %s", name, exc)
            return f"[{name}] {exc}"
        return result

    @property
    def command_names(self) -> Sequence[str]:
        return sorted(self._commands.keys())

    def commands(self) -> Sequence[SlashCommand]:
        return [self._commands[name] for name in self.command_names]

    def get(self, command_name: str) -> Optional[SlashCommand]:
        return self._commands.get(command_name.lower())


def render_help_table(commands: Sequence[SlashCommand]) -> str:
    """Render a help table listing commands."""

    def _render(console: Console) -> None:
        table = Table(title="Commands", show_header=True, header_style="bold cyan")
        table.add_column("Command", style="green", no_wrap=True)
        table.add_column("Description")
        for cmd in commands:
            label = f"{cmd.name} {cmd.usage}".strip()
            table.add_row(label, cmd.description)
        console.print(table)

    return render_rich(_render)


def render_rich(render_fn: Callable[[Console], None]) -> str:
    """Render a Rich layout to an ANSI string without printing live."""

    terminal_size = shutil.get_terminal_size(fallback=(80, 24))
    # Clamp to a reasonable minimum so Rich does not choke on ultra-small widths.
    width = max(20, terminal_size.columns)
    height = max(10, terminal_size.lines)

    console = Console(
        record=True,
        force_terminal=True,
        color_system="auto",
        width=width,
        height=height,
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


__all__ = [
    "SlashCommand",
    "SlashCommandContext",
    "CommandRouter",
    "render_help_table",
    "render_rich",
]
