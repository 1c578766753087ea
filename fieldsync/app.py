"""
Operator console for the FieldSync runtime.

Runs one command and exits when given arguments, otherwise opens an
interactive prompt.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
import sys
from typing import List, Optional, Sequence

from rich.console import Console

from .commands import COMMANDS
from .configuration import (
    ConfigurationBundle,
    Diagnostic,
    load_runtime_configuration,
    resolve_data_dir,
)
from .errors import FieldSyncError
from .logging_utils import setup_logging
from .service import FieldSyncService
from .slash_commands import CommandRouter
from .sync.models import SyncEvent, SyncEventType

REPO_ROOT = Path(__file__).resolve().parent.parent
logger = logging.getLogger("fieldsync")


def _log_path_within_data_dir(log_path: Path, data_dir: Path) -> bool:
    try:
        log_path.relative_to(data_dir)
        return True
    except ValueError:
        return False


def build_router(config: ConfigurationBundle, service: Optional[FieldSyncService] = None) -> CommandRouter:
    router = CommandRouter(config, service=service, metadata={"repo_root": str(REPO_ROOT)})
    for command in COMMANDS:
        router.register(command)
    return router


def emit_configuration_report(config: ConfigurationBundle) -> None:
    """Print diagnostics so operators can correct issues quickly."""

    problems = [diag for diag in config.diagnostics if diag.level != "info"]
    if not problems:
        print(f"[config] Loaded {len(config.files_loaded)} file(s).")
        return

    print("[config] Diagnostics:")
    for diag in problems:
        prefix = diag.source or config.data_dir
        print(f"  - ({diag.level.upper()}) {diag.message} [{prefix}]")


def prepare_configuration(data_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load configuration and start logging under the data directory."""

    resolved = data_dir or resolve_data_dir()
    resolved.mkdir(parents=True, exist_ok=True)
    config_bundle = load_runtime_configuration(resolved)

    logging_cfg = config_bundle.section("logging")
    env_level = os.environ.get("FIELDSYNC_LOG_LEVEL")
    log_level_name = (env_level or logging_cfg.get("level") or "INFO").upper()
    log_path = setup_logging(
        config_bundle.data_dir,
        log_level_name,
        structured=bool(logging_cfg.get("structured", True)),
    )
    config_bundle.log_path = log_path
    if not _log_path_within_data_dir(log_path, config_bundle.data_dir):
        config_bundle.diagnostics.append(
            Diagnostic(
                level="warning",
                message=(
                    "Data log directory is not writable; "
                    f"logging to fallback path '{log_path}'."
                ),
                source=log_path,
            )
        )
    logger.info("Logging initialized at %s", log_path)
    return config_bundle


def _print_event(console: Console, event: SyncEvent) -> None:
    if event.type is SyncEventType.ERROR:
        console.print(f"[red][sync][/red] {event.message}")
    elif event.type is SyncEventType.COMPLETE:
        console.print(f"[green][sync][/green] {event.message}")


async def run_command_line(router: CommandRouter, command_line: str) -> str:
    stripped = command_line.strip()
    if not stripped:
        return ""
    parts = stripped.split()
    result = await router.handle(parts[0], parts[1:])
    logger.info("Executed command: %s", stripped)
    return result


async def interactive_loop(router: CommandRouter, console: Console) -> None:
    while True:
        try:
            raw_line = await asyncio.to_thread(input, "> ")
        except (EOFError, KeyboardInterrupt):
            print("\n[Exiting FieldSync]")
            return

        line = raw_line.strip().lstrip("/")
        if line.lower() in {"quit", "exit"}:
            print("[Goodbye]")
            return
        if not line:
            continue
        console.print(await run_command_line(router, line), markup=False, highlight=False)


async def run(argv: Sequence[str], data_dir: Optional[Path] = None) -> int:
    config_bundle = prepare_configuration(data_dir)
    console = Console()
    service = FieldSyncService.from_bundle(config_bundle)
    try:
        await service.start()
    except FieldSyncError as exc:
        logger.exception("Unable to start the sync service")
        print(f"[fieldsync] Unable to start: {exc}", file=sys.stderr)
        await service.stop()
        return 1

    router = build_router(config_bundle, service)
    unsubscribe = service.orchestrator.subscribe(lambda event: _print_event(console, event))
    try:
        if argv:
            print(await run_command_line(router, " ".join(argv)))
        else:
            emit_configuration_report(config_bundle)
            await interactive_loop(router, console)
    finally:
        unsubscribe()
        await service.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for `python -m fieldsync`."""

    args = list(sys.argv[1:] if argv is None else argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


__all__ = ["build_router", "main", "prepare_configuration", "run", "run_command_line"]
