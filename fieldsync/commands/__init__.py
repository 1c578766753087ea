"""Operator command registry."""

from __future__ import annotations

from .help import COMMAND as HELP_COMMAND
from .login import COMMAND as LOGIN_COMMAND
from .pending import COMMAND as PENDING_COMMAND
from .status import COMMAND as STATUS_COMMAND
from .sync import COMMAND as SYNC_COMMAND
from .sync import FULLSYNC_COMMAND

COMMANDS = [
    STATUS_COMMAND,
    HELP_COMMAND,
    PENDING_COMMAND,
    SYNC_COMMAND,
    FULLSYNC_COMMAND,
    LOGIN_COMMAND,
]

__all__ = ["COMMANDS"]
