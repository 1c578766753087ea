"""Tenant isolation: wipe local state when the active tenant changes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from ..errors import FieldSyncError, TenantWipeError, ValidationError
from .queue import SyncQueue
from .store import LocalStore, SettingsArea

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle

logger = logging.getLogger("fieldsync.sync.tenant")

CURRENT_TENANT_KEY = "current_tenant_id"
PREVIOUS_TENANT_KEY = "previous_tenant_id"
TENANT_KEYS = (CURRENT_TENANT_KEY, PREVIOUS_TENANT_KEY)

DEFAULT_PRESERVED_KEYS = ("app_version", "app_installed", "update_prompt_shown")


@dataclass
class TenantSettings:
    preserved_keys: List[str] = field(default_factory=lambda: list(DEFAULT_PRESERVED_KEYS))

    @classmethod
    def from_bundle(cls, bundle: "ConfigurationBundle") -> "TenantSettings":
        raw = bundle.merged.get("tenant", {}) if bundle.merged else {}
        keys = raw.get("preserved_keys")
        if not isinstance(keys, list):
            return cls()
        return cls(preserved_keys=[str(key) for key in keys if str(key).strip()])


class SessionCache:
    """Per-process session state.

    The service records the signed-in tenant here on login; the tenant wipe
    clears it along with everything else.
    """

    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)


class TenantDataManager:
    """The only component allowed to bulk-delete the store and queue.

    The wipe runs under the lock shared with the sync orchestrator, and the
    previous tenant pointer moves only after every step succeeded, so an
    interrupted wipe is detected and resumed on the next boot.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        settings_area: Optional[SettingsArea] = None,
        session_cache: Optional[SessionCache] = None,
        lock: Optional[asyncio.Lock] = None,
        preserved_keys: Iterable[str] = DEFAULT_PRESERVED_KEYS,
    ) -> None:
        self.store = store
        self.queue = queue
        self.settings_area = settings_area if settings_area is not None else SettingsArea(store)
        self.session_cache = session_cache if session_cache is not None else SessionCache()
        self.lock = lock or asyncio.Lock()
        self.preserved_keys = tuple(preserved_keys)

    async def current_tenant(self) -> Optional[str]:
        return await self.settings_area.get(CURRENT_TENANT_KEY)

    async def previous_tenant(self) -> Optional[str]:
        return await self.settings_area.get(PREVIOUS_TENANT_KEY)

    async def handle_tenant_change(self, new_tenant_id: str) -> bool:
        """Record ``new_tenant_id`` as active, wiping local data if it changed.

        Returns whether a wipe happened.
        """

        tenant_id = (new_tenant_id or "").strip() if isinstance(new_tenant_id, str) else ""
        if not tenant_id:
            raise ValidationError("Tenant id must be a non-empty string")

        previous = await self.previous_tenant()
        await self.settings_area.set(CURRENT_TENANT_KEY, tenant_id)

        if previous is None or previous == tenant_id:
            await self.settings_area.set(PREVIOUS_TENANT_KEY, tenant_id)
            logger.debug("Tenant %s unchanged; no wipe needed", tenant_id)
            return False

        logger.info("Tenant changed from %s to %s; wiping local data", previous, tenant_id)
        await self._wipe(tenant_id)
        await self.settings_area.set(PREVIOUS_TENANT_KEY, tenant_id)
        logger.info("Tenant %s is now active", tenant_id)
        return True

    async def resume_interrupted_wipe(self) -> bool:
        """Finish a wipe left incomplete by a crash. Returns whether one ran."""

        current = await self.current_tenant()
        previous = await self.previous_tenant()
        if not current or previous is None or current == previous:
            return False
        logger.warning(
            "Found an unfinished wipe (current %s, previous %s); resuming", current, previous
        )
        return await self.handle_tenant_change(current)

    async def _wipe(self, tenant_id: str) -> None:
        preserve = set(self.preserved_keys) | set(TENANT_KEYS)
        async with self.lock:
            step = "records"
            try:
                removed = await self.store.clear_all()
                step = "sync queue"
                entries = await self.queue.clear()
                step = "session cache"
                self.session_cache.clear()
                step = "settings"
                await self.settings_area.clear(preserve=preserve)
            except FieldSyncError as exc:
                logger.exception("Wipe for tenant %s failed while clearing %s", tenant_id, step)
                raise TenantWipeError(f"Clearing {step} failed: {exc}") from exc
        logger.info(
            "Wiped %d record(s) and %d queue entr(y/ies) for tenant switch", removed, entries
        )


__all__ = [
    "CURRENT_TENANT_KEY",
    "PREVIOUS_TENANT_KEY",
    "SessionCache",
    "TenantDataManager",
    "TenantSettings",
]
