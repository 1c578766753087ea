"""Wires the sync subsystem together and owns its lifecycle."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .configuration import ConfigurationBundle
from .sync.connectivity import ConnectivityMonitor, ConnectivitySettings, Probe
from .sync.gateway import GatewaySettings, HttpGateway, RemoteGateway
from .sync.models import FullSyncResult
from .sync.orchestrator import LAST_SYNC_TIME_KEY, SyncOrchestrator, SyncSettings
from .sync.queue import SyncQueue
from .sync.scheduler import AsyncioScheduler, Scheduler
from .sync.store import LocalStore, SettingsArea, StoreSettings, utcnow
from .sync.tenant import SessionCache, TenantDataManager, TenantSettings
from .sync.writer import RecordWriter

logger = logging.getLogger("fieldsync.service")

SESSION_TENANT_KEY = "tenant"


class FieldSyncService:
    """One instance per process; tests build as many isolated ones as they like."""

    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway,
        monitor: ConnectivityMonitor,
        *,
        sync_settings: Optional[SyncSettings] = None,
        tenant_settings: Optional[TenantSettings] = None,
        scheduler: Optional[Scheduler] = None,
        clock=None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.monitor = monitor
        self.lock = asyncio.Lock()
        self.settings_area = SettingsArea(store)
        self.queue = SyncQueue(store)
        self.session_cache = SessionCache()
        self.writer = RecordWriter(store, self.queue, is_online=lambda: monitor.is_online)
        self.orchestrator = SyncOrchestrator(
            store,
            self.queue,
            gateway,
            monitor,
            settings=sync_settings,
            scheduler=scheduler or AsyncioScheduler(),
            clock=clock,
            lock=self.lock,
            settings_area=self.settings_area,
        )
        tenant_settings = tenant_settings or TenantSettings()
        self.tenants = TenantDataManager(
            store,
            self.queue,
            settings_area=self.settings_area,
            session_cache=self.session_cache,
            lock=self.lock,
            preserved_keys=tenant_settings.preserved_keys,
        )
        self._clock = clock or utcnow
        self._started = False

    @classmethod
    def from_bundle(
        cls,
        bundle: ConfigurationBundle,
        gateway: Optional[RemoteGateway] = None,
        probe: Optional[Probe] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> "FieldSyncService":
        store = LocalStore(StoreSettings.from_bundle(bundle).path)
        gateway = gateway or HttpGateway(GatewaySettings.from_bundle(bundle))
        connectivity = ConnectivitySettings.from_bundle(bundle)
        if probe is None and not connectivity.probe_url:
            # Derived from the gateway so it follows the active tenant.
            def probe() -> Any:
                return gateway.healthcheck(timeout=connectivity.probe_timeout)

        monitor = ConnectivityMonitor(probe=probe, settings=connectivity)
        return cls(
            store,
            gateway,
            monitor,
            sync_settings=SyncSettings.from_bundle(bundle),
            tenant_settings=TenantSettings.from_bundle(bundle),
            scheduler=scheduler,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, raw_online: bool = True) -> None:
        await self.store.init()
        tenant = await self.tenants.current_tenant()
        if tenant:
            self.gateway.tenant_id = tenant
        await self.tenants.resume_interrupted_wipe()
        await self.orchestrator.init()
        await self.monitor.start(raw_online=raw_online)
        self._started = True
        logger.info("FieldSync service started (tenant: %s)", tenant or "none")

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.orchestrator.destroy()
        await self.gateway.aclose()
        await self.store.close()
        self._started = False
        logger.info("FieldSync service stopped")

    async def login(self, tenant_id: str) -> Dict[str, Any]:
        """Switch to ``tenant_id``, refresh reference data and push pending work."""

        wiped = await self.tenants.handle_tenant_change(tenant_id)
        tenant_id = tenant_id.strip()
        self.gateway.tenant_id = tenant_id
        if wiped:
            await self.orchestrator.reset_session()
        self.session_cache.set(
            SESSION_TENANT_KEY, {"id": tenant_id, "signed_in_at": self._clock().isoformat()}
        )
        first_access = wiped or await self.settings_area.get(LAST_SYNC_TIME_KEY) is None
        full: FullSyncResult = await self.orchestrator.perform_full_sync(is_first_access=first_access)
        synced = await self.orchestrator.check_and_sync()
        return {"wiped": wiped, "full_sync": full.to_dict(), "synced": synced}

    async def pending_count(self) -> int:
        return await self.queue.pending_count()

    async def status(self) -> Dict[str, Any]:
        snapshot = self.orchestrator.status()
        snapshot["pending"] = await self.pending_count()
        snapshot["tenant"] = await self.tenants.current_tenant()
        signed_in = self.session_cache.get(SESSION_TENANT_KEY) or {}
        snapshot["signed_in_at"] = signed_in.get("signed_in_at")
        return snapshot


__all__ = ["FieldSyncService"]
