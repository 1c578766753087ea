"""Network reachability tracking with debounced, probe-confirmed transitions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import httpx

from .events import EventBus, Handler, Unsubscribe

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle

logger = logging.getLogger("fieldsync.sync.connectivity")

Probe = Callable[[], Awaitable[bool]]


class ConnectivityEvent(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass
class ConnectivitySettings:
    probe_url: str = ""
    probe_timeout: float = 3.0
    probe_interval: float = 30.0
    debounce: float = 1.0

    @classmethod
    def from_bundle(cls, bundle: "ConfigurationBundle") -> "ConnectivitySettings":
        raw = bundle.merged.get("connectivity", {}) if bundle.merged else {}
        defaults = cls()
        return cls(
            probe_url=str(raw.get("probe_url") or ""),
            probe_timeout=_positive(raw.get("probe_timeout"), defaults.probe_timeout),
            probe_interval=_positive(raw.get("probe_interval"), defaults.probe_interval),
            debounce=_non_negative(raw.get("debounce"), defaults.debounce),
        )


def _positive(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _non_negative(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 0 else default


class HttpProbe:
    """Lightweight reachability check: a HEAD request that must answer below 500."""

    def __init__(
        self,
        url: str,
        timeout: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    async def __call__(self) -> bool:
        try:
            if self._client is not None:
                response = await self._client.head(self.url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.head(self.url)
        except httpx.HTTPError as exc:
            logger.debug("Probe %s failed: %s", self.url, exc)
            return False
        return response.status_code < 500


class ConnectivityMonitor:
    """Maintains ``is_online`` and emits edge-triggered transition events.

    The raw platform signal is trusted for going offline. Going online needs
    the raw signal to stay up for ``debounce`` seconds and a successful probe.
    A background loop re-probes every ``probe_interval`` seconds to catch
    outages the raw signal misses.
    """

    def __init__(
        self,
        probe: Optional[Probe] = None,
        settings: Optional[ConnectivitySettings] = None,
    ) -> None:
        self.settings = settings or ConnectivitySettings()
        if probe is None and self.settings.probe_url:
            probe = HttpProbe(self.settings.probe_url, self.settings.probe_timeout)
        self._probe = probe
        self.events: EventBus[ConnectivityEvent] = EventBus("connectivity")
        self._raw_online = False
        self._online = False
        self._debounce_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def raw_online(self) -> bool:
        return self._raw_online

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def subscribe(self, handler: Handler) -> Unsubscribe:
        return self.events.subscribe(handler)

    async def start(self, raw_online: bool = True) -> bool:
        """Seed from the raw signal, probe once and launch the re-probe loop.

        The seeded state is not announced; only later transitions are.
        """

        self._raw_online = raw_online
        self._online = await self._run_probe() if raw_online else False
        logger.info("Connectivity monitor started (%s)", "online" if self._online else "offline")
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.ensure_future(self._reprobe_loop())
        return self._online

    async def stop(self) -> None:
        for task in (self._debounce_task, self._loop_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._debounce_task = None
        self._loop_task = None

    def report_raw_status(self, online: bool) -> None:
        """Platform hook for link-layer up/down notifications."""

        self._raw_online = online
        self._cancel_debounce()
        if not online:
            self._set(False)
            return
        self._debounce_task = asyncio.ensure_future(self._debounced_probe())

    async def check_now(self) -> bool:
        """Probe immediately and apply the result."""

        if not self._raw_online:
            self._set(False)
            return False
        reachable = await self._run_probe()
        # The raw signal may have dropped while the probe was in flight.
        if self._raw_online:
            self._set(reachable)
        return self._online

    async def _debounced_probe(self) -> None:
        await asyncio.sleep(self.settings.debounce)
        await self.check_now()

    async def _reprobe_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.probe_interval)
            if not self._raw_online:
                continue
            try:
                await self.check_now()
            except Exception:
                logger.exception("Periodic reachability check failed")

    async def _run_probe(self) -> bool:
        if self._probe is None:
            return True
        try:
            return bool(await asyncio.wait_for(self._probe(), timeout=self.settings.probe_timeout))
        except asyncio.TimeoutError:
            logger.debug("Reachability probe timed out after %.1fs", self.settings.probe_timeout)
            return False
        except Exception as exc:
            logger.warning("Reachability probe raised %s: %s", type(exc).__name__, exc)
            return False

    def _cancel_debounce(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    def _set(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        event = ConnectivityEvent.ONLINE if online else ConnectivityEvent.OFFLINE
        logger.info("Connectivity changed: %s", event.value)
        self.events.emit(event)


__all__ = [
    "ConnectivityEvent",
    "ConnectivityMonitor",
    "ConnectivitySettings",
    "HttpProbe",
    "Probe",
]
