from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .config import MonitorConfig
from .correlator import RedirectCorrelator
from .listeners import ListenerManager
from .patterns import PatternRegistry
from .telemetry import TelemetryEmitter

if TYPE_CHECKING:
    from .host import Host

_LOGGER = logging.getLogger("addons_search.monitor.experiment")

# Search engine modifications that change the set of monitored URLs.
RELOAD_ENGINE_MODIFICATIONS = frozenset({"engine-added", "engine-removed"})


class AddonsSearchExperiment:
    """Owns the monitor for one host: patterns, tracked chains, listeners and telemetry."""

    def __init__(self, host: Host, config: MonitorConfig | None = None) -> None:
        self.host = host
        self.config = config or MonitorConfig()
        self.registry = PatternRegistry(host)
        self.emitter = TelemetryEmitter(host)
        self.correlator = RedirectCorrelator(host, self.registry, self.emitter, self.config)
        self.listeners = ListenerManager(host, self.registry, self.correlator)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.emitter.register()
        if not self.host.on_search_engine_modified.has_listener(self.on_search_engine_modified):
            self.host.on_search_engine_modified.add_listener(self.on_search_engine_modified)
        await self.monitor()

    async def monitor(self) -> list[str]:
        return await self.listeners.monitor()

    async def on_search_engine_modified(self, details: Any) -> bool:
        kind = details.get("type") if isinstance(details, dict) else details
        if kind not in RELOAD_ENGINE_MODIFICATIONS:
            return False
        _LOGGER.info("search engines changed (%s), reloading URL patterns", kind)
        await self.monitor()
        return True

    def stop(self) -> None:
        if self.host.on_search_engine_modified.has_listener(self.on_search_engine_modified):
            self.host.on_search_engine_modified.remove_listener(self.on_search_engine_modified)
        self.listeners.stop()
        self.correlator.stop()
        self._started = False
