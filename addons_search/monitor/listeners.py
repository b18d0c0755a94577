from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .correlator import RedirectCorrelator
    from .host import Host
    from .patterns import PatternRegistry

_LOGGER = logging.getLogger("addons_search.monitor.listeners")


class ListenerManager:
    """(Re)installs the monitored-URL listeners from the current pattern set.

    The same callbacks are reused with a different URL filter every time the list of search
    engines changes, so each `monitor()` removes what it installed before.
    """

    def __init__(self, host: Host, registry: PatternRegistry, correlator: RedirectCorrelator) -> None:
        self._host = host
        self._registry = registry
        self._correlator = correlator
        self.installed_patterns: list[str] = []
        # Serializes reloads so the last engine list read is the one installed.
        self._lock = asyncio.Lock()

    def on_request_start(self, details: dict[str, Any]) -> None:
        # No-op. The host only keeps redirect metadata (the redirecting add-on) readable for
        # requests that have a request-start listener.
        return None

    async def monitor(self) -> list[str]:
        async with self._lock:
            self.stop()

            # Note: search suggestions are system requests, the host never reports them.
            await self._registry.refresh()
            patterns = self._registry.patterns

            if not patterns:
                _LOGGER.debug("not registering any listener because there is no URL to monitor")
                return []

            _LOGGER.debug("registering onBeforeRequest and onBeforeRedirect listeners patterns=%d", len(patterns))
            self._host.on_before_request.add_listener(self.on_request_start, patterns)
            self._host.on_before_redirect.add_listener(self._correlator.on_redirect, patterns)
            self.installed_patterns = list(patterns)
            return list(patterns)

    def stop(self) -> None:
        if self._host.on_before_request.has_listener(self.on_request_start):
            _LOGGER.debug("removing onBeforeRequest listener")
            self._host.on_before_request.remove_listener(self.on_request_start)
        if self._host.on_before_redirect.has_listener(self._correlator.on_redirect):
            _LOGGER.debug("removing onBeforeRedirect listener")
            self._host.on_before_redirect.remove_listener(self._correlator.on_redirect)
        self.installed_patterns = []
