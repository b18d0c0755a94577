"""Per-request redirect correlation.

A redirect observed on a monitored search URL is attributed either to the add-on that
performed it (the host tells us which one) or, when nobody claims it, to the search server of
the engine whose URL pattern matched. Same-domain server-side redirects are not conclusive:
the request is followed (`follow`) until a completion signal or the cleanup timer resolves it
(`unfollow`), then the first and last URLs of the chain decide.

State per request id:

    UNTRACKED -> FOLLOWING -> RESOLVED (entry removed)

Signals may be duplicated or arrive out of order (the follow listener and the monitored
redirect listener both fire for a hop on a monitored URL). Transitions are idempotent:
chains are only created when absent, a URL equal to the last recorded one is not appended,
and `unfollow` pops its entry before awaiting anything. A request is reported at most once:
a cross-domain hop on a followed request extends the chain instead of being reported
right away, unless an add-on performed it, in which case the chain is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit, urlunsplit

from .config import MonitorConfig
from .host import ALL_URLS
from .telemetry import (
    TELEMETRY_METHOD_ETLD_CHANGE,
    TELEMETRY_OBJECT_OTHER,
    TELEMETRY_OBJECT_WEBREQUEST,
    TELEMETRY_VALUE_EXTENSION,
    TELEMETRY_VALUE_SERVER,
    TelemetryEmitter,
    TelemetryEvent,
    etld_change_extra,
)

if TYPE_CHECKING:
    from .host import Host
    from .patterns import PatternRegistry

_LOGGER = logging.getLogger("addons_search.monitor.correlator")


def _brief(url: Any) -> str:
    """scheme://host/path only: search URLs carry the query in their query string."""
    if not isinstance(url, str):
        return repr(url)
    try:
        parts = urlsplit(url)
        netloc = parts.netloc.split("@", 1)[1] if "@" in parts.netloc else parts.netloc
        return urlunsplit((parts.scheme, netloc, parts.path, "", ""))
    except ValueError:
        return "<unparsable>"


@dataclass
class TrackedChain:
    addon_ids: list[str]
    chain: list[str]
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def append(self, url: str) -> bool:
        if self.chain and self.chain[-1] == url:
            return False
        self.chain.append(url)
        return True

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class RedirectCorrelator:
    def __init__(
        self,
        host: Host,
        registry: PatternRegistry,
        emitter: TelemetryEmitter,
        config: MonitorConfig | None = None,
    ) -> None:
        self._host = host
        self._registry = registry
        self._emitter = emitter
        self._config = config or MonitorConfig()
        self._tracked: dict[str, TrackedChain] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def cleanup_delay(self) -> float:
        return self._config.cleanup_delay_seconds()

    def is_tracked(self, request_id: str) -> bool:
        return request_id in self._tracked

    def tracked(self, request_id: str) -> TrackedChain | None:
        return self._tracked.get(request_id)

    def tracked_ids(self) -> list[str]:
        return list(self._tracked)

    # ─────────────────────────────────────────────────────────────────────────
    # Entry point (monitored redirect listener)
    # ─────────────────────────────────────────────────────────────────────────

    async def on_redirect(self, details: dict[str, Any]) -> list[TelemetryEvent]:
        request_id = details.get("requestId")
        url = details.get("url")
        redirect_url = details.get("redirectUrl")
        if request_id is None or not isinstance(url, str) or not isinstance(redirect_url, str):
            return []
        request_id = str(request_id)
        addon_id = details.get("addonId") or None

        # No add-on claimed the redirect and the URL changed: most likely a search
        # server-side redirect of an engine registered by an add-on.
        is_server_side = not addon_id and url != redirect_url

        if is_server_side:
            addon_ids = self._registry.lookup(url)
        elif addon_id:
            addon_ids = [str(addon_id)]
        else:
            addon_ids = []

        if not addon_ids:
            return []

        from_domain = await self._public_suffix(url)
        to_domain = await self._public_suffix(redirect_url)
        if from_domain is None or to_domain is None:
            return []

        if from_domain == to_domain:
            if is_server_side:
                self._start_following(request_id, addon_ids, url, redirect_url)
            return []

        entry = self._tracked.get(request_id)
        if entry is not None:
            if is_server_side:
                # Already followed: the chain reports it once, from its first URL.
                entry.append(redirect_url)
                self._start_following(request_id, entry.addon_ids, url, redirect_url)
                return []
            # An add-on took over a followed request; report that instead of the chain.
            self._forget(request_id)

        if is_server_side:
            obj, value = TELEMETRY_OBJECT_OTHER, TELEMETRY_VALUE_SERVER
        else:
            obj, value = TELEMETRY_OBJECT_WEBREQUEST, TELEMETRY_VALUE_EXTENSION
        return await self._report(addon_ids, obj, value, from_domain, to_domain)

    # ─────────────────────────────────────────────────────────────────────────
    # Chain following
    # ─────────────────────────────────────────────────────────────────────────

    def follow(self, details: dict[str, Any]) -> None:
        request_id = details.get("requestId")
        observed = details.get("redirectUrl") or details.get("url")
        if request_id is None or not isinstance(observed, str):
            return
        entry = self._tracked.get(str(request_id))
        if entry is None:
            return
        if entry.append(observed):
            _LOGGER.debug("following request=%s hop=%s", request_id, _brief(observed))

    def on_completed(self, details: dict[str, Any]) -> None:
        request_id = details.get("requestId")
        if request_id is None or str(request_id) not in self._tracked:
            return
        self._spawn(self.unfollow(str(request_id)))

    async def unfollow(self, request_id: str) -> list[TelemetryEvent]:
        entry = self._tracked.pop(request_id, None)
        if entry is None:
            return []
        entry.cancel_timer()
        if not self._tracked:
            self._remove_follow_listeners()

        first, last = entry.chain[0], entry.chain[-1]
        from_domain = await self._public_suffix(first)
        to_domain = await self._public_suffix(last)
        _LOGGER.debug(
            "unfollowing request=%s hops=%d from=%s to=%s", request_id, len(entry.chain), from_domain, to_domain
        )
        # A chain that comes back to its first domain is not reported, even when it went
        # through another domain in between.
        if from_domain is None or to_domain is None or from_domain == to_domain:
            return []
        return await self._report(
            entry.addon_ids, TELEMETRY_OBJECT_OTHER, TELEMETRY_VALUE_SERVER, from_domain, to_domain
        )

    def _start_following(self, request_id: str, addon_ids: list[str], url: str, redirect_url: str) -> None:
        entry = self._tracked.get(request_id)
        if entry is None:
            entry = TrackedChain(addon_ids=list(addon_ids), chain=[url, redirect_url])
            self._tracked[request_id] = entry
            _LOGGER.debug("start following request=%s from=%s", request_id, _brief(url))
        self._add_follow_listeners()

        entry.cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Without a loop nothing would ever resolve the chain.
            _LOGGER.warning("no running event loop, dropping request=%s", request_id)
            self._tracked.pop(request_id, None)
            return
        entry.timer = loop.call_later(self.cleanup_delay, self._on_timeout, request_id)

    def _forget(self, request_id: str) -> None:
        entry = self._tracked.pop(request_id, None)
        if entry is None:
            return
        entry.cancel_timer()
        if not self._tracked:
            self._remove_follow_listeners()

    def _on_timeout(self, request_id: str) -> None:
        entry = self._tracked.get(request_id)
        if entry is None:
            return
        entry.timer = None
        self._spawn(self.unfollow(request_id))

    def _add_follow_listeners(self) -> None:
        if not self._host.on_before_redirect.has_listener(self.follow):
            _LOGGER.debug("registering chain-following listeners")
            self._host.on_before_redirect.add_listener(self.follow, [ALL_URLS])
        if not self._host.on_completed.has_listener(self.on_completed):
            self._host.on_completed.add_listener(self.on_completed, [ALL_URLS])

    def _remove_follow_listeners(self) -> None:
        if self._host.on_before_redirect.has_listener(self.follow):
            _LOGGER.debug("removing chain-following listeners")
            self._host.on_before_redirect.remove_listener(self.follow)
        if self._host.on_completed.has_listener(self.on_completed):
            self._host.on_completed.remove_listener(self.on_completed)

    # ─────────────────────────────────────────────────────────────────────────
    # Reporting
    # ─────────────────────────────────────────────────────────────────────────

    async def _report(
        self, addon_ids: list[str], obj: str, value: str, from_domain: str, to_domain: str
    ) -> list[TelemetryEvent]:
        events: list[TelemetryEvent] = []
        for addon_id in addon_ids:
            addon_version = await self._addon_version(addon_id)
            if not addon_version:
                _LOGGER.debug("no version for addon=%s, not reporting", addon_id)
                continue
            extra = etld_change_extra(addon_id, addon_version, from_domain, to_domain)
            events.append(self._emitter.emit(TELEMETRY_METHOD_ETLD_CHANGE, obj, value, extra))
        return events

    async def _public_suffix(self, url: str) -> str | None:
        try:
            domain = await self._host.get_public_suffix(url)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("public suffix lookup failed url=%s: %s", _brief(url), exc)
            return None
        return domain if isinstance(domain, str) and domain else None

    async def _addon_version(self, addon_id: str) -> str | None:
        try:
            version = await self._host.get_addon_version(addon_id)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("add-on version lookup failed addon=%s: %s", addon_id, exc)
            return None
        return str(version) if version else None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for scheduled resolutions (timeouts, completion signals) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stop(self) -> None:
        for entry in self._tracked.values():
            entry.cancel_timer()
        self._tracked.clear()
        self._remove_follow_listeners()
        for task in list(self._tasks):
            task.cancel()
