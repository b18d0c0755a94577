"""Host interface consumed by the monitor.

The monitor never talks to a browser directly. Everything it needs (search
engines, public suffixes, add-on versions, request-pipeline events and the
telemetry sink) goes through an object implementing `Host`:

- `ExtensionGateway` (gateway.py): a companion browser extension over a local WebSocket.
- `InMemoryHost` (below): in-process, for embedding and replaying recorded signals.
"""

from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .domains import PublicSuffixResolver
from .patterns import build_match_patterns

_LOGGER = logging.getLogger("addons_search.monitor.host")

ALL_URLS = "<all_urls>"

Listener = Callable[[dict[str, Any]], Any]


class HostError(Exception):
    pass


_PATTERN_CACHE: dict[str, re.Pattern[str]] = {}


def url_matches(pattern: str, url: str) -> bool:
    """Match a URL against a match pattern (`*` wildcard, anchored)."""
    if pattern == ALL_URLS:
        return True
    if not isinstance(url, str):
        return False
    rx = _PATTERN_CACHE.get(pattern)
    if rx is None:
        rx = re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$", re.S)
        _PATTERN_CACHE[pattern] = rx
    return rx.match(url) is not None


class EventChannel:
    """A host event with WebExtension-style add/has/remove listener semantics."""

    def __init__(self, name: str, *, on_change: Callable[[EventChannel], None] | None = None) -> None:
        self.name = name
        self.on_change = on_change
        self._listeners: list[tuple[Listener, list[str] | None]] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def has_listener(self, callback: Listener) -> bool:
        return any(cb == callback for cb, _urls in self._listeners)

    def add_listener(self, callback: Listener, urls: Iterable[str] | None = None) -> None:
        url_list = list(urls) if urls is not None else None
        for i, (cb, _urls) in enumerate(self._listeners):
            if cb == callback:
                self._listeners[i] = (callback, url_list)
                break
        else:
            self._listeners.append((callback, url_list))
        self._changed()

    def remove_listener(self, callback: Listener) -> None:
        before = len(self._listeners)
        self._listeners = [(cb, urls) for cb, urls in self._listeners if cb != callback]
        if len(self._listeners) != before:
            self._changed()

    def filters(self) -> list[str]:
        """Union of the URL filters of every listener (order preserved)."""
        out: list[str] = []
        for _cb, urls in self._listeners:
            for u in urls if urls is not None else [ALL_URLS]:
                if u not in out:
                    out.append(u)
        return out

    async def dispatch(self, details: dict[str, Any]) -> None:
        url = details.get("url") if isinstance(details, dict) else None
        for callback, urls in list(self._listeners):
            if urls is not None and not any(url_matches(p, url) for p in urls):
                continue
            try:
                result = callback(details)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                _LOGGER.exception("listener failed event=%s", self.name)

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self)
        except Exception:
            _LOGGER.exception("listener change hook failed event=%s", self.name)


class Host(Protocol):
    on_before_request: EventChannel
    on_before_redirect: EventChannel
    on_completed: EventChannel
    on_search_engine_modified: EventChannel

    async def get_match_patterns(self) -> dict[str, list[str]]: ...

    async def get_public_suffix(self, url: str) -> str | None: ...

    async def get_addon_version(self, addon_id: str) -> str | None: ...

    def register_events(self, category: str, events: dict[str, Any]) -> None: ...

    def record_event(self, category: str, method: str, obj: str, value: str, extra: dict[str, str]) -> None: ...


@dataclass
class InMemoryHost:
    """Host backed by plain Python data.

    `engines` are the search engines reported by the host browser, `versions` maps add-on ids to
    versions, and every recorded telemetry event lands in `events`.
    """

    engines: list[Any] = field(default_factory=list)
    versions: dict[str, str] = field(default_factory=dict)
    resolver: PublicSuffixResolver = field(default_factory=PublicSuffixResolver)
    events: list[dict[str, Any]] = field(default_factory=list)
    registered: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.on_before_request = EventChannel("webRequest.onBeforeRequest")
        self.on_before_redirect = EventChannel("webRequest.onBeforeRedirect")
        self.on_completed = EventChannel("webRequest.onCompleted")
        self.on_search_engine_modified = EventChannel("search.onEngineModified")

    async def get_match_patterns(self) -> dict[str, list[str]]:
        return build_match_patterns(self.engines)

    async def get_public_suffix(self, url: str) -> str | None:
        return self.resolver.registrable_domain(url)

    async def get_addon_version(self, addon_id: str) -> str | None:
        return self.versions.get(addon_id)

    def register_events(self, category: str, events: Mapping[str, Any]) -> None:
        self.registered[category] = dict(events)

    def record_event(self, category: str, method: str, obj: str, value: str, extra: dict[str, str]) -> None:
        self.events.append({"category": category, "method": method, "object": obj, "value": value, "extra": extra})

    # Replay helpers: deliver recorded signals the way a browser would.

    async def redirect(self, request_id: str, url: str, redirect_url: str, addon_id: str | None = None) -> None:
        details: dict[str, Any] = {"requestId": request_id, "url": url, "redirectUrl": redirect_url}
        if addon_id:
            details["addonId"] = addon_id
        await self.on_before_redirect.dispatch(details)

    async def complete(self, request_id: str, url: str) -> None:
        await self.on_completed.dispatch({"requestId": request_id, "url": url})

    async def engine_modified(self, kind: str) -> None:
        await self.on_search_engine_modified.dispatch({"type": kind})
