"""Monitored URL patterns and the add-ons that own them.

Each registered search engine contributes one pattern per URL template: the template without
its query string, followed by `*`. `PatternRegistry.lookup()` splits on that `*` to recover
the URL prefix, so both sides must agree on the format.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .host import Host

_LOGGER = logging.getLogger("addons_search.monitor.patterns")

WILDCARD = "*"


@dataclass(frozen=True)
class SearchEngine:
    extension_id: str
    url_templates: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> SearchEngine | None:
        ext_id = raw.get("extensionId") or raw.get("extension_id")
        templates = raw.get("urls") or raw.get("url_templates") or []
        if not isinstance(ext_id, str) or not ext_id.strip():
            return None
        if isinstance(templates, str):
            templates = [templates]
        cleaned = tuple(t for t in templates if isinstance(t, str) and t.strip())
        return cls(extension_id=ext_id.strip(), url_templates=cleaned)


def pattern_for_template(template: str) -> str:
    return template.split("?")[0] + WILDCARD


def build_match_patterns(engines: Iterable[SearchEngine | Mapping[str, Any]]) -> dict[str, list[str]]:
    """Map each URL pattern to the ids of the add-ons whose engines produce it.

    Several engines can end up with the same pattern, hence a list of ids per pattern.
    """
    patterns: dict[str, list[str]] = {}
    for raw in engines or []:
        if isinstance(raw, SearchEngine):
            engine: SearchEngine | None = raw
        elif isinstance(raw, Mapping):
            engine = SearchEngine.from_dict(raw)
        else:
            engine = None
        if engine is None:
            continue
        for template in engine.url_templates:
            ids = patterns.setdefault(pattern_for_template(template), [])
            if engine.extension_id not in ids:
                ids.append(engine.extension_id)
    return patterns


class PatternRegistry:
    def __init__(self, host: Host) -> None:
        self._host = host
        self._patterns: dict[str, list[str]] = {}

    def __len__(self) -> int:
        return len(self._patterns)

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def snapshot(self) -> dict[str, list[str]]:
        return {k: list(v) for k, v in self._patterns.items()}

    async def refresh(self) -> dict[str, list[str]]:
        try:
            raw = await self._host.get_match_patterns()
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("failed to retrieve the list of URL patterns: %s", exc)
            raw = {}

        fresh: dict[str, list[str]] = {}
        if isinstance(raw, Mapping):
            for pattern, ids in raw.items():
                if not isinstance(pattern, str) or WILDCARD not in pattern:
                    continue
                if isinstance(ids, str):
                    ids = [ids]
                if not isinstance(ids, (list, tuple)):
                    continue
                fresh[pattern] = [i for i in ids if isinstance(i, str) and i]
        elif raw:
            _LOGGER.error("unexpected URL pattern payload type=%s", type(raw).__name__)

        # Swap, never mutate in place: lookups in flight keep seeing a complete map.
        self._patterns = fresh
        return self.snapshot()

    def lookup(self, url: str) -> list[str]:
        if not isinstance(url, str):
            return []
        for pattern, ids in self._patterns.items():
            prefix = pattern.split(WILDCARD, 1)[0]
            if url.startswith(prefix):
                return list(ids)
        return []
