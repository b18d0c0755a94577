"""eTLD+1 change telemetry.

Stateless: every event is formatted and handed to the host sink right away. Recording is
best-effort; a failing sink is logged and never retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .host import Host

_LOGGER = logging.getLogger("addons_search.monitor.telemetry")

TELEMETRY_CATEGORY = "addonsSearchExperiment"
# methods
TELEMETRY_METHOD_ETLD_CHANGE = "etld_change"
# objects
TELEMETRY_OBJECT_WEBREQUEST = "webrequest"
TELEMETRY_OBJECT_OTHER = "other"
# values
TELEMETRY_VALUE_EXTENSION = "extension"
TELEMETRY_VALUE_SERVER = "server"

TELEMETRY_EXTRA_KEYS = ["addonId", "addonVersion", "from", "to"]


def event_schema() -> dict[str, Any]:
    return {
        TELEMETRY_METHOD_ETLD_CHANGE: {
            "methods": [TELEMETRY_METHOD_ETLD_CHANGE],
            "objects": [TELEMETRY_OBJECT_WEBREQUEST, TELEMETRY_OBJECT_OTHER],
            "extra_keys": list(TELEMETRY_EXTRA_KEYS),
            "record_on_release": True,
        }
    }


@dataclass(frozen=True)
class TelemetryEvent:
    method: str
    object: str
    value: str
    extra: dict[str, str]
    category: str = TELEMETRY_CATEGORY

    def as_record(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "method": self.method,
            "object": self.object,
            "value": self.value,
            "extra": dict(self.extra),
        }


def etld_change_extra(addon_id: str, addon_version: str, from_domain: str, to_domain: str) -> dict[str, str]:
    return {"addonId": addon_id, "addonVersion": addon_version, "from": from_domain, "to": to_domain}


class TelemetryEmitter:
    def __init__(self, host: Host, *, category: str = TELEMETRY_CATEGORY) -> None:
        self._host = host
        self.category = category

    def register(self) -> bool:
        _LOGGER.debug("registering telemetry events")
        try:
            self._host.register_events(self.category, event_schema())
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("failed to register telemetry events: %s", exc)
            return False
        return True

    def emit(self, method: str, obj: str, value: str, extra: dict[str, str]) -> TelemetryEvent:
        event = TelemetryEvent(method=method, object=obj, value=value, extra=dict(extra), category=self.category)
        _LOGGER.debug("recording event: method=%s object=%s value=%s extra=%s", method, obj, value, event.extra)
        try:
            self._host.record_event(self.category, method, obj, value, dict(event.extra))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("failed to record event method=%s object=%s: %s", method, obj, exc)
        return event
