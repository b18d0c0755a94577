from __future__ import annotations

import os
from dataclasses import dataclass

# Delay before a followed server-side redirect chain is force-resolved.
DEFAULT_CLEANUP_DELAY = 5.0
DEBUG_CLEANUP_DELAY = 1.0

DEFAULT_GATEWAY_HOST = "127.0.0.1"
DEFAULT_GATEWAY_PORT = 8766
DEFAULT_RPC_TIMEOUT = 5.0


def _env_flag(raw: str | None) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_float(raw: str | None, *, default: float, min_v: float = 0.0) -> float:
    try:
        if raw is None or not raw.strip():
            raise ValueError
        value = float(raw.strip())
    except ValueError:
        return default
    if value != value or value < min_v:  # NaN or out of range
        return default
    return value


def _env_int(raw: str | None, *, default: int, min_v: int, max_v: int) -> int:
    try:
        value = int((raw or "").strip())
    except ValueError:
        return default
    if value < min_v or value > max_v:
        return default
    return value


@dataclass
class MonitorConfig:
    debug: bool = False
    cleanup_delay: float | None = None
    gateway_host: str = DEFAULT_GATEWAY_HOST
    gateway_port: int = DEFAULT_GATEWAY_PORT
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT
    expected_extension_id: str | None = None
    log_level: str = "INFO"

    @staticmethod
    def normalize_log_level(raw: str | None, *, debug: bool = False) -> str:
        level = (raw or "").strip().upper()
        if level in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return level
        if level == "WARN":
            return "WARNING"
        return "DEBUG" if debug else "INFO"

    def cleanup_delay_seconds(self) -> float:
        if self.cleanup_delay is not None and self.cleanup_delay >= 0:
            return float(self.cleanup_delay)
        return DEBUG_CLEANUP_DELAY if self.debug else DEFAULT_CLEANUP_DELAY

    @classmethod
    def from_env(cls) -> MonitorConfig:
        debug = _env_flag(os.environ.get("ADDONS_SEARCH_DEBUG"))
        raw_delay = os.environ.get("ADDONS_SEARCH_CLEANUP_DELAY")
        delay = _env_float(raw_delay, default=-1.0)
        host = (os.environ.get("ADDONS_SEARCH_HOST") or "").strip() or DEFAULT_GATEWAY_HOST
        port = _env_int(os.environ.get("ADDONS_SEARCH_PORT"), default=DEFAULT_GATEWAY_PORT, min_v=1, max_v=65535)
        rpc_timeout = _env_float(os.environ.get("ADDONS_SEARCH_RPC_TIMEOUT"), default=DEFAULT_RPC_TIMEOUT, min_v=0.1)
        ext_id = (os.environ.get("ADDONS_SEARCH_EXTENSION_ID") or "").strip() or None
        return cls(
            debug=debug,
            cleanup_delay=delay if delay >= 0 else None,
            gateway_host=host,
            gateway_port=port,
            rpc_timeout=rpc_timeout,
            expected_extension_id=ext_id,
            log_level=cls.normalize_log_level(os.environ.get("ADDONS_SEARCH_LOG_LEVEL"), debug=debug),
        )
