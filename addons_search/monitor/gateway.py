from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .domains import PublicSuffixResolver
from .host import EventChannel, HostError
from .patterns import build_match_patterns

GATEWAY_PROTOCOL_VERSION = "2026-10-01"

_LOGGER = logging.getLogger("addons_search.monitor.gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The extension gateway requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


@dataclass(frozen=True)
class ExtensionClientInfo:
    extension_id: str
    extension_version: str | None = None


class ExtensionGateway:
    """Local WebSocket gateway for the companion browser extension; implements `Host`.

    The extension owns the privileged side (webRequest listeners, the search service, the
    add-on manager, the telemetry recorder) and talks to this process with small JSON frames:

    - extension -> gateway: hello, event {name, details}, rpcResult, ping
    - gateway -> extension: helloAck, listeners {event, urls}, rpc, telemetry, pong

    Everything runs on the caller's event loop. Incoming events are dispatched as tasks so a
    listener awaiting an RPC never blocks the receive loop that delivers the RPC result.
    """

    def __init__(
        self,
        *,
        host: str | None = None,
        port: int | None = None,
        expected_extension_id: str | None = None,
        rpc_timeout: float = 5.0,
        resolver: PublicSuffixResolver | None = None,
        on_connected: Callable[[ExtensionClientInfo], Awaitable[None] | None] | None = None,
    ) -> None:
        self.host = (host or "127.0.0.1").strip() or "127.0.0.1"
        self.port = int(port or 8766)
        self.expected_extension_id = (expected_extension_id or "").strip() or None
        self.rpc_timeout = max(0.1, float(rpc_timeout))
        self.on_connected = on_connected
        self._resolver = resolver or PublicSuffixResolver()

        self.on_before_request = EventChannel("webRequest.onBeforeRequest", on_change=self._on_listeners_changed)
        self.on_before_redirect = EventChannel("webRequest.onBeforeRedirect", on_change=self._on_listeners_changed)
        self.on_completed = EventChannel("webRequest.onCompleted", on_change=self._on_listeners_changed)
        self.on_search_engine_modified = EventChannel("search.onEngineModified")
        self._channels = {
            ch.name: ch
            for ch in (
                self.on_before_request,
                self.on_before_redirect,
                self.on_completed,
                self.on_search_engine_modified,
            )
        }

        # NOTE: typed as Any to avoid coupling to a websockets protocol class across versions.
        self._server: Any | None = None
        self._ws: Any | None = None
        self._client: ExtensionClientInfo | None = None
        self._connected = asyncio.Event()

        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._server is not None:
            return
        websockets = _import_websockets()
        try:
            self._server = await websockets.serve(
                self._handler,
                self.host,
                self.port,
                # Some extension contexts omit Origin on localhost connects; allow it.
                origins=[
                    None,
                    re.compile(r"^null$"),
                    re.compile(r"^moz-extension://[0-9a-fA-F-]{36}/?$"),
                    re.compile(r"^chrome-extension://[a-p]{32}/?$"),
                ],
                max_size=2_000_000,
                ping_interval=None,
            )
        except OSError as exc:
            raise HostError(f"Extension gateway bind failed on {self.host}:{self.port}: {exc}") from exc

        with contextlib.suppress(Exception):
            sockets = list(getattr(self._server, "sockets", None) or [])
            if sockets:
                self.port = int(sockets[0].getsockname()[1])
        _LOGGER.info("gateway listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        srv = self._server
        self._server = None
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        if srv is not None:
            with contextlib.suppress(Exception):
                srv.close()
                await srv.wait_closed()
        self._disconnect()
        for task in list(self._tasks):
            task.cancel()

    def status(self) -> dict[str, Any]:
        client = self._client
        return {
            "listening": self._server is not None,
            "host": self.host,
            "port": self.port,
            "connected": self._ws is not None,
            "client": (
                {"extensionId": client.extension_id, "extensionVersion": client.extension_version}
                if client is not None
                else None
            ),
            "listeners": {name: ch.filters() for name, ch in self._channels.items() if len(ch)},
        }

    def is_connected(self) -> bool:
        return self._ws is not None

    async def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Host interface
    # ─────────────────────────────────────────────────────────────────────────

    async def get_match_patterns(self) -> dict[str, list[str]]:
        engines = await self.rpc_call("search.getEngines")
        if isinstance(engines, dict):
            # Extensions may hand over a ready-made pattern map.
            return {str(k): list(v) for k, v in engines.items() if isinstance(v, list)}
        if not isinstance(engines, list):
            raise HostError(f"search.getEngines returned {type(engines).__name__}")
        return build_match_patterns(engines)

    async def get_public_suffix(self, url: str) -> str | None:
        return self._resolver.registrable_domain(url)

    async def get_addon_version(self, addon_id: str) -> str | None:
        version = await self.rpc_call("addons.getVersion", {"addonId": addon_id})
        return str(version) if isinstance(version, (str, int, float)) and str(version) else None

    def register_events(self, category: str, events: dict[str, Any]) -> None:
        self._send_soon({"type": "telemetry", "op": "registerEvents", "category": category, "events": events})

    def record_event(self, category: str, method: str, obj: str, value: str, extra: dict[str, str]) -> None:
        self._send_soon(
            {
                "type": "telemetry",
                "op": "recordEvent",
                "category": category,
                "method": method,
                "object": obj,
                "value": value,
                "extra": extra,
            }
        )

    # ─────────────────────────────────────────────────────────────────────────
    # RPC
    # ─────────────────────────────────────────────────────────────────────────

    async def rpc_call(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        if not isinstance(method, str) or not method.strip():
            raise HostError("Extension RPC method is required")
        ws = self._ws
        if ws is None:
            raise HostError("Extension is not connected")

        req_id = self._next_id
        self._next_id += 1
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut

        msg: dict[str, Any] = {"type": "rpc", "id": req_id, "method": method}
        if isinstance(params, dict) and params:
            msg["params"] = params

        try:
            try:
                await self._ws_send_json(ws, msg)
            except Exception as exc:  # noqa: BLE001
                raise HostError(f"Extension RPC send failed: {exc}") from exc
            try:
                return await asyncio.wait_for(fut, timeout=self.rpc_timeout if timeout is None else timeout)
            except asyncio.TimeoutError as exc:
                raise HostError(f"Extension RPC timed out: method={method}") from exc
        finally:
            self._pending.pop(req_id, None)

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, ws) -> None:  # type: ignore[no-untyped-def]
        # Expect hello as first message.
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=2.5)
        except Exception:  # noqa: BLE001
            _LOGGER.warning("extension hello timeout")
            return

        try:
            hello = json.loads(raw)
        except (TypeError, ValueError):
            hello = None

        if not isinstance(hello, dict) or hello.get("type") != "hello":
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="expected hello")
            return

        ext_id = str(hello.get("extensionId") or "").strip()
        if not ext_id:
            with contextlib.suppress(Exception):
                await ws.close(code=1002, reason="missing extensionId")
            return

        if self.expected_extension_id is not None and ext_id != self.expected_extension_id:
            with contextlib.suppress(Exception):
                await ws.close(code=1008, reason="unexpected extensionId")
            return

        client = ExtensionClientInfo(
            extension_id=ext_id,
            extension_version=str(hello.get("extensionVersion") or "") or None,
        )

        # Replace the active client (background scripts can reconnect often).
        previous = self._ws
        if previous is not None and previous is not ws:
            self._disconnect()
            with contextlib.suppress(Exception):
                await previous.close(code=1000, reason="replaced")
        self._ws = ws
        self._client = client

        try:
            await self._ws_send_json(ws, {"type": "helloAck", "protocolVersion": GATEWAY_PROTOCOL_VERSION})
            for channel in self._channels.values():
                if channel is not self.on_search_engine_modified:
                    await self._ws_send_json(ws, self._listeners_frame(channel))
        except Exception:  # noqa: BLE001
            if self._ws is ws:
                self._disconnect()
            return

        self._connected.set()
        _LOGGER.info("extension connected id=%s version=%s", ext_id, client.extension_version)
        if self.on_connected is not None:
            self._spawn(self._call_hook(self.on_connected, client))

        try:
            async for raw_msg in ws:
                try:
                    msg = json.loads(raw_msg)
                except (TypeError, ValueError):
                    continue
                await self._on_message(msg)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("extension connection closed: %s", exc)
        finally:
            if self._ws is ws:
                self._disconnect()
                _LOGGER.info("extension disconnected id=%s", ext_id)

    async def _on_message(self, msg: Any) -> None:
        if not isinstance(msg, dict):
            return

        mtype = msg.get("type")

        if mtype == "rpcResult":
            try:
                req_id = int(msg.get("id"))
            except (TypeError, ValueError):
                return
            fut = self._pending.get(req_id)
            if fut is None or fut.done():
                return
            if msg.get("ok"):
                fut.set_result(msg.get("result"))
                return
            err = msg.get("error")
            err_msg = err.get("message") if isinstance(err, dict) else err
            if not isinstance(err_msg, str):
                err_msg = None
            fut.set_exception(HostError(err_msg or "Extension RPC failed"))
            return

        if mtype == "event":
            channel = self._channels.get(str(msg.get("name") or ""))
            details = msg.get("details")
            if channel is None or not isinstance(details, dict):
                return
            self._spawn(channel.dispatch(details))
            return

        if mtype == "ping":
            ws = self._ws
            if ws is None:
                return
            with contextlib.suppress(Exception):
                await self._ws_send_json(ws, {"type": "pong", "ts": _now_ms()})
            return

    def _listeners_frame(self, channel: EventChannel) -> dict[str, Any]:
        return {"type": "listeners", "event": channel.name, "urls": channel.filters()}

    def _on_listeners_changed(self, channel: EventChannel) -> None:
        if self._ws is None:
            return
        self._send_soon(self._listeners_frame(channel))

    def _send_soon(self, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise HostError("Extension is not connected")
        self._spawn(self._ws_send_json(ws, payload))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.warning("gateway task failed: %s", exc)

    async def _call_hook(self, hook: Callable[..., Any], *args: Any) -> None:
        result = hook(*args)
        if inspect.isawaitable(result):
            await result

    def _disconnect(self) -> None:
        self._ws = None
        self._client = None
        self._connected.clear()
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(HostError("Extension disconnected"))

    async def _ws_send_json(self, ws, payload: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        await ws.send(json.dumps(payload, ensure_ascii=False))
