from __future__ import annotations

import asyncio
import contextlib
import json
import socket
import time
from collections.abc import Callable
from typing import Any

import pytest

from addons_search.monitor.config import MonitorConfig
from addons_search.monitor.experiment import AddonsSearchExperiment
from addons_search.monitor.host import HostError

EXT_ID = "search-monitor@example.com"
ENGINES = [{"extensionId": "addon1", "urls": ["https://search.example.com/?q={searchTerms}"]}]


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _websockets():
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")
    return websockets


async def _until(pred: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        await asyncio.sleep(0.02)
    return pred()


class _FakeExtension:
    """Plays the browser side of the gateway protocol."""

    def __init__(self, ws, *, engines: Any = ENGINES, versions: dict[str, str] | None = None) -> None:  # noqa: ANN001
        self.ws = ws
        self.engines = engines
        self.versions = versions if versions is not None else {"addon1": "1.2.3"}
        self.listeners: dict[str, list[str]] = {}
        self.telemetry: list[dict[str, Any]] = []
        self.rpc_methods: list[str] = []

    async def hello(self, ext_id: str = EXT_ID) -> dict[str, Any]:
        await self.ws.send(json.dumps({"type": "hello", "extensionId": ext_id, "extensionVersion": "0.1.0"}))
        return json.loads(await self.ws.recv())

    async def send_event(self, name: str, details: dict[str, Any]) -> None:
        await self.ws.send(json.dumps({"type": "event", "name": name, "details": details}))

    async def serve(self) -> None:
        async for raw in self.ws:
            msg = json.loads(raw)
            mtype = msg.get("type")
            if mtype == "listeners":
                self.listeners[msg["event"]] = msg["urls"]
            elif mtype == "telemetry":
                self.telemetry.append(msg)
            elif mtype == "rpc":
                self.rpc_methods.append(msg["method"])
                if msg["method"] == "search.getEngines":
                    reply: dict[str, Any] = {"ok": True, "result": self.engines}
                elif msg["method"] == "addons.getVersion":
                    reply = {"ok": True, "result": self.versions.get(msg["params"]["addonId"])}
                else:
                    reply = {"ok": False, "error": {"message": f"unknown method: {msg['method']}"}}
                await self.ws.send(json.dumps({"type": "rpcResult", "id": msg["id"], **reply}))

    def recorded(self) -> list[dict[str, Any]]:
        return [t for t in self.telemetry if t.get("op") == "recordEvent"]


def test_gateway_end_to_end_server_side_redirect() -> None:
    websockets = _websockets()
    from addons_search.monitor.gateway import GATEWAY_PROTOCOL_VERSION, ExtensionGateway

    async def _main() -> None:
        gw = ExtensionGateway(host="127.0.0.1", port=_free_port(), rpc_timeout=2.0)
        exp = AddonsSearchExperiment(gw, MonitorConfig(cleanup_delay=0.05))
        gw.on_connected = lambda _client: exp.start()
        await gw.start()
        try:
            async with websockets.connect(f"ws://127.0.0.1:{gw.port}", ping_interval=None) as ws:
                ext = _FakeExtension(ws)
                ack = await ext.hello()
                assert ack["type"] == "helloAck"
                assert ack["protocolVersion"] == GATEWAY_PROTOCOL_VERSION
                reader = asyncio.create_task(ext.serve())

                assert await _until(
                    lambda: ext.listeners.get("webRequest.onBeforeRedirect") == ["https://search.example.com/*"]
                )
                assert ext.listeners.get("webRequest.onBeforeRequest") == ["https://search.example.com/*"]
                assert any(t.get("op") == "registerEvents" for t in ext.telemetry)

                await ext.send_event(
                    "webRequest.onBeforeRedirect",
                    {
                        "requestId": "7",
                        "url": "https://search.example.com/?q=1",
                        "redirectUrl": "https://bing.com/?q=1",
                    },
                )
                assert await _until(lambda: len(ext.recorded()) == 1)
                event = ext.recorded()[0]
                assert event["category"] == "addonsSearchExperiment"
                assert (event["method"], event["object"], event["value"]) == ("etld_change", "other", "server")
                assert event["extra"] == {
                    "addonId": "addon1",
                    "addonVersion": "1.2.3",
                    "from": "example.com",
                    "to": "bing.com",
                }
                assert ext.rpc_methods == ["search.getEngines", "addons.getVersion"]
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
        finally:
            exp.stop()
            await gw.stop()

    asyncio.run(_main())


def test_gateway_follows_chain_and_pushes_catch_all_listeners() -> None:
    websockets = _websockets()
    from addons_search.monitor.gateway import ExtensionGateway

    async def _main() -> None:
        gw = ExtensionGateway(host="127.0.0.1", port=_free_port(), rpc_timeout=2.0)
        exp = AddonsSearchExperiment(gw, MonitorConfig(cleanup_delay=1.0))
        gw.on_connected = lambda _client: exp.start()
        await gw.start()
        try:
            async with websockets.connect(f"ws://127.0.0.1:{gw.port}", ping_interval=None) as ws:
                ext = _FakeExtension(ws)
                await ext.hello()
                reader = asyncio.create_task(ext.serve())
                assert await _until(lambda: bool(ext.listeners.get("webRequest.onBeforeRedirect")))

                await ext.send_event(
                    "webRequest.onBeforeRedirect",
                    {
                        "requestId": "9",
                        "url": "https://search.example.com/?q=1",
                        "redirectUrl": "https://example.com/r",
                    },
                )
                assert await _until(
                    lambda: "<all_urls>" in ext.listeners.get("webRequest.onBeforeRedirect", [])
                    and ext.listeners.get("webRequest.onCompleted") == ["<all_urls>"]
                )

                await ext.send_event(
                    "webRequest.onBeforeRedirect",
                    {"requestId": "9", "url": "https://example.com/r", "redirectUrl": "https://bing.com/?q=1"},
                )
                await ext.send_event("webRequest.onCompleted", {"requestId": "9", "url": "https://bing.com/?q=1"})

                assert await _until(lambda: len(ext.recorded()) == 1)
                assert ext.recorded()[0]["extra"]["to"] == "bing.com"
                assert await _until(lambda: ext.listeners.get("webRequest.onCompleted") == [])
                assert ext.listeners["webRequest.onBeforeRedirect"] == ["https://search.example.com/*"]
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
        finally:
            exp.stop()
            await gw.stop()

    asyncio.run(_main())


def test_gateway_rpc_errors_raise_host_error() -> None:
    websockets = _websockets()
    from addons_search.monitor.gateway import ExtensionGateway

    async def _main() -> None:
        gw = ExtensionGateway(host="127.0.0.1", port=_free_port(), rpc_timeout=0.3)
        await gw.start()
        try:
            with pytest.raises(HostError):
                await gw.get_addon_version("addon1")
            with pytest.raises(HostError):
                gw.record_event("addonsSearchExperiment", "etld_change", "other", "server", {})

            async with websockets.connect(f"ws://127.0.0.1:{gw.port}", ping_interval=None) as ws:
                ext = _FakeExtension(ws, engines="not a list")
                await ext.hello()
                reader = asyncio.create_task(ext.serve())
                assert await gw.wait_for_connection(timeout=2.0)

                with pytest.raises(HostError, match="unknown method"):
                    await gw.rpc_call("tabs.list")
                with pytest.raises(HostError):
                    await gw.get_match_patterns()
                assert await gw.get_addon_version("missing") is None

                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader

                # Nobody answers any more: the call times out.
                with pytest.raises(HostError, match="timed out"):
                    await gw.rpc_call("addons.getVersion", {"addonId": "addon1"})
        finally:
            await gw.stop()

    asyncio.run(_main())


def test_gateway_rejects_unexpected_extension() -> None:
    websockets = _websockets()
    from addons_search.monitor.gateway import ExtensionGateway

    async def _main() -> None:
        gw = ExtensionGateway(host="127.0.0.1", port=_free_port(), expected_extension_id=EXT_ID)
        await gw.start()
        try:
            async with websockets.connect(f"ws://127.0.0.1:{gw.port}", ping_interval=None) as ws:
                await ws.send(json.dumps({"type": "hello", "extensionId": "someone-else@example.com"}))
                with pytest.raises(websockets.exceptions.ConnectionClosed):
                    await asyncio.wait_for(ws.recv(), timeout=2.0)
            assert not gw.is_connected()
            assert gw.status()["listening"] is True
        finally:
            await gw.stop()
        assert gw.status()["listening"] is False

    asyncio.run(_main())


def test_gateway_disconnect_fails_pending_rpc() -> None:
    websockets = _websockets()
    from addons_search.monitor.gateway import ExtensionGateway

    async def _main() -> None:
        gw = ExtensionGateway(host="127.0.0.1", port=_free_port(), rpc_timeout=3.0)
        await gw.start()
        try:
            ws = await websockets.connect(f"ws://127.0.0.1:{gw.port}", ping_interval=None)
            ext = _FakeExtension(ws)
            await ext.hello()
            assert await gw.wait_for_connection(timeout=2.0)

            call = asyncio.create_task(gw.rpc_call("search.getEngines"))
            await asyncio.sleep(0.05)
            await ws.close()
            with pytest.raises(HostError):
                await asyncio.wait_for(call, timeout=2.0)
            assert await _until(lambda: not gw.is_connected())
        finally:
            await gw.stop()

    asyncio.run(_main())


def test_monitor_service_restarts_experiment_on_reconnect() -> None:
    websockets = _websockets()
    from addons_search.monitor.main import MonitorService

    pattern = "https://search.example.com/*"

    async def _main() -> None:
        config = MonitorConfig(gateway_host="127.0.0.1", gateway_port=_free_port(), rpc_timeout=2.0, cleanup_delay=0.05)
        service = MonitorService(config)
        stop = asyncio.Event()
        runner = asyncio.create_task(service.run(stop))
        assert await _until(lambda: service.gateway.status()["listening"])
        url = f"ws://127.0.0.1:{config.gateway_port}"
        try:
            async with websockets.connect(url, ping_interval=None) as ws1:
                first = _FakeExtension(ws1)
                await first.hello()
                reader1 = asyncio.create_task(first.serve())
                assert await _until(lambda: service.experiment.listeners.installed_patterns == [pattern])
                assert service.experiment.started

                async with websockets.connect(url, ping_interval=None) as ws2:
                    second = _FakeExtension(ws2)
                    await second.hello()
                    reader2 = asyncio.create_task(second.serve())

                    # The restart stops the monitor, then reloads the patterns from the new client.
                    assert await _until(lambda: second.rpc_methods[:1] == ["search.getEngines"])
                    assert await _until(lambda: service.experiment.listeners.installed_patterns == [pattern])
                    assert any(t.get("op") == "registerEvents" for t in second.telemetry)
                    assert len(service.gateway.on_search_engine_modified) == 1
                    assert service.gateway.on_before_redirect.filters() == [pattern]

                    await second.send_event(
                        "webRequest.onBeforeRedirect",
                        {
                            "requestId": "3",
                            "url": "https://search.example.com/?q=1",
                            "redirectUrl": "https://bing.com/",
                        },
                    )
                    assert await _until(lambda: len(second.recorded()) == 1)
                    assert first.recorded() == []

                    for reader in (reader1, reader2):
                        reader.cancel()
                        with contextlib.suppress(asyncio.CancelledError, Exception):
                            await reader
        finally:
            stop.set()
            await asyncio.wait_for(runner, timeout=3.0)
        assert not service.experiment.started
        assert service.gateway.status()["listening"] is False

    asyncio.run(_main())


def test_status_reports_client_and_installed_listeners() -> None:
    websockets = _websockets()
    from addons_search.monitor.gateway import ExtensionGateway

    async def _main() -> None:
        gw = ExtensionGateway(host="127.0.0.1", port=_free_port(), rpc_timeout=2.0)
        exp = AddonsSearchExperiment(gw, MonitorConfig())
        gw.on_connected = lambda _client: exp.start()
        await gw.start()
        try:
            assert gw.status()["client"] is None
            async with websockets.connect(f"ws://127.0.0.1:{gw.port}", ping_interval=None) as ws:
                ext = _FakeExtension(ws)
                await ext.hello()
                reader = asyncio.create_task(ext.serve())
                assert await _until(lambda: exp.listeners.installed_patterns == ["https://search.example.com/*"])

                status = gw.status()
                assert status["connected"] is True
                assert status["client"] == {"extensionId": EXT_ID, "extensionVersion": "0.1.0"}
                assert status["listeners"] == {
                    "webRequest.onBeforeRequest": ["https://search.example.com/*"],
                    "webRequest.onBeforeRedirect": ["https://search.example.com/*"],
                    "search.onEngineModified": ["<all_urls>"],
                }
                assert set(status) == {"listening", "host", "port", "connected", "client", "listeners"}
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
        finally:
            exp.stop()
            await gw.stop()

    asyncio.run(_main())
