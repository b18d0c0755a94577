"""
Search redirect attribution monitor.

Serves the local gateway the companion extension connects to and runs the monitor on top of
it. Every (re)connection of the extension restarts the monitor with fresh URL patterns.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from .config import MonitorConfig
from .experiment import AddonsSearchExperiment
from .gateway import ExtensionClientInfo, ExtensionGateway

logger = logging.getLogger("addons_search.monitor")

__all__ = ["MonitorService", "main"]


class MonitorService:
    def __init__(self, config: MonitorConfig) -> None:
        self.config = config
        self.gateway = ExtensionGateway(
            host=config.gateway_host,
            port=config.gateway_port,
            expected_extension_id=config.expected_extension_id,
            rpc_timeout=config.rpc_timeout,
            on_connected=self._on_extension_connected,
        )
        self.experiment = AddonsSearchExperiment(self.gateway, config)

    async def _on_extension_connected(self, client: ExtensionClientInfo) -> None:
        if self.experiment.started:
            self.experiment.stop()
        logger.info("starting monitor for extension=%s", client.extension_id)
        await self.experiment.start()

    async def run(self, stop: asyncio.Event) -> None:
        await self.gateway.start()
        try:
            await stop.wait()
        finally:
            self.experiment.stop()
            await self.gateway.stop()


async def _serve(config: MonitorConfig) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform (e.g. Windows event loops).
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)
    await MonitorService(config).run(stop)


def main() -> None:
    config = MonitorConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    logger.info(
        "monitor starting gateway=%s:%s cleanup_delay=%.1fs debug=%s",
        config.gateway_host,
        config.gateway_port,
        config.cleanup_delay_seconds(),
        config.debug,
    )
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_serve(config))


if __name__ == "__main__":
    main()
