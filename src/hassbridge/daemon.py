"""Bridge daemon: the orchestrator for a single bridge instance.

The BridgeDaemon manages the lifecycle of the bridge:
1. Load config from hassbridge.toml
2. Configure logging
3. Home Assistant module on_startup (REST client, rule store, event session)
4. Create FastMCP server and register core tools
5. Register module MCP tools
6. Start FastMCP SSE server on configured port

On startup failure, the module gets on_shutdown() called.

Graceful shutdown: (a) stops the MCP server, (b) shuts down the module,
which stops the event session and any supervised deliveries.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from pathlib import Path
from typing import Any

import uvicorn
from fastmcp import FastMCP

from hassbridge.config import BridgeConfig, load_config
from hassbridge.core.delivery import DeliverySink
from hassbridge.core.logging import configure_logging, set_bridge_context
from hassbridge.modules.home_assistant import HomeAssistantModule

logger = logging.getLogger(__name__)


class BridgeDaemon:
    """Central orchestrator for a single bridge instance.

    Parameters
    ----------
    config_path:
        Path to ``hassbridge.toml``. Ignored when *config* is given.
    config:
        Already-loaded configuration.
    sink:
        Delivery sink handed to the module; required for ``session``
        delivery mode.
    """

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        config: BridgeConfig | None = None,
        sink: DeliverySink | None = None,
        module: HomeAssistantModule | None = None,
    ) -> None:
        if config_path is None and config is None:
            raise ValueError("BridgeDaemon needs a config_path or a config")
        self.config_path = config_path
        self.config = config
        self.module = module or HomeAssistantModule()
        self.mcp: FastMCP | None = None
        self._sink = sink
        self._started_at: float | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None

    async def start(self, *, serve: bool = True) -> None:
        """Execute the startup sequence.

        Steps execute in order. A failure at any step prevents subsequent steps.
        """
        # 1. Load config
        if self.config is None:
            self.config = load_config(self.config_path)
        cfg = self.config

        # 2. Logging
        configure_logging(
            level=cfg.logging.level,
            fmt=cfg.logging.format,
            log_root=Path(cfg.logging.log_root) if cfg.logging.log_root else None,
            bridge_name=cfg.name,
        )
        set_bridge_context(cfg.name)
        logger.info("Loaded config for bridge: %s", cfg.name)

        # 3. Module startup
        try:
            await self.module.on_startup(cfg.home_assistant, cfg.state_dir, sink=self._sink)
        except Exception:
            logger.exception("Module %s failed to start", self.module.name)
            await self.module.on_shutdown()
            raise

        # 4-5. MCP server and tools
        self.mcp = FastMCP(cfg.name)
        self._register_core_tools()
        await self.module.register_tools(self.mcp)

        self._started_at = time.monotonic()

        # 6. Serve
        if serve:
            await self._start_mcp_server()
            logger.info("Bridge %s listening on port %d", cfg.name, cfg.port)

    async def _start_mcp_server(self) -> None:
        """Start the FastMCP SSE server as a background asyncio task."""
        app = self.mcp.http_app(transport="sse")
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.port,
            log_level="info",
            timeout_graceful_shutdown=0,
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())

    def status(self) -> dict[str, Any]:
        """Bridge identity, event session state, and uptime."""
        uptime_seconds = time.monotonic() - self._started_at if self._started_at else 0
        session = self.module.session
        store = self.module.store
        return {
            "name": self.config.name if self.config else None,
            "port": self.config.port if self.config else None,
            "home_assistant_configured": bool(
                self.config and self.config.home_assistant.is_configured
            ),
            "event_session": session.state.value if session else "disabled",
            "rules_file": str(store.path) if store else None,
            "uptime_seconds": round(uptime_seconds, 1),
        }

    def _register_core_tools(self) -> None:
        mcp = self.mcp
        daemon = self

        @mcp.tool()
        async def status() -> dict:
            """Return bridge identity, event session state, and uptime."""
            return daemon.status()

        @mcp.tool()
        async def home_context() -> str:
            """Return the live Home Assistant status block for the current turn."""
            block = await daemon.module.build_prepend_context()
            return block or "No home status available."

    async def run_until_stopped(self) -> None:
        """Start, serve until SIGINT/SIGTERM or server exit, then shut down."""
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported on this platform", sig)

        await self.start()
        stop_waiter = asyncio.create_task(stop.wait())
        try:
            waiters = {stop_waiter}
            if self._server_task is not None:
                waiters.add(self._server_task)
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Stop MCP server
        2. Module on_shutdown
        """
        logger.info(
            "Shutting down bridge: %s",
            self.config.name if self.config else "unknown",
        )

        # 1. Stop MCP server
        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await self._server_task
            except Exception:
                logger.exception("Error while stopping MCP server")
            self._server_task = None
            self._server = None

        # 2. Module shutdown
        try:
            await self.module.on_shutdown()
        except Exception:
            logger.exception("Error during shutdown of module: %s", self.module.name)

        logger.info("Bridge shutdown complete")
