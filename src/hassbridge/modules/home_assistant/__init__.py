"""Home Assistant module: smart-home tools plus state-change trigger rules.

Transport layer:
- REST via ``httpx.AsyncClient`` (states, services, logbook)
- WebSocket via ``aiohttp`` for the ``state_changed`` event subscription

Every ``state_changed`` event is matched against the durable rule store;
fired rules are handed to a :class:`~hassbridge.core.delivery.DeliverySink`
and one-shot rules are removed afterwards.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field

from hassbridge.core.delivery import CommandDelivery, DeliverySink
from hassbridge.modules.base import Module
from hassbridge.modules.home_assistant.acl import EntityACL
from hassbridge.modules.home_assistant.client import HomeAssistantAPIError, HomeAssistantClient
from hassbridge.modules.home_assistant.context import (
    ContextSettings,
    build_home_context,
    merge_context_config,
    read_context_config,
)
from hassbridge.modules.home_assistant.dispatch import RuleDispatcher
from hassbridge.modules.home_assistant.rules import DEFAULT_RULES_FILE, RuleStore
from hassbridge.modules.home_assistant.session import EventSession
from hassbridge.modules.home_assistant.tools import make_tools

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = ["openclaw", "agent", "--agent", "main", "--message"]
SESSION_RULES_FILE = "watchers.json"


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class ACLConfig(BaseModel):
    """Entity access control.

    Attributes
    ----------
    blocked_entities:
        Glob patterns for entities hidden from every read and refused for
        every write.
    watched_entities:
        Default glob patterns for the live context block.
    writable_domains:
        Domains the agent may call services on. Empty means read-only.
    """

    blocked_entities: list[str] = Field(default_factory=list)
    watched_entities: list[str] = Field(default_factory=list)
    writable_domains: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class ContextConfig(BaseModel):
    enabled: bool = True
    max_entities: int = Field(default=50, ge=1)
    group_by_area: bool = True

    model_config = ConfigDict(extra="forbid")


class EventsConfig(BaseModel):
    enabled: bool = True

    model_config = ConfigDict(extra="forbid")


class DeliveryConfig(BaseModel):
    """How fired rules reach the agent.

    Attributes
    ----------
    mode:
        ``"command"`` spawns ``command`` with the trigger text appended;
        ``"session"`` injects it into the active session through a sink
        supplied by the host.
    command:
        Argument vector prefix for command mode.
    timeout_seconds:
        Seconds a spawned command may run before it is killed.
    rules_file:
        Rule store file name under ``plugins/homeassistant``. Defaults to
        ``listeners.json`` in command mode and ``watchers.json`` in session
        mode.
    """

    mode: Literal["command", "session"] = "command"
    command: list[str] = Field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND), min_length=1)
    timeout_seconds: float = Field(default=120.0, gt=0)
    rules_file: str = ""

    model_config = ConfigDict(extra="forbid")

    @property
    def effective_rules_file(self) -> str:
        if self.rules_file:
            return self.rules_file
        return SESSION_RULES_FILE if self.mode == "session" else DEFAULT_RULES_FILE


class HomeAssistantConfig(BaseModel):
    """Configuration for the Home Assistant module.

    Attributes
    ----------
    url:
        Base URL of the Home Assistant instance
        (e.g. ``http://homeassistant.local:8123``).
    token:
        Long-lived access token. Never logged beyond an 8-character prefix.
    verify_ssl:
        Whether to verify SSL certificates when using HTTPS. Defaults to
        ``False`` since many local HA installs use self-signed certs.
    timeout_seconds:
        Per-request REST timeout.
    websocket_ping_interval:
        Seconds between WebSocket keepalive pings. Defaults to ``30``.
    """

    url: str = ""
    token: str = Field(default="", repr=False)
    verify_ssl: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    websocket_ping_interval: int = Field(default=30, ge=1)
    acl: ACLConfig = Field(default_factory=ACLConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)

    model_config = ConfigDict(extra="forbid")

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.token)

    def user_context(self) -> dict[str, Any]:
        """Context settings from this config, in ``merge_context_config`` form."""
        return {
            "enabled": self.context.enabled,
            "entity_patterns": self.acl.watched_entities or None,
            "max_entities": self.context.max_entities,
            "group_by_area": self.context.group_by_area,
        }


def build_command_sink(config: DeliveryConfig) -> CommandDelivery:
    return CommandDelivery(config.command, timeout=config.timeout_seconds)


# ---------------------------------------------------------------------------
# Module
# ---------------------------------------------------------------------------


class HomeAssistantModule(Module):
    """Home Assistant module providing smart-home MCP tools and trigger rules.

    Lifecycle:
    - ``on_startup`` builds the REST client, rule store, delivery sink,
      dispatcher and (unless ``events.enabled`` is false) the event session.
    - ``register_tools`` registers the ``ha_*`` tools; call it after startup.
    - ``on_shutdown`` stops the session, the sink and the HTTP client.
    """

    def __init__(self) -> None:
        self._config: HomeAssistantConfig | None = None
        self._state_dir: Path | None = None
        self._client: HomeAssistantClient | None = None
        self._store: RuleStore | None = None
        self._sink: DeliverySink | None = None
        self._dispatcher: RuleDispatcher | None = None
        self._session: EventSession | None = None

    @property
    def name(self) -> str:
        return "home_assistant"

    @property
    def config_schema(self) -> type[BaseModel]:
        return HomeAssistantConfig

    @property
    def config(self) -> HomeAssistantConfig | None:
        return self._config

    @property
    def client(self) -> HomeAssistantClient | None:
        return self._client

    @property
    def store(self) -> RuleStore | None:
        return self._store

    @property
    def sink(self) -> DeliverySink | None:
        return self._sink

    @property
    def dispatcher(self) -> RuleDispatcher | None:
        return self._dispatcher

    @property
    def session(self) -> EventSession | None:
        return self._session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def on_startup(
        self,
        config: Any,
        state_dir: Path,
        sink: DeliverySink | None = None,
    ) -> None:
        """Build collaborators and start the event session.

        Parameters
        ----------
        config:
            Module configuration (``HomeAssistantConfig`` or raw dict).
        state_dir:
            Host state directory; rules live under ``plugins/homeassistant``.
        sink:
            Delivery sink supplied by the host. Required for ``session``
            delivery mode; command mode builds its own when omitted.
        """
        self._config = (
            config
            if isinstance(config, HomeAssistantConfig)
            else HomeAssistantConfig(**(config or {}))
        )
        cfg = self._config
        self._state_dir = Path(state_dir).expanduser()

        if sink is None:
            if cfg.delivery.mode == "session":
                raise ValueError(
                    "delivery.mode = 'session' requires the host to supply a session sink"
                )
            sink = build_command_sink(cfg.delivery)
        self._sink = sink

        self._client = HomeAssistantClient(
            cfg.url,
            cfg.token,
            EntityACL(cfg.acl.blocked_entities, cfg.acl.writable_domains),
            timeout=cfg.timeout_seconds,
            verify_ssl=cfg.verify_ssl,
        )
        self._store = RuleStore.for_state_dir(self._state_dir, cfg.delivery.effective_rules_file)
        self._dispatcher = RuleDispatcher(self._store, self._sink)

        if not cfg.is_configured:
            logger.warning(
                "HomeAssistantModule: url or token not configured; tools will report "
                "the missing configuration and no events will be received"
            )
            return

        logger.debug("HomeAssistantModule: using token %s... for %s", cfg.token[:8], cfg.url)
        await self._log_instance()

        if not cfg.events.enabled:
            logger.info("HomeAssistantModule: event subscription disabled")
            return

        self._session = EventSession(
            cfg.url,
            cfg.token,
            self._dispatcher.handle_state_changed,
            ping_interval=cfg.websocket_ping_interval,
            verify_ssl=cfg.verify_ssl,
        )
        await self._session.start()
        logger.info("HomeAssistantModule: watching events, rules in %s", self._store.path)

    async def _log_instance(self) -> None:
        assert self._client is not None
        try:
            info = await self._client.verify_connection()
        except (HomeAssistantAPIError, httpx.HTTPError) as exc:
            logger.warning("HomeAssistantModule: could not reach Home Assistant: %s", exc)
            return
        logger.info(
            "HomeAssistantModule: connected to %s (HA %s)",
            info.get("location_name", "Home Assistant"),
            info.get("version", "unknown"),
        )

    async def on_shutdown(self) -> None:
        """Stop the event session, pending deliveries and the HTTP client."""
        if self._session is not None:
            await self._session.stop()
            self._session = None
        if self._sink is not None:
            await self._sink.aclose()
            self._sink = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._dispatcher = None

    # ------------------------------------------------------------------
    # Tools and context
    # ------------------------------------------------------------------

    async def register_tools(self, mcp: Any) -> None:
        """Register the ``ha_*`` tools on the bridge's FastMCP server."""
        if self._client is None or self._store is None or self._state_dir is None:
            raise RuntimeError("HomeAssistantModule.register_tools called before on_startup")
        assert self._config is not None

        for tool in make_tools(
            self._client, self._store, self._state_dir, self._config.user_context()
        ):
            mcp.tool()(tool)

    async def context_settings(self) -> ContextSettings:
        assert self._config is not None and self._state_dir is not None
        overrides = await read_context_config(self._state_dir)
        return merge_context_config(self._config.user_context(), overrides)

    async def build_prepend_context(self) -> str | None:
        """Return the live home-status block for the next agent turn, if any."""
        if self._client is None or self._config is None:
            return None
        return await build_home_context(self._client, await self.context_settings())
