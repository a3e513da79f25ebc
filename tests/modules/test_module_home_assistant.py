"""Tests for the Home Assistant module and its agent tools.

Covers:
- HomeAssistantConfig validation (defaults, extra=forbid, rules file choice)
- on_startup wiring (client, store, sink, dispatcher, event session)
- on_startup when unconfigured or with events disabled
- Session delivery mode requiring a host sink
- on_shutdown cleanup and idempotency
- Tool registration (register_tools creates the expected MCP tools)
- Tool behaviour via make_tools against a mocked REST transport
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import BaseModel, ValidationError

from conftest import MockSink
from hassbridge.core.delivery import CommandDelivery
from hassbridge.modules.base import Module
from hassbridge.modules.home_assistant import (
    DEFAULT_AGENT_COMMAND,
    HomeAssistantConfig,
    HomeAssistantModule,
)
from hassbridge.modules.home_assistant.acl import EntityACL
from hassbridge.modules.home_assistant.client import HomeAssistantClient
from hassbridge.modules.home_assistant.context import resolve_context_config_path
from hassbridge.modules.home_assistant.rules import RuleStore
from hassbridge.modules.home_assistant.tools import NOT_CONFIGURED, make_tools

pytestmark = pytest.mark.unit

EXPECTED_HA_TOOLS = {
    "ha_states",
    "ha_call_service",
    "ha_logbook",
    "ha_context_config",
    "ha_listen",
    "ha_listeners",
    "ha_unlisten",
}

STATES = [
    {
        "entity_id": "light.bedroom",
        "state": "off",
        "attributes": {"friendly_name": "Bedroom Light", "area": "Bedroom"},
    },
    {"entity_id": "lock.front_door", "state": "locked", "attributes": {}},
    {"entity_id": "sensor.temp", "state": "21", "attributes": {}},
]

CONFIGURED = {"url": "http://homeassistant.local:8123", "token": "abcdefgh12345"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ha_module() -> HomeAssistantModule:
    """Create a fresh HomeAssistantModule instance."""
    return HomeAssistantModule()


@pytest.fixture
def mock_mcp() -> MagicMock:
    """Create a mock MCP server that captures registered tools."""
    mcp = MagicMock()
    tools: dict[str, Any] = {}

    def tool_decorator(*_decorator_args, **decorator_kwargs):
        declared_name = decorator_kwargs.get("name")

        def decorator(fn):
            tools[declared_name or fn.__name__] = fn
            return fn

        return decorator

    mcp.tool = tool_decorator
    mcp._registered_tools = tools
    return mcp


@pytest.fixture
def patched_collaborators():
    """Replace the REST client and event session classes with mocks."""
    client = MagicMock()
    client.verify_connection = AsyncMock(
        return_value={"location_name": "Home", "version": "2026.10.0"}
    )
    client.aclose = AsyncMock()
    session = MagicMock()
    session.start = AsyncMock()
    session.stop = AsyncMock()
    with (
        patch(
            "hassbridge.modules.home_assistant.HomeAssistantClient", return_value=client
        ) as client_cls,
        patch(
            "hassbridge.modules.home_assistant.EventSession", return_value=session
        ) as session_cls,
    ):
        yield client_cls, session_cls


def _tools(
    handler=None,
    *,
    store: RuleStore,
    state_dir: Path,
    user_context: dict[str, Any] | None = None,
    acl: EntityACL | None = None,
) -> dict[str, Any]:
    handler = handler or (lambda request: httpx.Response(200, json=STATES))
    client = HomeAssistantClient(
        "http://ha.local:8123",
        "tok",
        acl or EntityACL(blocked_entities=["lock.*"], writable_domains=["light"]),
        transport=httpx.MockTransport(handler),
    )
    return {fn.__name__: fn for fn in make_tools(client, store, state_dir, user_context)}


@pytest.fixture
def store(state_dir: Path) -> RuleStore:
    return RuleStore.for_state_dir(state_dir)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class TestConfig:
    def test_module_contract(self, ha_module: HomeAssistantModule) -> None:
        assert isinstance(ha_module, Module)
        assert ha_module.name == "home_assistant"
        assert issubclass(ha_module.config_schema, BaseModel)

    def test_defaults(self) -> None:
        config = HomeAssistantConfig()
        assert config.is_configured is False
        assert config.verify_ssl is False
        assert config.websocket_ping_interval == 30
        assert config.delivery.mode == "command"
        assert config.delivery.command == DEFAULT_AGENT_COMMAND
        assert config.delivery.timeout_seconds == 120.0
        assert config.events.enabled is True

    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HomeAssistantConfig(url="http://ha", colour="blue")

    def test_empty_command_rejected(self) -> None:
        with pytest.raises(ValidationError):
            HomeAssistantConfig(delivery={"command": []})

    def test_token_not_in_repr(self) -> None:
        assert "abcdefgh12345" not in repr(HomeAssistantConfig(**CONFIGURED))

    @pytest.mark.parametrize(
        ("delivery", "expected"),
        [
            ({}, "listeners.json"),
            ({"mode": "session"}, "watchers.json"),
            ({"mode": "session", "rules_file": "custom.json"}, "custom.json"),
        ],
    )
    def test_effective_rules_file(self, delivery: dict[str, Any], expected: str) -> None:
        assert HomeAssistantConfig(delivery=delivery).delivery.effective_rules_file == expected

    def test_user_context_uses_watched_entities(self) -> None:
        config = HomeAssistantConfig(
            acl={"watched_entities": ["light.*"]}, context={"max_entities": 7}
        )
        assert config.user_context() == {
            "enabled": True,
            "entity_patterns": ["light.*"],
            "max_entities": 7,
            "group_by_area": True,
        }
        assert HomeAssistantConfig().user_context()["entity_patterns"] is None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_startup_wires_session(
        self, ha_module: HomeAssistantModule, state_dir: Path, patched_collaborators
    ) -> None:
        client_cls, session_cls = patched_collaborators
        sink = MockSink()
        await ha_module.on_startup(CONFIGURED, state_dir, sink=sink)

        assert ha_module.sink is sink
        assert ha_module.store is not None
        assert ha_module.store.path == state_dir / "plugins" / "homeassistant" / "listeners.json"
        assert ha_module.dispatcher is not None
        client_cls.return_value.verify_connection.assert_awaited_once()

        session_cls.assert_called_once()
        args, kwargs = session_cls.call_args
        assert args[0] == CONFIGURED["url"]
        assert args[1] == CONFIGURED["token"]
        assert args[2] == ha_module.dispatcher.handle_state_changed
        assert kwargs["ping_interval"] == 30
        session_cls.return_value.start.assert_awaited_once()

    async def test_startup_builds_command_sink(
        self, ha_module: HomeAssistantModule, state_dir: Path, patched_collaborators
    ) -> None:
        await ha_module.on_startup(
            {**CONFIGURED, "delivery": {"command": ["notify", "--text"]}}, state_dir
        )
        assert isinstance(ha_module.sink, CommandDelivery)
        await ha_module.on_shutdown()

    async def test_session_mode_requires_sink(
        self, ha_module: HomeAssistantModule, state_dir: Path, patched_collaborators
    ) -> None:
        with pytest.raises(ValueError, match="session sink"):
            await ha_module.on_startup({**CONFIGURED, "delivery": {"mode": "session"}}, state_dir)

    async def test_session_mode_uses_watchers_file(
        self, ha_module: HomeAssistantModule, state_dir: Path, patched_collaborators
    ) -> None:
        await ha_module.on_startup(
            {**CONFIGURED, "delivery": {"mode": "session"}}, state_dir, sink=MockSink()
        )
        assert ha_module.store is not None
        assert ha_module.store.path.name == "watchers.json"

    async def test_unconfigured_skips_session(
        self,
        ha_module: HomeAssistantModule,
        state_dir: Path,
        patched_collaborators,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        client_cls, session_cls = patched_collaborators
        await ha_module.on_startup({}, state_dir, sink=MockSink())

        assert ha_module.session is None
        assert ha_module.client is not None
        session_cls.assert_not_called()
        client_cls.return_value.verify_connection.assert_not_awaited()
        assert "not configured" in caplog.text

    async def test_events_disabled_skips_session(
        self, ha_module: HomeAssistantModule, state_dir: Path, patched_collaborators
    ) -> None:
        _, session_cls = patched_collaborators
        await ha_module.on_startup(
            {**CONFIGURED, "events": {"enabled": False}}, state_dir, sink=MockSink()
        )
        assert ha_module.session is None
        session_cls.assert_not_called()

    async def test_unreachable_instance_does_not_fail_startup(
        self,
        ha_module: HomeAssistantModule,
        state_dir: Path,
        patched_collaborators,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        client_cls, session_cls = patched_collaborators
        client_cls.return_value.verify_connection.side_effect = httpx.ConnectError("refused")
        await ha_module.on_startup(CONFIGURED, state_dir, sink=MockSink())

        assert "could not reach Home Assistant" in caplog.text
        session_cls.return_value.start.assert_awaited_once()

    async def test_shutdown_closes_everything(
        self, ha_module: HomeAssistantModule, state_dir: Path, patched_collaborators
    ) -> None:
        client_cls, session_cls = patched_collaborators
        sink = MockSink()
        await ha_module.on_startup(CONFIGURED, state_dir, sink=sink)
        await ha_module.on_shutdown()

        session_cls.return_value.stop.assert_awaited_once()
        client_cls.return_value.aclose.assert_awaited_once()
        assert sink.closed is True
        assert ha_module.session is None
        assert ha_module.client is None
        assert ha_module.sink is None

    async def test_shutdown_is_idempotent(
        self, ha_module: HomeAssistantModule, state_dir: Path, patched_collaborators
    ) -> None:
        _, session_cls = patched_collaborators
        await ha_module.on_startup(CONFIGURED, state_dir, sink=MockSink())
        await ha_module.on_shutdown()
        await ha_module.on_shutdown()
        session_cls.return_value.stop.assert_awaited_once()

    async def test_shutdown_without_startup(self, ha_module: HomeAssistantModule) -> None:
        await ha_module.on_shutdown()


# ---------------------------------------------------------------------------
# Tool registration
# ---------------------------------------------------------------------------


class TestToolRegistration:
    async def test_registers_expected_tools(
        self,
        ha_module: HomeAssistantModule,
        mock_mcp: MagicMock,
        state_dir: Path,
        patched_collaborators,
    ) -> None:
        await ha_module.on_startup(CONFIGURED, state_dir, sink=MockSink())
        await ha_module.register_tools(mock_mcp)
        assert set(mock_mcp._registered_tools) == EXPECTED_HA_TOOLS
        for name in EXPECTED_HA_TOOLS:
            assert callable(mock_mcp._registered_tools[name])

    async def test_tools_have_docstrings(
        self,
        ha_module: HomeAssistantModule,
        mock_mcp: MagicMock,
        state_dir: Path,
        patched_collaborators,
    ) -> None:
        await ha_module.on_startup(CONFIGURED, state_dir, sink=MockSink())
        await ha_module.register_tools(mock_mcp)
        for fn in mock_mcp._registered_tools.values():
            assert fn.__doc__

    async def test_register_before_startup_raises(
        self, ha_module: HomeAssistantModule, mock_mcp: MagicMock
    ) -> None:
        with pytest.raises(RuntimeError, match="before on_startup"):
            await ha_module.register_tools(mock_mcp)


# ---------------------------------------------------------------------------
# Read tools
# ---------------------------------------------------------------------------


class TestStatesTool:
    async def test_unconfigured(self, store: RuleStore, state_dir: Path) -> None:
        client = HomeAssistantClient("", "")
        tools = {fn.__name__: fn for fn in make_tools(client, store, state_dir)}
        assert await tools["ha_states"]() == NOT_CONFIGURED
        assert await tools["ha_call_service"]("light", "turn_on", "light.a") == NOT_CONFIGURED
        assert await tools["ha_logbook"]("2026-10-18") == NOT_CONFIGURED
        await client.aclose()

    async def test_summary_hides_blocked(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        text = await tools["ha_states"]()
        assert "### Bedroom" in text
        assert "Bedroom Light (`light.bedroom`): off" in text
        assert "lock.front_door" not in text

    async def test_domain_filter(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        text = await tools["ha_states"](domain="sensor")
        assert "sensor.temp" in text
        assert "light.bedroom" not in text

    async def test_no_match(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        assert await tools["ha_states"](pattern="climate.*") == (
            "No entities found matching the filter."
        )

    async def test_single_entity_blocked(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        assert await tools["ha_states"](entity_id="lock.front_door") == (
            "Entity lock.front_door not found or is blocked by ACL."
        )

    async def test_single_entity(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(
            lambda request: httpx.Response(200, json=STATES[2]), store=store, state_dir=state_dir
        )
        text = await tools["ha_states"](entity_id="sensor.temp")
        assert text.startswith("- sensor.temp (`sensor.temp`): 21")

    async def test_query_failure_reported(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(
            lambda request: httpx.Response(500, text="boom"), store=store, state_dir=state_dir
        )
        assert (await tools["ha_states"]()).startswith("Failed to query Home Assistant:")


class TestCallServiceTool:
    async def test_success(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(
            lambda request: httpx.Response(200, json=[]), store=store, state_dir=state_dir
        )
        assert await tools["ha_call_service"]("light", "turn_on", "light.bedroom") == (
            "Called light.turn_on on light.bedroom."
        )

    async def test_blocked(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        assert await tools["ha_call_service"]("lock", "unlock", "lock.front_door") == (
            "Entity lock.front_door is blocked by ACL."
        )

    async def test_http_failure(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(
            lambda request: httpx.Response(500, text="boom"), store=store, state_dir=state_dir
        )
        text = await tools["ha_call_service"]("light", "turn_on", "light.bedroom")
        assert text.startswith("Service call light.turn_on failed:")


class TestLogbookTool:
    async def test_entries(self, store: RuleStore, state_dir: Path) -> None:
        entries = [{"when": "x", "entity_id": "light.bedroom", "name": "Lamp", "state": "on"}]
        tools = _tools(
            lambda request: httpx.Response(200, json=entries), store=store, state_dir=state_dir
        )
        assert await tools["ha_logbook"]("2026-10-18T00:00:00Z") == (
            "- [x] Lamp (`light.bedroom`): on"
        )


# ---------------------------------------------------------------------------
# Context config tool
# ---------------------------------------------------------------------------


class TestContextConfigTool:
    async def test_get_merges_user_config(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(
            store=store, state_dir=state_dir, user_context={"entity_patterns": ["light.*"]}
        )
        current = json.loads(await tools["ha_context_config"]("get"))
        assert current["entity_patterns"] == ["light.*"]
        assert current["max_entities"] == 50

    async def test_set_persists(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        text = await tools["ha_context_config"]("set", enabled=False, max_entities=5)
        assert text.startswith("Context config updated:")

        stored = json.loads(resolve_context_config_path(state_dir).read_text())
        assert stored["enabled"] is False
        assert stored["maxEntities"] == 5
        assert stored["entityPatterns"] == ["*"]

    async def test_set_invalid(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        text = await tools["ha_context_config"]("set", max_entities=0)
        assert text.startswith("Invalid context config:")
        assert not resolve_context_config_path(state_dir).exists()

    async def test_add_and_remove_watch(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir, user_context={"entity_patterns": ["a.*"]})
        assert await tools["ha_context_config"]("add_watch", ["b.*", "a.*"]) == (
            "Added watched patterns. Current: a.*, b.*"
        )
        assert await tools["ha_context_config"]("remove_watch", ["a.*"]) == (
            "Removed watched patterns. Current: b.*"
        )
        assert await tools["ha_context_config"]("remove_watch", ["b.*"]) == (
            "Removed watched patterns. Current: (none, all visible entities)"
        )

    async def test_watch_without_patterns(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        assert await tools["ha_context_config"]("add_watch") == "No patterns specified to add."
        assert await tools["ha_context_config"]("remove_watch", []) == (
            "No patterns specified to remove."
        )

    async def test_unknown_action(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        assert await tools["ha_context_config"]("reset") == (
            'Unknown action "reset". Use: get, set, add_watch, remove_watch.'
        )


# ---------------------------------------------------------------------------
# Rule tools
# ---------------------------------------------------------------------------


class TestRuleTools:
    async def test_listen_list_unlisten(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        assert await tools["ha_listeners"]() == "No trigger rules registered."

        created = await tools["ha_listen"](
            "light.bedroom", "Say good night", to_state="off", one_shot=False
        )
        assert created.startswith("Rule created: [")
        assert '`light.bedroom` to "off" (recurring)' in created

        rules = await store.load()
        assert len(rules) == 1
        rule = rules[0]
        assert rule.to_state == "off"
        assert rule.from_state is None
        assert rule.one_shot is False

        listing = await tools["ha_listeners"]()
        assert listing.startswith(f"[{rule.id}]")

        assert await tools["ha_unlisten"](rule.id) == f"Removed rule {rule.id}."
        assert await store.load() == []
        assert await tools["ha_unlisten"](rule.id) == f"No rule with id {rule.id}."

    async def test_empty_states_mean_any(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        created = await tools["ha_listen"]("sensor.temp", "Check", from_state="", to_state="")
        assert "any state change (one-shot)" in created
        (rule,) = await store.load()
        assert rule.from_state is None
        assert rule.to_state is None

    async def test_blocked_entity_refused(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        assert await tools["ha_listen"]("lock.front_door", "Door!") == (
            "Entity lock.front_door is blocked by ACL."
        )
        assert await store.load() == []

    async def test_invalid_rule(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        assert (await tools["ha_listen"]("", "msg")).startswith("Invalid rule:")

    async def test_save_failure_reported(self, store: RuleStore, state_dir: Path) -> None:
        tools = _tools(store=store, state_dir=state_dir)
        with patch.object(store, "save", AsyncMock(side_effect=PermissionError("read-only"))):
            text = await tools["ha_listen"]("light.bedroom", "msg")
        assert text == "Failed to save rule: read-only"
