"""Tests for live home-status context and its stored overrides."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from hassbridge.modules.home_assistant.acl import EntityACL
from hassbridge.modules.home_assistant.client import HomeAssistantClient
from hassbridge.modules.home_assistant.context import (
    ContextSettings,
    build_home_context,
    merge_context_config,
    read_context_config,
    resolve_context_config_path,
    write_context_config,
)

pytestmark = pytest.mark.unit

STATES = [
    {"entity_id": "light.bedroom", "state": "on", "attributes": {"area": "Bedroom"}},
    {"entity_id": "sensor.temp", "state": "21", "attributes": {}},
    {"entity_id": "lock.front", "state": "locked", "attributes": {}},
]


def _client(handler) -> HomeAssistantClient:
    return HomeAssistantClient(
        "http://ha.local:8123",
        "tok",
        EntityACL(blocked_entities=["lock.*"]),
        transport=httpx.MockTransport(handler),
    )


class TestMerge:
    def test_defaults(self) -> None:
        settings = merge_context_config(None, None)
        assert settings.model_dump() == ContextSettings().model_dump()
        assert settings.entity_patterns == ["*"]
        assert settings.max_entities == 50

    def test_user_config_applies(self) -> None:
        settings = merge_context_config(
            {"max_entities": 10, "entity_patterns": ["light.*"], "group_by_area": None}, None
        )
        assert settings.max_entities == 10
        assert settings.entity_patterns == ["light.*"]
        assert settings.group_by_area is True

    def test_overrides_win_only_for_fields_they_set(self) -> None:
        overrides = ContextSettings.model_validate({"maxEntities": 5})
        settings = merge_context_config(
            {"max_entities": 10, "entity_patterns": ["light.*"]}, overrides
        )
        assert settings.max_entities == 5
        assert settings.entity_patterns == ["light.*"]

    def test_unknown_user_keys_ignored(self) -> None:
        settings = merge_context_config({"colour": "blue"}, None)
        assert settings.model_dump() == ContextSettings().model_dump()


class TestStorage:
    async def test_missing_file_is_none(self, state_dir: Path) -> None:
        assert await read_context_config(state_dir) is None

    async def test_corrupt_file_is_none(self, state_dir: Path) -> None:
        path = resolve_context_config_path(state_dir)
        path.parent.mkdir(parents=True)
        path.write_text("[1, 2")
        assert await read_context_config(state_dir) is None

    async def test_deeply_nested_file_is_none(self, state_dir: Path) -> None:
        path = resolve_context_config_path(state_dir)
        path.parent.mkdir(parents=True)
        path.write_text("[" * 100_000 + "]" * 100_000)
        assert await read_context_config(state_dir) is None

    async def test_write_then_read(self, state_dir: Path) -> None:
        await write_context_config(
            state_dir, ContextSettings(enabled=False, entity_patterns=["sensor.*"])
        )
        raw = json.loads(resolve_context_config_path(state_dir).read_text())
        assert raw["entityPatterns"] == ["sensor.*"]
        assert raw["enabled"] is False

        stored = await read_context_config(state_dir)
        assert stored is not None
        assert stored.enabled is False
        assert stored.entity_patterns == ["sensor.*"]


class TestBuildHomeContext:
    async def test_disabled(self) -> None:
        async with _client(lambda r: httpx.Response(200, json=STATES)) as client:
            assert await build_home_context(client, ContextSettings(enabled=False)) is None

    async def test_unconfigured(self) -> None:
        client = HomeAssistantClient("", "")
        assert await build_home_context(client, ContextSettings()) is None
        await client.aclose()

    async def test_renders_visible_entities(self) -> None:
        async with _client(lambda r: httpx.Response(200, json=STATES)) as client:
            block = await build_home_context(client, ContextSettings(group_by_area=True))
        assert block is not None
        assert block.startswith("## 🏠 Home Status (live)\n")
        assert "### Bedroom" in block
        assert "sensor.temp" in block
        assert "lock.front" not in block

    async def test_patterns_filter(self) -> None:
        async with _client(lambda r: httpx.Response(200, json=STATES)) as client:
            block = await build_home_context(
                client, ContextSettings(entity_patterns=["sensor.*"], group_by_area=False)
            )
        assert block is not None
        assert "light.bedroom" not in block
        assert "### sensor" in block

    async def test_nothing_visible(self) -> None:
        async with _client(lambda r: httpx.Response(200, json=STATES)) as client:
            settings = ContextSettings(entity_patterns=["climate.*"])
            assert await build_home_context(client, settings) is None

    async def test_fetch_error_block(self) -> None:
        async with _client(lambda r: httpx.Response(503, text="down")) as client:
            block = await build_home_context(client, ContextSettings())
        assert block is not None
        assert block.startswith("## 🏠 Home Status\n_Failed to fetch:")
