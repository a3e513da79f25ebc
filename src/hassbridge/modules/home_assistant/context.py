"""Live home-status context prepended to agent turns.

The user's configuration sets the defaults; the agent may store overrides
(via the ``ha_context_config`` tool) in::

    <state_dir>/plugins/homeassistant/context-config.json

Overrides win over user config, which wins over built-in defaults.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hassbridge.modules.home_assistant.acl import is_wildcard_only, matches_any_pattern
from hassbridge.modules.home_assistant.client import HomeAssistantAPIError, HomeAssistantClient
from hassbridge.modules.home_assistant.formatting import format_entities_summary
from hassbridge.modules.home_assistant.rules import resolve_plugin_dir

logger = logging.getLogger(__name__)

CONTEXT_CONFIG_FILE = "context-config.json"
CONTEXT_HEADER = "## 🏠 Home Status"


class ContextSettings(BaseModel):
    """Effective context-injection settings."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = True
    entity_patterns: list[str] = Field(default_factory=lambda: ["*"], alias="entityPatterns")
    max_entities: int = Field(default=50, ge=1, alias="maxEntities")
    group_by_area: bool = Field(default=True, alias="groupByArea")


def resolve_context_config_path(state_dir: Path | str) -> Path:
    return resolve_plugin_dir(state_dir) / CONTEXT_CONFIG_FILE


async def read_context_config(state_dir: Path | str) -> ContextSettings | None:
    """Return the agent's stored overrides, or ``None`` if absent or unreadable."""
    path = resolve_context_config_path(state_dir)
    try:
        raw = await asyncio.to_thread(path.read_text, "utf-8")
        return ContextSettings.model_validate(json.loads(raw))
    except (OSError, ValueError, RecursionError, ValidationError):
        return None


async def write_context_config(state_dir: Path | str, settings: ContextSettings) -> None:
    path = resolve_context_config_path(state_dir)

    def _write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(settings.model_dump(by_alias=True), indent=2) + "\n", "utf-8")

    await asyncio.to_thread(_write)


def merge_context_config(
    user_config: Mapping[str, Any] | None,
    overrides: ContextSettings | None,
) -> ContextSettings:
    """Merge user config with agent overrides, field by field.

    *user_config* uses snake_case keys (``enabled``, ``entity_patterns``,
    ``max_entities``, ``group_by_area``); ``None`` values fall through.
    Only fields actually present in the stored overrides take precedence.
    """
    merged: dict[str, Any] = {}
    for key, value in (user_config or {}).items():
        if value is not None and key in ContextSettings.model_fields:
            merged[key] = value
    if overrides is not None:
        for key in overrides.model_fields_set:
            merged[key] = getattr(overrides, key)
    return ContextSettings(**merged)


async def build_home_context(
    client: HomeAssistantClient,
    settings: ContextSettings,
) -> str | None:
    """Build the status block to prepend to the agent's conversation.

    Returns ``None`` when disabled, unconfigured, or no entity is visible.
    Fetch failures produce a short error block instead of raising.
    """
    if not settings.enabled or not client.is_configured:
        return None

    try:
        entities = await client.get_states()
    except (HomeAssistantAPIError, httpx.HTTPError) as exc:
        logger.warning("Home context fetch failed: %s", exc)
        return f"{CONTEXT_HEADER}\n_Failed to fetch: {exc}_"

    patterns = settings.entity_patterns
    if not is_wildcard_only(patterns):
        entities = [e for e in entities if matches_any_pattern(e.entity_id, patterns)]

    if not entities:
        return None

    summary = format_entities_summary(
        entities,
        group_by_area=settings.group_by_area,
        max_entities=settings.max_entities,
    )
    return f"{CONTEXT_HEADER} (live)\n{summary}"
