"""Agent-facing MCP tools for Home Assistant.

- ``ha_states``: read entity states
- ``ha_call_service``: call HA services (ACL-enforced)
- ``ha_logbook``: read historical logbook entries
- ``ha_context_config``: adjust what is injected into the agent's context
- ``ha_listen`` / ``ha_listeners`` / ``ha_unlisten``: manage trigger rules

Every tool returns plain text for the agent. Tools are built as closures
over the module's live collaborators so they can be registered once on the
MCP server.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Coroutine, Mapping
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from hassbridge.modules.home_assistant.client import HomeAssistantAPIError, HomeAssistantClient
from hassbridge.modules.home_assistant.context import (
    ContextSettings,
    merge_context_config,
    read_context_config,
    write_context_config,
)
from hassbridge.modules.home_assistant.formatting import (
    format_entities_summary,
    format_entity_state,
    format_logbook_entries,
)
from hassbridge.modules.home_assistant.rules import RuleStore, TriggerRuleInput, format_rule

logger = logging.getLogger(__name__)

ToolFn = Callable[..., Coroutine[Any, Any, str]]

NOT_CONFIGURED = (
    "Home Assistant is not configured. The user needs to set home_assistant.url "
    "and home_assistant.token in the bridge configuration."
)
_STATES_TOOL_LIMIT = 100


def make_tools(
    client: HomeAssistantClient,
    store: RuleStore,
    state_dir: Path,
    user_context: Mapping[str, Any] | None = None,
) -> list[ToolFn]:
    """Build the Home Assistant tool closures.

    Parameters
    ----------
    client:
        ACL-aware REST client.
    store:
        Trigger rule store.
    state_dir:
        Host state directory (context overrides are stored below it).
    user_context:
        Context settings from the user's configuration, snake_case keys.
    """

    async def ha_states(
        domain: str | None = None,
        entity_id: str | None = None,
        pattern: str | None = None,
    ) -> str:
        """Query current Home Assistant entity states.

        Use 'domain' to filter by entity domain (e.g. 'light', 'sensor'),
        'entity_id' for a specific entity, or 'pattern' for glob matching
        (e.g. 'sensor.living_room_*'). Returns a formatted list of entities.
        """
        if not client.is_configured:
            return NOT_CONFIGURED

        if entity_id:
            entity = await client.get_state(entity_id)
            if entity is None:
                return f"Entity {entity_id} not found or is blocked by ACL."
            return format_entity_state(entity, include_last_changed=True)

        patterns: list[str] | None = None
        if domain:
            patterns = [f"{domain}.*"]
        elif pattern:
            patterns = [pattern]

        try:
            entities = await client.get_states(patterns)
        except (HomeAssistantAPIError, httpx.HTTPError) as exc:
            return f"Failed to query Home Assistant: {exc}"
        if not entities:
            return "No entities found matching the filter."
        return format_entities_summary(
            entities, group_by_area=True, max_entities=_STATES_TOOL_LIMIT
        )

    async def ha_call_service(
        domain: str,
        service: str,
        entity_id: str,
        data: dict[str, Any] | None = None,
    ) -> str:
        """Call a Home Assistant service to control a device.

        Requires domain (e.g. 'light'), service (e.g. 'turn_on') and entity_id.
        Only works for domains in the writable_domains ACL. Always confirm with
        the user before destructive or security-sensitive actions.
        """
        if not client.is_configured:
            return NOT_CONFIGURED
        try:
            result = await client.call_service(domain, service, entity_id, data)
        except (HomeAssistantAPIError, httpx.HTTPError) as exc:
            return f"Service call {domain}.{service} failed: {exc}"
        return result.message

    async def ha_logbook(
        start_time: str,
        end_time: str | None = None,
        entity_id: str | None = None,
    ) -> str:
        """Read historical logbook entries from Home Assistant.

        start_time is required (ISO 8601, e.g. 2025-02-15T08:00:00+08:00).
        Optionally filter by entity_id (recommended) and end_time.
        """
        if not client.is_configured:
            return NOT_CONFIGURED
        try:
            entries = await client.get_logbook(start_time, end_time, entity_id)
        except (HomeAssistantAPIError, httpx.HTTPError) as exc:
            return f"Failed to read logbook: {exc}"
        return format_logbook_entries(entries)

    async def ha_context_config(
        action: str,
        watched_entities: list[str] | None = None,
        enabled: bool | None = None,
        max_entities: int | None = None,
        group_by_area: bool | None = None,
    ) -> str:
        """View or modify what Home Assistant data is injected into your context.

        Actions: 'get' (show current config), 'set' (replace config),
        'add_watch' / 'remove_watch' (adjust watched entity patterns).
        Changes take effect on the next message turn.
        """
        current = merge_context_config(user_context, await read_context_config(state_dir))

        if action == "get":
            return json.dumps(current.model_dump(), indent=2)

        if action == "set":
            try:
                updated = ContextSettings(
                    enabled=current.enabled if enabled is None else enabled,
                    entity_patterns=(
                        current.entity_patterns if watched_entities is None else watched_entities
                    ),
                    max_entities=current.max_entities if max_entities is None else max_entities,
                    group_by_area=current.group_by_area if group_by_area is None else group_by_area,
                )
            except ValidationError as exc:
                return f"Invalid context config: {exc.errors()[0].get('msg')}"
            await write_context_config(state_dir, updated)
            return f"Context config updated:\n{json.dumps(updated.model_dump(), indent=2)}"

        if action == "add_watch":
            if not watched_entities:
                return "No patterns specified to add."
            patterns = list(current.entity_patterns)
            patterns.extend(p for p in watched_entities if p not in patterns)
            updated = current.model_copy(update={"entity_patterns": patterns})
            await write_context_config(state_dir, updated)
            return f"Added watched patterns. Current: {', '.join(patterns)}"

        if action == "remove_watch":
            if not watched_entities:
                return "No patterns specified to remove."
            removed = set(watched_entities)
            patterns = [p for p in current.entity_patterns if p not in removed]
            updated = current.model_copy(update={"entity_patterns": patterns})
            await write_context_config(state_dir, updated)
            shown = ", ".join(patterns) if patterns else "(none, all visible entities)"
            return f"Removed watched patterns. Current: {shown}"

        return f'Unknown action "{action}". Use: get, set, add_watch, remove_watch.'

    async def ha_listen(
        entity_id: str,
        message: str,
        from_state: str | None = None,
        to_state: str | None = None,
        one_shot: bool = True,
    ) -> str:
        """Register a rule: when entity_id changes state, deliver message to you.

        Optionally restrict to a transition from_state and/or to_state. One-shot
        rules (default) are removed after firing once; set one_shot=false for a
        recurring reaction such as "always tell me when the door opens".
        """
        if client.acl.is_blocked(entity_id):
            return f"Entity {entity_id} is blocked by ACL."
        try:
            rule_input = TriggerRuleInput(
                entity_id=entity_id,
                from_state=from_state or None,
                to_state=to_state or None,
                message=message,
                one_shot=one_shot,
            )
        except ValidationError as exc:
            return f"Invalid rule: {exc.errors()[0].get('msg')}"
        try:
            rule = await store.add(rule_input)
        except OSError as exc:
            logger.error("Failed to save rule for %s: %s", entity_id, exc)
            return f"Failed to save rule: {exc}"
        return f"Rule created: {format_rule(rule)}"

    async def ha_listeners() -> str:
        """List registered Home Assistant trigger rules."""
        rules = await store.load()
        if not rules:
            return "No trigger rules registered."
        return "\n".join(format_rule(rule) for rule in rules)

    async def ha_unlisten(rule_id: str) -> str:
        """Remove a trigger rule by id (see ha_listeners)."""
        try:
            removed = await store.remove(rule_id)
        except OSError as exc:
            logger.error("Failed to remove rule %s: %s", rule_id, exc)
            return f"Failed to remove rule: {exc}"
        return f"Removed rule {rule_id}." if removed else f"No rule with id {rule_id}."

    return [
        ha_states,
        ha_call_service,
        ha_logbook,
        ha_context_config,
        ha_listen,
        ha_listeners,
        ha_unlisten,
    ]
