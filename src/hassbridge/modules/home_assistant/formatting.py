"""Plain-text rendering of entity states and logbook entries for agents."""

from __future__ import annotations

from datetime import UTC, datetime

from hassbridge.modules.home_assistant.acl import entity_domain
from hassbridge.modules.home_assistant.client import HAEntity, LogbookEntry

DEFAULT_MAX_ENTITIES = 50


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_time_ago(iso_time: str, now: datetime | None = None) -> str:
    """Render an ISO timestamp as ``just now`` / ``5m ago`` / ``3h ago`` / ``2d ago``.

    Returns an empty string for unparsable or future timestamps.
    """
    when = _parse_iso(iso_time)
    if when is None:
        return ""
    seconds = ((now or datetime.now(UTC)) - when).total_seconds()
    if seconds < 0:
        return ""
    minutes = int(seconds // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def format_entity_state(
    entity: HAEntity,
    include_last_changed: bool = False,
    now: datetime | None = None,
) -> str:
    unit = entity.attributes.get("unit_of_measurement") or ""
    state = f"{entity.state} {unit}" if unit else entity.state
    line = f"- {entity.friendly_name} (`{entity.entity_id}`): {state}"
    if include_last_changed:
        ago = format_time_ago(entity.last_changed, now=now)
        if ago:
            line += f" ({ago})"
    return line


def group_entities_by_domain(entities: list[HAEntity]) -> dict[str, list[HAEntity]]:
    groups: dict[str, list[HAEntity]] = {}
    for entity in entities:
        groups.setdefault(entity_domain(entity.entity_id), []).append(entity)
    return groups


def group_entities_by_area(entities: list[HAEntity]) -> dict[str, list[HAEntity]]:
    """Group by the ``area`` attribute; entities without one go under ``Other``."""
    groups: dict[str, list[HAEntity]] = {}
    for entity in entities:
        area = entity.attributes.get("area") or "Other"
        groups.setdefault(str(area), []).append(entity)
    return groups


def format_entities_summary(
    entities: list[HAEntity],
    group_by_area: bool = False,
    max_entities: int = DEFAULT_MAX_ENTITIES,
    now: datetime | None = None,
) -> str:
    """Render up to *max_entities* entities under ``### <group>`` headings."""
    limited = entities[:max_entities]
    groups = group_entities_by_area(limited) if group_by_area else group_entities_by_domain(limited)

    lines: list[str] = []
    for heading, members in groups.items():
        lines.append(f"### {heading}")
        lines.extend(format_entity_state(e, include_last_changed=True, now=now) for e in members)

    if len(entities) > max_entities:
        lines.append(
            f"\n_...and {len(entities) - max_entities} more entities "
            "(configure acl.watched_entities to narrow scope)_"
        )
    return "\n".join(lines)


def format_logbook_entries(entries: list[LogbookEntry]) -> str:
    if not entries:
        return "No logbook entries found for the given time range."

    lines = []
    for entry in entries:
        when = _parse_iso(entry.when)
        time = when.astimezone().strftime("%H:%M:%S") if when else entry.when
        name = entry.name or entry.entity_id or "Unknown"
        ident = f" (`{entry.entity_id}`)" if entry.entity_id else ""
        detail = entry.message or entry.state or ""
        lines.append(f"- [{time}] {name}{ident}: {detail}")
    return "\n".join(lines)
