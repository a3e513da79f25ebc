"""Trigger rules: file-backed persistence and state-transition matching.

Each rule describes "when entity X transitions (optionally from state A)
to state B, deliver message Z to the agent". Rules live in a single JSON
array file under the plugin state directory::

    <state_dir>/plugins/homeassistant/listeners.json

The file is re-read on every operation; there is no in-memory cache, so
edits made by another process are picked up on the next event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

PLUGIN_STATE_SUBDIR = ("plugins", "homeassistant")
DEFAULT_RULES_FILE = "listeners.json"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TriggerRuleInput(BaseModel):
    """Caller-supplied fields of a new rule (id and timestamp are assigned)."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    entity_id: str = Field(alias="entityId", min_length=1)
    from_state: str | None = Field(default=None, alias="fromState")
    to_state: str | None = Field(default=None, alias="toState")
    message: str
    one_shot: bool = Field(alias="oneShot")


class TriggerRule(TriggerRuleInput):
    """A persisted trigger rule.

    Attributes
    ----------
    id:
        Short unique identifier, assigned at creation.
    entity_id:
        Exact entity to watch (e.g. ``"light.bedroom"``). Not a glob.
    from_state:
        Only fire when the previous state equals this value.
    to_state:
        Only fire when the new state equals this value.
    message:
        Free text delivered to the agent when the rule fires.
    one_shot:
        Remove the rule after it fires once. Recurring rules stay.
    created_at:
        ISO 8601 UTC creation timestamp.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str = Field(min_length=1)
    created_at: str = Field(alias="createdAt")

    def to_json(self) -> dict[str, object]:
        """Serialise with the on-disk camelCase field names."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Store path
# ---------------------------------------------------------------------------


def resolve_plugin_dir(state_dir: Path | str) -> Path:
    """Return the plugin-scoped subdirectory of the host state directory."""
    return Path(state_dir).expanduser().joinpath(*PLUGIN_STATE_SUBDIR)


def resolve_rules_path(state_dir: Path | str, filename: str = DEFAULT_RULES_FILE) -> Path:
    return resolve_plugin_dir(state_dir) / filename


def new_rule_id() -> str:
    return uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class RuleStore:
    """Durable, file-backed list of :class:`TriggerRule`.

    Reads fail open: a missing, unparsable, or non-array file is an empty
    store. Writes fail loudly: ``OSError`` propagates to the caller.

    ``add``, ``remove`` and ``retire`` run their load-modify-save cycle
    under a per-store lock, so concurrent events in this process never
    overwrite each other's changes. Other processes writing the same file
    still get last-write-wins.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @classmethod
    def for_state_dir(cls, state_dir: Path | str, filename: str = DEFAULT_RULES_FILE) -> RuleStore:
        return cls(resolve_rules_path(state_dir, filename))

    @property
    def path(self) -> Path:
        return self._path

    # -- raw I/O ------------------------------------------------------------

    async def load(self) -> list[TriggerRule]:
        """Return all stored rules in insertion order. Never raises."""
        return await asyncio.to_thread(self._read)

    async def save(self, rules: Iterable[TriggerRule]) -> None:
        """Overwrite the store with *rules*, creating parent directories."""
        await asyncio.to_thread(self._write, list(rules))

    def _read(self) -> list[TriggerRule]:
        try:
            raw = self._path.read_bytes()
        except OSError:
            return []

        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (ValueError, RecursionError):
            logger.debug("Rule store %s is not valid JSON; treating as empty", self._path)
            return []

        if not isinstance(parsed, list):
            logger.debug("Rule store %s is not a JSON array; treating as empty", self._path)
            return []

        rules: list[TriggerRule] = []
        for index, item in enumerate(parsed):
            try:
                rules.append(TriggerRule.model_validate(item))
            except ValidationError as exc:
                logger.warning(
                    "Skipping malformed rule #%d in %s: %s",
                    index,
                    self._path,
                    exc.errors()[0].get("msg") if exc.errors() else exc,
                )
        return rules

    def _write(self, rules: list[TriggerRule]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [rule.to_json() for rule in rules]
        self._path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", "utf-8")

    # -- CRUD ---------------------------------------------------------------

    async def add(self, rule_input: TriggerRuleInput) -> TriggerRule:
        """Append a new rule with a fresh id and creation timestamp."""
        rule = TriggerRule(
            **rule_input.model_dump(),
            id=new_rule_id(),
            created_at=datetime.now(UTC).isoformat(),
        )
        async with self._lock:
            rules = await self.load()
            rules.append(rule)
            await self.save(rules)
        logger.info("Added rule %s for %s", rule.id, rule.entity_id)
        return rule

    async def remove(self, rule_id: str) -> bool:
        """Remove the rule with *rule_id*. Returns False if it does not exist."""
        async with self._lock:
            rules = await self.load()
            remaining = [rule for rule in rules if rule.id != rule_id]
            if len(remaining) == len(rules):
                return False
            await self.save(remaining)
        logger.info("Removed rule %s", rule_id)
        return True

    async def retire(self, rule_ids: Iterable[str]) -> int:
        """Remove every rule in *rule_ids* with a single overwrite.

        Returns the number of rules actually removed. Nothing is written
        when none of the ids are present.
        """
        doomed = set(rule_ids)
        if not doomed:
            return 0
        async with self._lock:
            rules = await self.load()
            remaining = [rule for rule in rules if rule.id not in doomed]
            removed = len(rules) - len(remaining)
            if removed:
                await self.save(remaining)
        return removed


# ---------------------------------------------------------------------------
# Matching and display
# ---------------------------------------------------------------------------


def matches(rule: TriggerRule, entity_id: str, old_state: str, new_state: str) -> bool:
    """Return whether a state transition fires *rule*.

    A transition where the state did not change never matches, even for a
    rule with no state constraints.
    """
    if rule.entity_id != entity_id:
        return False
    if old_state == new_state:
        return False
    if rule.from_state and rule.from_state != old_state:
        return False
    if rule.to_state and rule.to_state != new_state:
        return False
    return True


def format_rule(rule: TriggerRule) -> str:
    """Render a rule as a single line for listing to a user or agent."""
    parts = []
    if rule.from_state:
        parts.append(f'from "{rule.from_state}"')
    if rule.to_state:
        parts.append(f'to "{rule.to_state}"')
    trigger = " → ".join(parts) or "any state change"
    mode = "one-shot" if rule.one_shot else "recurring"
    return f'[{rule.id}] `{rule.entity_id}` {trigger} ({mode}) → "{rule.message}"'
