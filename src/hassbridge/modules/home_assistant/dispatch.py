"""Rule dispatch: evaluate trigger rules for one state transition."""

from __future__ import annotations

import logging

from hassbridge.core.delivery import DeliveryContext, DeliveryError, DeliverySink
from hassbridge.core.logging import get_bridge_context
from hassbridge.core.telemetry import get_tracer, tag_bridge_span
from hassbridge.modules.home_assistant.messages import StateChanged
from hassbridge.modules.home_assistant.rules import RuleStore, TriggerRule, matches

logger = logging.getLogger(__name__)


def build_trigger_text(
    rule: TriggerRule,
    entity_id: str,
    friendly_name: str | None,
    old_state: str,
    new_state: str,
) -> str:
    """Render the message handed to the agent when *rule* fires."""
    label = friendly_name or entity_id
    return (
        f"[Home Assistant Event] {label} (`{entity_id}`) "
        f'changed from "{old_state}" to "{new_state}".\n'
        f"Rule message: {rule.message}"
    )


class RuleDispatcher:
    """Match transitions against the rule store and deliver fired rules.

    Parameters
    ----------
    store:
        Rule store, re-read on every transition.
    sink:
        Delivery strategy for trigger messages.
    """

    def __init__(self, store: RuleStore, sink: DeliverySink) -> None:
        self._store = store
        self._sink = sink
        self._tracer = get_tracer()

    @property
    def store(self) -> RuleStore:
        return self._store

    @property
    def sink(self) -> DeliverySink:
        return self._sink

    async def handle_state_changed(self, change: StateChanged) -> list[TriggerRule]:
        """Fire every rule matching *change*; return the rules that matched.

        Transitions without both snapshots (entity created or removed) and
        attribute-only updates (state text unchanged) are ignored without
        touching the store.
        """
        if change.old_state is None or change.new_state is None:
            return []

        old_state = change.old_state.state
        new_state = change.new_state.state
        if old_state == new_state:
            return []

        with self._tracer.start_as_current_span("ha.state_changed") as span:
            tag_bridge_span(span, get_bridge_context())
            span.set_attribute("ha.entity_id", change.entity_id)

            rules = await self._store.load()
            matched = [
                rule for rule in rules if matches(rule, change.entity_id, old_state, new_state)
            ]
            span.set_attribute("ha.rules_matched", len(matched))
            if not matched:
                return []

            friendly_name = change.new_state.friendly_name
            for rule in matched:
                logger.info(
                    "Rule %s triggered: %s %s→%s → %r",
                    rule.id,
                    change.entity_id,
                    old_state,
                    new_state,
                    rule.message,
                )
                text = build_trigger_text(
                    rule, change.entity_id, friendly_name, old_state, new_state
                )
                try:
                    await self._sink.deliver(
                        text, DeliveryContext(entity_id=change.entity_id, rule_id=rule.id)
                    )
                except DeliveryError as exc:
                    logger.error("Delivery failed for rule %s: %s", rule.id, exc)
                except Exception:
                    logger.exception("Unexpected delivery error for rule %s", rule.id)

            await self._retire_one_shots(matched)
            return matched

    async def _retire_one_shots(self, matched: list[TriggerRule]) -> None:
        fired = [rule.id for rule in matched if rule.one_shot]
        if not fired:
            return
        try:
            removed = await self._store.retire(fired)
        except OSError as exc:
            logger.error("Failed to retire %d one-shot rule(s): %s", len(fired), exc)
            return
        logger.info("Removed %d one-shot rule(s)", removed)
