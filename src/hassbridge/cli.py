"""CLI for hassbridge: run the bridge and manage trigger rules."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import Counter
from pathlib import Path

import click
import httpx
from pydantic import ValidationError

from hassbridge import __version__
from hassbridge.config import DEFAULT_CONFIG_FILE, BridgeConfig, ConfigError, load_config
from hassbridge.modules.home_assistant.acl import EntityACL, entity_domain
from hassbridge.modules.home_assistant.client import (
    HAEntity,
    HomeAssistantAPIError,
    HomeAssistantClient,
)
from hassbridge.modules.home_assistant.rules import RuleStore, TriggerRuleInput, format_rule

logger = logging.getLogger(__name__)

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Path to hassbridge.toml",
)


def _load(config_path: Path) -> BridgeConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


def _rule_store(config: BridgeConfig) -> RuleStore:
    ha = config.home_assistant
    return RuleStore.for_state_dir(config.state_dir, ha.delivery.effective_rules_file)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """hassbridge: Home Assistant event triggers and tools for AI agents."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@config_option
def serve(config_path: Path) -> None:
    """Run the bridge: event session, trigger rules and MCP tools."""
    from hassbridge.daemon import BridgeDaemon

    config = _load(config_path)
    click.echo(f"Starting {config.name} on port {config.port}")
    try:
        asyncio.run(BridgeDaemon(config=config).run_until_stopped())
    except (ValueError, OSError) as exc:
        click.echo(f"Failed to start: {exc}", err=True)
        sys.exit(1)


@cli.command()
@config_option
def status(config_path: Path) -> None:
    """Check the Home Assistant connection, visible entities and rule count."""
    config = _load(config_path)
    ha = config.home_assistant
    store = _rule_store(config)
    stored = asyncio.run(store.load())

    click.echo(f"Bridge:         {config.name} (port {config.port})")
    click.echo(f"Rules file:     {store.path} ({len(stored)} rule(s))")
    click.echo(f"Delivery mode:  {ha.delivery.mode}")

    if not ha.is_configured:
        click.echo("Home Assistant: not configured (set home_assistant.url and token)")
        sys.exit(1)

    try:
        info, entities = asyncio.run(_fetch_instance_info(config))
    except (HomeAssistantAPIError, httpx.HTTPError) as exc:
        click.echo(f"Home Assistant: unreachable at {ha.url}: {exc}")
        sys.exit(1)

    click.echo(
        f"Home Assistant: {info.get('location_name', 'unknown')} "
        f"(version {info.get('version', 'unknown')}) at {ha.url}"
    )
    click.echo(f"Visible:        {len(entities)} entities")
    for domain, count in Counter(entity_domain(e.entity_id) for e in entities).most_common():
        click.echo(f"  {domain}: {count}")
    writable = ", ".join(ha.acl.writable_domains) or "none (read-only mode)"
    click.echo(f"Writable:       {writable}")


async def _fetch_instance_info(config: BridgeConfig) -> tuple[dict, list[HAEntity]]:
    ha = config.home_assistant
    async with HomeAssistantClient(
        ha.url,
        ha.token,
        EntityACL(ha.acl.blocked_entities, ha.acl.writable_domains),
        timeout=ha.timeout_seconds,
        verify_ssl=ha.verify_ssl,
    ) as client:
        info = await client.verify_connection()
        return info, await client.get_states()


# ---------------------------------------------------------------------------
# rules
# ---------------------------------------------------------------------------


@cli.group()
def rules() -> None:
    """Manage state-change trigger rules."""


@rules.command("list")
@config_option
def rules_list(config_path: Path) -> None:
    """List registered trigger rules."""
    config = _load(config_path)
    stored = asyncio.run(_rule_store(config).load())
    if not stored:
        click.echo("No trigger rules registered.")
        return
    for rule in stored:
        click.echo(format_rule(rule))


@rules.command("add")
@config_option
@click.argument("entity_id")
@click.argument("message")
@click.option("--from", "from_state", default=None, help="Only fire when leaving this state")
@click.option("--to", "to_state", default=None, help="Only fire when entering this state")
@click.option(
    "--recurring",
    is_flag=True,
    default=False,
    help="Keep the rule after it fires (default: one-shot)",
)
def rules_add(
    config_path: Path,
    entity_id: str,
    message: str,
    from_state: str | None,
    to_state: str | None,
    recurring: bool,
) -> None:
    """Add a rule: when ENTITY_ID changes state, deliver MESSAGE."""
    config = _load(config_path)
    try:
        rule_input = TriggerRuleInput(
            entity_id=entity_id,
            from_state=from_state or None,
            to_state=to_state or None,
            message=message,
            one_shot=not recurring,
        )
    except ValidationError as exc:
        click.echo(f"Invalid rule: {exc.errors()[0].get('msg')}", err=True)
        sys.exit(1)
    try:
        rule = asyncio.run(_rule_store(config).add(rule_input))
    except OSError as exc:
        click.echo(f"Failed to save rule: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Rule created: {format_rule(rule)}")


@rules.command("remove")
@config_option
@click.argument("rule_id")
def rules_remove(config_path: Path, rule_id: str) -> None:
    """Remove the rule with RULE_ID."""
    config = _load(config_path)
    try:
        removed = asyncio.run(_rule_store(config).remove(rule_id))
    except OSError as exc:
        click.echo(f"Failed to remove rule: {exc}", err=True)
        sys.exit(1)
    if not removed:
        click.echo(f"No rule with id {rule_id}.")
        sys.exit(1)
    click.echo(f"Removed rule {rule_id}.")


if __name__ == "__main__":
    cli()
