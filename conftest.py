"""Root conftest: shared test fixtures available to all test trees."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from hassbridge.core.delivery import DeliveryContext, DeliveryError, DeliverySink


@dataclass
class Delivery:
    """One trigger message handed to a sink."""

    text: str
    entity_id: str
    rule_id: str


class MockSink(DeliverySink):
    """A delivery sink that records deliveries and can be told to fail."""

    def __init__(self) -> None:
        self.deliveries: list[Delivery] = []
        self.fail_rule_ids: set[str] = set()
        self.closed = False

    async def deliver(self, text: str, context: DeliveryContext) -> None:
        self.deliveries.append(Delivery(text, context.entity_id, context.rule_id))
        if context.rule_id in self.fail_rule_ids:
            raise DeliveryError(f"refused delivery for {context.rule_id}")

    async def aclose(self) -> None:
        self.closed = True

    @property
    def rule_ids(self) -> list[str]:
        return [d.rule_id for d in self.deliveries]


@pytest.fixture
def mock_sink() -> MockSink:
    """Provide a MockSink instance for tests."""
    return MockSink()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Host state directory for a single test."""
    path = tmp_path / "state"
    path.mkdir()
    return path
