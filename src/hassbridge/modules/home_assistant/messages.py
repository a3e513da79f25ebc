"""Home Assistant WebSocket API messages, validated at the parse boundary.

Inbound frames are parsed into a closed tagged union keyed on ``type``.
Anything that is not valid JSON, or whose ``type`` is not one of the
variants below, fails validation and is discarded by the caller.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

STATE_CHANGED = "state_changed"


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class AuthRequired(_Inbound):
    type: Literal["auth_required"]
    ha_version: str | None = None


class AuthOk(_Inbound):
    type: Literal["auth_ok"]
    ha_version: str | None = None


class AuthInvalid(_Inbound):
    type: Literal["auth_invalid"]
    message: str | None = None


class ResultError(_Inbound):
    code: str | None = None
    message: str | None = None


class Result(_Inbound):
    type: Literal["result"]
    id: int
    success: bool
    error: ResultError | None = None


class EventEnvelope(_Inbound):
    event_type: str
    data: dict[str, Any] = Field(default_factory=dict)


class Event(_Inbound):
    type: Literal["event"]
    id: int
    event: EventEnvelope


class Pong(_Inbound):
    type: Literal["pong"]
    id: int | None = None


InboundMessage = Annotated[
    AuthRequired | AuthOk | AuthInvalid | Result | Event | Pong,
    Field(discriminator="type"),
]

_INBOUND_ADAPTER: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)


def parse_message(raw: str | bytes) -> InboundMessage:
    """Parse one WebSocket frame.

    Raises
    ------
    pydantic.ValidationError
        On invalid JSON, an unknown ``type``, or a variant missing fields.
    """
    return _INBOUND_ADAPTER.validate_json(raw)


# ---------------------------------------------------------------------------
# state_changed payload
# ---------------------------------------------------------------------------


class StateSnapshot(_Inbound):
    """One side of a state transition (``old_state`` or ``new_state``)."""

    state: str
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def friendly_name(self) -> str | None:
        name = self.attributes.get("friendly_name")
        return name if isinstance(name, str) and name else None


class StateChanged(_Inbound):
    """Payload of a ``state_changed`` event.

    ``old_state`` is ``None`` when the entity was just created and
    ``new_state`` is ``None`` when it was removed.
    """

    entity_id: str
    old_state: StateSnapshot | None = None
    new_state: StateSnapshot | None = None


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


def auth_message(access_token: str) -> dict[str, Any]:
    return {"type": "auth", "access_token": access_token}


def subscribe_events_message(msg_id: int, event_type: str = STATE_CHANGED) -> dict[str, Any]:
    return {"id": msg_id, "type": "subscribe_events", "event_type": event_type}


def ping_message(msg_id: int) -> dict[str, Any]:
    return {"id": msg_id, "type": "ping"}
