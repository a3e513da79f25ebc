"""Home Assistant REST client with ACL filtering.

Transport: ``httpx.AsyncClient`` with Bearer token, ``Content-Type:
application/json``. Every read hides blocked entities; every write checks
the entity against the ACL before any request is made.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from hassbridge.modules.home_assistant.acl import (
    EntityACL,
    is_wildcard_only,
    matches_any_pattern,
)

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 5.0  # seconds
_ERROR_BODY_LIMIT = 300


class HomeAssistantAPIError(Exception):
    """Raised when the Home Assistant REST API answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"HA API {status_code}: {body[:_ERROR_BODY_LIMIT]}")


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass
class HAEntity:
    """State of a single Home Assistant entity as returned by ``/api/states``.

    Attributes
    ----------
    entity_id:
        HA entity ID (e.g. ``"sensor.living_room_temperature"``).
    state:
        Current state string (e.g. ``"on"``, ``"23.5"``).
    attributes:
        Arbitrary entity attributes from HA.
    last_changed:
        ISO 8601 timestamp of last state change.
    last_updated:
        ISO 8601 timestamp of last attribute update.
    """

    entity_id: str
    state: str
    attributes: dict[str, Any] = field(default_factory=dict)
    last_changed: str = ""
    last_updated: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> HAEntity:
        return cls(
            entity_id=data.get("entity_id", ""),
            state=str(data.get("state", "")),
            attributes=data.get("attributes") or {},
            last_changed=data.get("last_changed", ""),
            last_updated=data.get("last_updated", ""),
        )

    @property
    def friendly_name(self) -> str:
        name = self.attributes.get("friendly_name")
        return name if isinstance(name, str) and name else self.entity_id


@dataclass
class LogbookEntry:
    """One row of ``/api/logbook``."""

    when: str
    entity_id: str | None = None
    name: str | None = None
    message: str | None = None
    state: str | None = None
    domain: str | None = None
    context_user_id: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> LogbookEntry:
        return cls(
            when=data.get("when", ""),
            entity_id=data.get("entity_id"),
            name=data.get("name"),
            message=data.get("message"),
            state=data.get("state"),
            domain=data.get("domain"),
            context_user_id=data.get("context_user_id"),
        )


@dataclass
class ServiceCallResult:
    """Outcome of :meth:`HomeAssistantClient.call_service`."""

    success: bool
    message: str
    states: list[HAEntity] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class HomeAssistantClient:
    """ACL-aware REST client.

    Parameters
    ----------
    url:
        Base URL of the Home Assistant instance.
    token:
        Long-lived access token.
    acl:
        Blocked entities and writable domains.
    timeout:
        Per-request timeout in seconds.
    verify_ssl:
        Verify TLS certificates.
    transport:
        Optional httpx transport (e.g. ``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        url: str,
        token: str,
        acl: EntityACL | None = None,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        verify_ssl: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = url.rstrip("/")
        self._token = token
        self.acl = acl or EntityACL()
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            verify=verify_ssl,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._base_url and self._token)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HomeAssistantClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        resp = await self._client.request(method, path, params=params, json=json)
        if resp.is_error:
            raise HomeAssistantAPIError(resp.status_code, resp.text or resp.reason_phrase)
        return resp.json() if resp.content else None

    def filter_entities(self, entities: list[HAEntity]) -> list[HAEntity]:
        """Drop entities hidden by the ACL."""
        return [entity for entity in entities if not self.acl.is_blocked(entity.entity_id)]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def verify_connection(self) -> dict[str, Any]:
        """Fetch ``/api/config`` (location name, version, time zone, ...)."""
        data = await self._request("GET", "/api/config")
        return data if isinstance(data, dict) else {}

    async def get_states(self, patterns: list[str] | None = None) -> list[HAEntity]:
        """Return all visible entity states, optionally narrowed by glob patterns."""
        data = await self._request("GET", "/api/states")
        entities = self.filter_entities(
            [HAEntity.from_api(item) for item in data or [] if isinstance(item, dict)]
        )
        if patterns and not is_wildcard_only(patterns):
            entities = [e for e in entities if matches_any_pattern(e.entity_id, patterns)]
        return entities

    async def get_states_by_domain(self, domain: str) -> list[HAEntity]:
        return await self.get_states([f"{domain}.*"])

    async def get_state(self, entity_id: str) -> HAEntity | None:
        """Return one entity, or ``None`` when blocked, missing, or unreachable."""
        if self.acl.is_blocked(entity_id):
            return None
        try:
            data = await self._request("GET", f"/api/states/{entity_id}")
        except (HomeAssistantAPIError, httpx.HTTPError) as exc:
            logger.debug("HomeAssistantClient: get_state(%s) failed: %s", entity_id, exc)
            return None
        return HAEntity.from_api(data) if isinstance(data, dict) else None

    async def call_service(
        self,
        domain: str,
        service: str,
        entity_id: str,
        data: dict[str, Any] | None = None,
    ) -> ServiceCallResult:
        """Call ``<domain>.<service>`` on *entity_id*, enforcing the ACL."""
        if self.acl.is_blocked(entity_id):
            return ServiceCallResult(False, f"Entity {entity_id} is blocked by ACL.")
        if not self.acl.is_writable(entity_id):
            return ServiceCallResult(
                False,
                f'Domain "{domain}" is not in writable_domains. '
                "Ask the user to grant write access.",
            )

        payload: dict[str, Any] = {"entity_id": entity_id, **(data or {})}
        result = await self._request("POST", f"/api/services/{domain}/{service}", json=payload)
        states = (
            self.filter_entities([HAEntity.from_api(s) for s in result if isinstance(s, dict)])
            if isinstance(result, list)
            else []
        )
        logger.info("HomeAssistantClient: called %s.%s on %s", domain, service, entity_id)
        return ServiceCallResult(True, f"Called {domain}.{service} on {entity_id}.", states)

    async def get_logbook(
        self,
        start_time: str,
        end_time: str | None = None,
        entity_id: str | None = None,
    ) -> list[LogbookEntry]:
        """Return logbook entries from *start_time*, hiding blocked entities."""
        params: dict[str, str] = {}
        if end_time:
            params["end_time"] = end_time
        if entity_id:
            if self.acl.is_blocked(entity_id):
                return []
            params["entity"] = entity_id

        data = await self._request(
            "GET", f"/api/logbook/{quote(start_time, safe='')}", params=params or None
        )
        entries = [LogbookEntry.from_api(item) for item in data or [] if isinstance(item, dict)]
        return [e for e in entries if not e.entity_id or not self.acl.is_blocked(e.entity_id)]
