"""Persistent Home Assistant event session over the WebSocket API.

Transport: ``aiohttp`` client WebSocket against ``/api/websocket``.

Lifecycle (``SessionState``)::

    IDLE → CONNECTING → AUTHENTICATING → AUTHENTICATED → SUBSCRIBED
                ↑                                            │
                └──────── RECONNECTING (backoff) ←───────────┘
    any state → CLOSED   (stop(), or auth_invalid)

- Auth flow is server-driven: wait for ``auth_required``, reply ``auth``,
  expect ``auth_ok``. ``auth_invalid`` is fatal: the session closes and
  never reconnects, since the same token will keep failing.
- After ``auth_ok``: subscribe to ``state_changed`` and start a keepalive
  ping task.
- Any close or connect failure while not stopped schedules a reconnect
  with exponential backoff (1s → 30s). A successful socket open resets it.
- Message ids restart at 1 on every connection.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
from pydantic import ValidationError

from hassbridge.modules.home_assistant.messages import (
    STATE_CHANGED,
    AuthInvalid,
    AuthOk,
    AuthRequired,
    Event,
    InboundMessage,
    Pong,
    Result,
    StateChanged,
    auth_message,
    parse_message,
    ping_message,
    subscribe_events_message,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_WS_RECONNECT_INITIAL = 1.0  # seconds
_WS_RECONNECT_MAX = 30.0  # seconds
_WS_PING_INTERVAL = 30.0  # seconds
_WS_CONNECT_TIMEOUT = 10.0  # seconds

StateChangedHandler = Callable[[StateChanged], Awaitable[Any]]


class SessionState(enum.StrEnum):
    """Connection lifecycle of an :class:`EventSession`."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class Backoff:
    """Exponential reconnect delay: initial, doubling, capped at ``maximum``."""

    def __init__(
        self,
        initial: float = _WS_RECONNECT_INITIAL,
        maximum: float = _WS_RECONNECT_MAX,
    ) -> None:
        self._initial = initial
        self._maximum = maximum
        self._next = initial

    @property
    def upcoming(self) -> float:
        """Delay that the next call to :meth:`next_delay` will return."""
        return self._next

    def next_delay(self) -> float:
        delay = self._next
        self._next = min(self._next * 2, self._maximum)
        return delay

    def reset(self) -> None:
        self._next = self._initial


def websocket_url(base_url: str) -> str:
    """Derive the WebSocket URL from a Home Assistant base URL.

    ``http://`` → ``ws://``, ``https://`` → ``wss://``.
    """
    url = base_url.rstrip("/")
    if url.startswith("https://"):
        ws_url = "wss://" + url[len("https://") :]
    elif url.startswith("http://"):
        ws_url = "ws://" + url[len("http://") :]
    else:
        ws_url = url  # already ws:// or wss://
    return ws_url + "/api/websocket"


class EventSession:
    """Long-lived subscription to Home Assistant ``state_changed`` events.

    Parameters
    ----------
    url:
        Home Assistant base URL (``http://host:8123``).
    token:
        Long-lived access token.
    on_state_changed:
        Coroutine called with every ``state_changed`` payload, in the order
        the events arrive on the connection.
    ping_interval:
        Seconds between keepalive pings.
    verify_ssl:
        Verify TLS certificates for ``wss://`` URLs.
    session_factory:
        Builds the ``aiohttp.ClientSession`` used for the socket.
    sleep:
        Awaitable used for the reconnect delay.
    """

    def __init__(
        self,
        url: str,
        token: str,
        on_state_changed: StateChangedHandler,
        *,
        ping_interval: float = _WS_PING_INTERVAL,
        reconnect_initial: float = _WS_RECONNECT_INITIAL,
        reconnect_max: float = _WS_RECONNECT_MAX,
        verify_ssl: bool = False,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._token = token
        self._on_state_changed = on_state_changed
        self._ping_interval = ping_interval
        self._verify_ssl = verify_ssl
        self._session_factory = session_factory or aiohttp.ClientSession
        self._sleep = sleep
        self._backoff = Backoff(reconnect_initial, reconnect_max)

        self._state = SessionState.IDLE
        self._stopped = True
        self._msg_id = 0
        self._subscribe_id: int | None = None

        self._http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

        # Owned background tasks; stop() cancels all of them.
        self._connection_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._ping_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def ws_url(self) -> str:
        return websocket_url(self._url)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    async def start(self) -> None:
        """Begin connecting in the background. No-op if already running."""
        if self._connection_task is not None and not self._connection_task.done():
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._stopped = False
        self._start_connection()

    async def stop(self) -> None:
        """Cancel timers, close the socket, and prevent any reconnect.

        Idempotent; safe to call when never started.
        """
        self._stopped = True
        ws = self._ws
        self._ws = None

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._reconnect_task, self._ping_task, self._connection_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reconnect_task = None
        self._ping_task = None
        self._connection_task = None

        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, OSError) as exc:
                logger.debug("EventSession: error closing WebSocket: %s", exc)

        await self._close_http()

        if self._state is not SessionState.CLOSED:
            logger.info("EventSession: stopped")
        self._set_state(SessionState.CLOSED)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug("EventSession: %s → %s", self._state, state)
        self._state = state

    def _start_connection(self) -> None:
        self._connection_task = asyncio.create_task(self._connect())

    def _ensure_http_session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = self._session_factory()
        return self._http

    async def _close_http(self) -> None:
        http = self._http
        self._http = None
        if http is not None and not http.closed:
            await http.close()

    async def _connect(self) -> None:
        """Open one connection and read from it until it closes."""
        if self._stopped:
            return

        self._msg_id = 0
        self._subscribe_id = None
        self._set_state(SessionState.CONNECTING)
        logger.info("EventSession: connecting to %s", self.ws_url)

        try:
            http = self._ensure_http_session()
            ws = await asyncio.wait_for(
                http.ws_connect(self.ws_url, heartbeat=None, ssl=self._verify_ssl),
                timeout=_WS_CONNECT_TIMEOUT,
            )
        except (aiohttp.ClientError, OSError, TimeoutError, ValueError) as exc:
            logger.error("EventSession: WebSocket connect failed: %s", exc)
            self._schedule_reconnect()
            return

        if self._stopped:
            await ws.close()
            return

        self._ws = ws
        self._backoff.reset()
        self._set_state(SessionState.AUTHENTICATING)
        logger.info("EventSession: WebSocket connected")

        try:
            await self._read_loop(ws)
        except asyncio.CancelledError:
            self._release(ws)
            raise
        except (aiohttp.ClientError, OSError, RuntimeError) as exc:
            logger.warning("EventSession: WebSocket error: %s", exc)

        self._release(ws)
        if self._stopped:
            # auth_invalid ends the session for good
            await self._close_http()
            self._set_state(SessionState.CLOSED)
            return
        logger.info("EventSession: WebSocket closed")
        self._schedule_reconnect()

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while not self._stopped:
            msg = await ws.receive()

            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                await self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("EventSession: WebSocket error frame: %s", ws.exception())
                break
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                break

        if not ws.closed:
            await ws.close()

    def _release(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Drop per-connection state after the socket is gone."""
        self._cancel_ping()
        if self._ws is ws:
            self._ws = None

    def _schedule_reconnect(self) -> None:
        """Single entry point for every reconnect path."""
        if self._stopped:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return  # reconnect already pending
        delay = self._backoff.next_delay()
        self._set_state(SessionState.RECONNECTING)
        logger.info("EventSession: reconnecting in %.0fs", delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._reconnect_task = None
        if self._stopped:
            return
        self._start_connection()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _next_id(self) -> int:
        self._msg_id += 1
        return self._msg_id

    async def _send(self, payload: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None or ws.closed:
            return False
        await ws.send_json(payload)
        return True

    async def _handle_frame(self, data: str | bytes) -> None:
        try:
            msg = parse_message(data)
        except ValidationError as exc:
            errors = exc.errors()
            logger.warning(
                "EventSession: discarding malformed message: %s",
                errors[0].get("msg") if errors else exc,
            )
            return
        await self._dispatch(msg)

    async def _dispatch(self, msg: InboundMessage) -> None:
        if isinstance(msg, AuthRequired):
            logger.debug("EventSession: auth required (HA %s)", msg.ha_version or "unknown")
            await self._send(auth_message(self._token))

        elif isinstance(msg, AuthOk):
            logger.info("EventSession: authenticated (HA %s)", msg.ha_version or "unknown")
            self._set_state(SessionState.AUTHENTICATED)
            await self._subscribe()
            self._start_ping()

        elif isinstance(msg, AuthInvalid):
            logger.error("EventSession: auth failed: %s", msg.message or "auth_invalid")
            # Same token would fail again; never reconnect.
            self._stopped = True
            self._set_state(SessionState.CLOSED)
            self._cancel_ping()
            ws = self._ws
            if ws is not None and not ws.closed:
                await ws.close()

        elif isinstance(msg, Result):
            if not msg.success:
                error = msg.error
                logger.error(
                    "EventSession: command %d failed: %s %s",
                    msg.id,
                    error.code if error else "unknown_error",
                    error.message if error else "",
                )
            elif msg.id == self._subscribe_id:
                self._set_state(SessionState.SUBSCRIBED)
                logger.info("EventSession: subscribed to %s events", STATE_CHANGED)

        elif isinstance(msg, Event):
            if msg.event.event_type == STATE_CHANGED:
                await self._handle_state_changed(msg.event.data)

        elif isinstance(msg, Pong):
            pass  # keepalive reply

    async def _subscribe(self) -> None:
        self._subscribe_id = self._next_id()
        await self._send(subscribe_events_message(self._subscribe_id, STATE_CHANGED))

    async def _handle_state_changed(self, data: dict[str, Any]) -> None:
        try:
            change = StateChanged.model_validate(data)
        except ValidationError as exc:
            logger.warning("EventSession: malformed state_changed payload: %s", exc)
            return
        try:
            await self._on_state_changed(change)
        except Exception:
            logger.exception("EventSession: state_changed handler failed for %s", change.entity_id)

    # ------------------------------------------------------------------
    # Keepalive
    # ------------------------------------------------------------------

    def _start_ping(self) -> None:
        self._cancel_ping()
        self._ping_task = asyncio.create_task(self._ping_loop())

    def _cancel_ping(self) -> None:
        task = self._ping_task
        self._ping_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _ping_loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._ping_interval)
            if self._stopped or self._ws is None:
                break
            try:
                await self._send(ping_message(self._next_id()))
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                logger.warning("EventSession: failed to send ping: %s", exc)
                break
