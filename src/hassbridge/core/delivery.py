"""Delivery sinks: turn a fired trigger into an externally visible effect.

A delivery sink receives the rendered trigger text for one matched rule and
hands it to the agent runtime. Two strategies are provided:

- :class:`CommandDelivery` spawns an external agent command with the text
  as its final argument (e.g. ``openclaw agent --agent main --message``).
- :class:`SessionDelivery` injects the text as a system message into the
  currently active conversation session.

The rule engine depends only on :class:`DeliverySink`, so both strategies
share the same event session, rule store and matching code.
"""

from __future__ import annotations

import abc
import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 120.0
_STDERR_LOG_LIMIT = 500


class DeliveryError(Exception):
    """Raised when a trigger message could not be handed to the agent runtime."""


@dataclass(frozen=True)
class DeliveryContext:
    """Where a trigger message came from."""

    entity_id: str
    rule_id: str


class DeliverySink(abc.ABC):
    """Abstract single-call capability that delivers one trigger message."""

    @abc.abstractmethod
    async def deliver(self, text: str, context: DeliveryContext) -> None:
        """Deliver *text* to the agent runtime.

        Raises
        ------
        DeliveryError
            If the message could not be delivered.
        """
        ...

    async def aclose(self) -> None:
        """Release any background work held by the sink."""
        return None


# ---------------------------------------------------------------------------
# Command delivery
# ---------------------------------------------------------------------------


class CommandDelivery(DeliverySink):
    """Spawn an external command carrying the trigger text.

    The command is executed without a shell; the trigger text is appended
    as the final argument so no quoting is needed. Spawning is awaited, but
    the process itself is supervised in a background task: the event loop
    moves on to the next rule while the agent turn runs.

    Parameters
    ----------
    command:
        Argument vector prefix, e.g. ``["openclaw", "agent", "--message"]``.
    timeout:
        Seconds the process may run before it is killed. Timed-out
        deliveries are logged and never retried.
    """

    def __init__(self, command: Sequence[str], timeout: float = _DEFAULT_TIMEOUT_SECONDS) -> None:
        if not command:
            raise ValueError("CommandDelivery requires a non-empty command")
        self._command = list(command)
        self._timeout = timeout
        self._running: set[asyncio.Task[None]] = set()

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def pending(self) -> int:
        """Number of spawned processes still being supervised."""
        return len(self._running)

    async def deliver(self, text: str, context: DeliveryContext) -> None:
        argv = [*self._command, text]
        logger.debug("Spawning agent command for %s: %s ...", context.entity_id, argv[0])
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DeliveryError(f"failed to spawn {argv[0]!r}: {exc}") from exc

        task = asyncio.create_task(self._supervise(proc, context))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _supervise(self, proc: asyncio.subprocess.Process, context: DeliveryContext) -> None:
        """Wait for the spawned command, enforcing the timeout."""
        try:
            _stdout, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout
            )
        except TimeoutError:
            logger.error(
                "Agent command for %s timed out after %ss; killing it",
                context.entity_id,
                self._timeout,
            )
            proc.kill()
            await proc.wait()
            return

        if proc.returncode:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            logger.error(
                "Agent command for %s exited with %s%s",
                context.entity_id,
                proc.returncode,
                f" stderr: {stderr[:_STDERR_LOG_LIMIT]}" if stderr else "",
            )
            return

        logger.info("Agent command completed for %s (rule %s)", context.entity_id, context.rule_id)

    async def aclose(self) -> None:
        """Cancel supervision of any still-running commands."""
        tasks = list(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._running.clear()


# ---------------------------------------------------------------------------
# Session delivery
# ---------------------------------------------------------------------------

SessionResolver = Callable[[], str | None]
SystemMessageEnqueuer = Callable[..., Awaitable[Any] | Any]


class SessionDelivery(DeliverySink):
    """Inject the trigger text into the active conversation session.

    Parameters
    ----------
    resolve_session:
        Returns the current default session key, or ``None`` when no
        session is active.
    enqueue:
        Called as ``enqueue(text, session_key=key)``. May be a plain
        function or a coroutine function.
    """

    def __init__(self, resolve_session: SessionResolver, enqueue: SystemMessageEnqueuer) -> None:
        self._resolve_session = resolve_session
        self._enqueue = enqueue

    async def deliver(self, text: str, context: DeliveryContext) -> None:
        session_key = self._resolve_session()
        if not session_key:
            raise DeliveryError(
                f"rule {context.rule_id} matched {context.entity_id} but no session is active"
            )

        try:
            result = self._enqueue(text, session_key=session_key)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            raise DeliveryError(f"failed to enqueue system message: {exc}") from exc

        logger.debug("Enqueued trigger for %s into session %s", context.entity_id, session_key)
