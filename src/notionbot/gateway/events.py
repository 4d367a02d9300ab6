"""
gateway/events.py — Typed Gateway Event Channel

Two kinds of consumers observe the gateway connection:

  * dispatch handlers — at most one per dispatch event name ("MESSAGE_CREATE"),
    registered with GatewayManager.on_event()
  * system listeners — any number per SystemEvent kind, registered with
    GatewayManager.on(); each kind has its own payload dataclass

Delivery runs on a dedicated asyncio task fed by a FIFO queue, so listeners
fire in the order events were emitted and a slow listener never holds up
the connection's heartbeat or frame processing. A listener that raises is
logged and skipped; delivery continues with the next one. Each delivery runs
with the gateway session id current at emit time bound into structlog
contextvars, so listener log lines carry it.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from notionbot.observability.logger import connection_context, get_logger

log = get_logger(__name__)

Listener = Callable[[Any], Union[None, Awaitable[None]]]


class SystemEvent(str, Enum):
    """Connection-level notifications."""

    CONNECTED    = "connected"
    RESUMED      = "resumed"
    DISCONNECTED = "disconnected"
    MESSAGE      = "message"
    ERROR        = "error"


# ─────────────────────────────────────────────────────────────────────────────
# Payloads — one per SystemEvent kind
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GatewayUser:
    """The bot's own identity, as reported in READY."""

    id: Optional[str] = None
    username: str = ""
    discriminator: str = "0"

    @property
    def tag(self) -> str:
        return f"{self.username}#{self.discriminator}"

    @classmethod
    def from_payload(cls, data: Any) -> "GatewayUser":
        if not isinstance(data, dict):
            return cls()
        user_id = data.get("id")
        return cls(
            id=str(user_id) if user_id is not None else None,
            username=str(data.get("username", "")),
            discriminator=str(data.get("discriminator", "0")),
        )


@dataclass(frozen=True)
class ConnectedEvent:
    session_id: str
    user: GatewayUser
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResumedEvent:
    session_id: Optional[str]
    sequence: Optional[int]


@dataclass(frozen=True)
class DisconnectedEvent:
    code: int
    reason: str = ""


@dataclass(frozen=True)
class DispatchEvent:
    name: str
    data: Any
    sequence: Optional[int] = None


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException


EVENT_PAYLOADS: dict[SystemEvent, type] = {
    SystemEvent.CONNECTED:    ConnectedEvent,
    SystemEvent.RESUMED:      ResumedEvent,
    SystemEvent.DISCONNECTED: DisconnectedEvent,
    SystemEvent.MESSAGE:      DispatchEvent,
    SystemEvent.ERROR:        ErrorEvent,
}


# ─────────────────────────────────────────────────────────────────────────────
# Registry + delivery worker
# ─────────────────────────────────────────────────────────────────────────────

_STOP = object()


class ListenerRegistry:
    """Holds handlers/listeners and delivers events to them in order."""

    def __init__(self) -> None:
        self._handlers: dict[str, Listener] = {}
        self._listeners: dict[SystemEvent, list[Listener]] = {kind: [] for kind in SystemEvent}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        # Attached to every delivery queued from now on
        self.session_id: Optional[str] = None

    # -- Registration ---------------------------------------------------------

    def set_handler(self, name: str, handler: Listener) -> None:
        """Register the handler for a dispatch event name, replacing any previous one."""
        self._handlers[name] = handler
        log.debug("gateway.handler_registered", event_name=name)

    def remove_handler(self, name: str) -> bool:
        removed = self._handlers.pop(name, None) is not None
        if removed:
            log.debug("gateway.handler_removed", event_name=name)
        return removed

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    def add_listener(self, kind: SystemEvent, listener: Listener) -> None:
        self._listeners[SystemEvent(kind)].append(listener)

    def remove_listener(self, kind: SystemEvent, listener: Listener) -> bool:
        listeners = self._listeners[SystemEvent(kind)]
        try:
            listeners.remove(listener)
        except ValueError:
            return False
        return True

    # -- Emission -------------------------------------------------------------

    def emit(self, kind: SystemEvent, event: Any) -> None:
        """Queue ``event`` for every listener of ``kind``."""
        expected = EVENT_PAYLOADS[kind]
        if not isinstance(event, expected):
            raise TypeError(
                f"{kind.value} listeners expect {expected.__name__}, got {type(event).__name__}"
            )
        for listener in list(self._listeners[kind]):
            self._enqueue((kind.value, listener, event, self.session_id))

    def dispatch(self, event: DispatchEvent) -> None:
        """Queue the named handler (if any), then the generic MESSAGE listeners."""
        handler = self._handlers.get(event.name)
        if handler is not None:
            self._enqueue((event.name, handler, event.data, self.session_id))
        self.emit(SystemEvent.MESSAGE, event)

    async def join(self) -> None:
        """Wait until every queued delivery has run."""
        await self._queue.join()

    def close(self) -> None:
        """Let the worker exit once the queue has drained."""
        if self._worker is not None and not self._worker.done():
            self._queue.put_nowait(_STOP)

    # -- Internals ------------------------------------------------------------

    def _enqueue(self, item: tuple[str, Listener, Any, Optional[str]]) -> None:
        self._queue.put_nowait(item)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._drain(), name="gateway-listener-delivery"
            )

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    if self._queue.empty():
                        return
                    continue
                label, listener, payload, session_id = item
                with connection_context(session_id):
                    await self._deliver(label, listener, payload)
            finally:
                self._queue.task_done()

    async def _deliver(self, label: str, listener: Listener, payload: Any) -> None:
        try:
            result = listener(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            log.exception(
                "gateway.listener_failed",
                event_name=label,
                listener=getattr(listener, "__qualname__", repr(listener)),
                error=str(exc),
                error_type=type(exc).__name__,
            )
