"""
gateway/manager.py — Discord Gateway Connection Manager

Owns the single persistent gateway connection of the process: connect,
identify or resume, heartbeat, receive dispatches, detect failure and
recover, and notify listeners.

Design
------
* Actor model. Every input that can change connection state (inbound
  frames, socket closes, heartbeat ticks, handshake timeout, reconnect and
  invalid-session timers) is posted to one mailbox and processed by a
  single task, so state/session_id/sequence are only ever mutated there
  (plus connect()/disconnect(), which run while the actor has nothing live).
* Generations. Each opened socket gets a new generation number; mailbox
  messages carry the generation that produced them and stale ones are
  dropped. Tearing a socket down bumps the generation, so a late frame or
  tick from a replaced socket can never act on the new one.
* Timers are asyncio tasks that only post to the mailbox. At most one of
  each kind is alive; arming one cancels its predecessor.
* Listener work runs on ListenerRegistry's delivery task, never on the
  actor, so heartbeats keep their cadence however slow a listener is.

States::

    DISCONNECTED ──connect()──▶ CONNECTING ──READY/RESUMED──▶ CONNECTED
                                   ▲                             │
                                   │ reconnect timer             │ close≠1000 / op 7 /
                                   │ (RESUMING if resumable)     │ missed heartbeat ack
                                   └──────── RECONNECTING ◀──────┘

Usage::

    manager = GatewayManager.from_settings(settings)
    manager.on_event("MESSAGE_CREATE", handle_message)
    manager.on(SystemEvent.CONNECTED, lambda ev: print(ev.user.tag))
    await manager.connect()
    ...
    await manager.disconnect()
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from notionbot.exceptions import (
    GatewayError,
    GatewayTimeoutError,
    GatewayTransportError,
    ProtocolViolationError,
)
from notionbot.gateway.events import (
    ConnectedEvent,
    DisconnectedEvent,
    DispatchEvent,
    ErrorEvent,
    GatewayUser,
    Listener,
    ListenerRegistry,
    ResumedEvent,
    SystemEvent,
)
from notionbot.gateway.protocol import (
    DEFAULT_GATEWAY_URL,
    NORMAL_CLOSURE,
    GatewayEventType,
    GatewayOpCode,
    GatewayPayload,
    default_identify_properties,
    make_heartbeat,
    make_identify,
    make_resume,
)
from notionbot.gateway.transport import Transport, TransportClosed, WebSocketTransport
from notionbot.observability.logger import bind_connection, get_logger

if TYPE_CHECKING:
    from notionbot.config.settings import Settings

log = get_logger(__name__)

# Close code used when we drop a socket in order to resume on a new one.
# Closing with 1000 would end the session server-side.
RECONNECT_CLOSE_CODE = 4000


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING   = "connecting"
    CONNECTED    = "connected"
    RECONNECTING = "reconnecting"
    RESUMING     = "resuming"


# ─────────────────────────────────────────────────────────────────────────────
# Mailbox messages
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class _Frame:
    gen: int
    raw: str


@dataclass(frozen=True)
class _Closed:
    gen: int
    code: int
    reason: str


@dataclass(frozen=True)
class _Failed:
    gen: int
    error: Exception


@dataclass(frozen=True)
class _HeartbeatTick:
    gen: int


@dataclass(frozen=True)
class _HandshakeTimeout:
    gen: int


@dataclass(frozen=True)
class _ReconnectDue:
    gen: int


@dataclass(frozen=True)
class _SessionRetryDue:
    gen: int
    resume: bool


_TIMER_NAMES = ("heartbeat", "handshake", "reconnect", "session_retry")


class GatewayManager:
    """
    Client for one Discord gateway session.

    Async context manager — connects on enter, disconnects on exit.
    """

    def __init__(
        self,
        token: str,
        intents: int,
        *,
        properties: Optional[dict[str, str]] = None,
        url: str = DEFAULT_GATEWAY_URL,
        handshake_timeout: float = 30.0,
        reconnect_delay: tuple[float, float] = (1.0, 6.0),
        invalid_session_delay: tuple[float, float] = (2.0, 5.0),
        transport_factory: Optional[Callable[[], Transport]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._token = token
        self._intents = intents
        self._properties = dict(properties or default_identify_properties())
        self._url = url
        self._handshake_timeout = handshake_timeout
        self._reconnect_delay = reconnect_delay
        self._invalid_session_delay = invalid_session_delay
        self._transport_factory = transport_factory or WebSocketTransport
        self._rng = rng or random.Random()

        self._state = ConnectionState.DISCONNECTED
        self._session_id: Optional[str] = None
        self._sequence: Optional[int] = None
        self._user: Optional[GatewayUser] = None
        self._heartbeat_acked = False
        self._heartbeat_interval: Optional[float] = None

        self._transport: Optional[Transport] = None
        self._gen = 0
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._actor: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None
        self._timers: dict[str, Optional[asyncio.Task]] = {name: None for name in _TIMER_NAMES}
        self._connect_future: Optional[asyncio.Future] = None

        self._listeners = ListenerRegistry()
        self._log = log

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        transport_factory: Optional[Callable[[], Transport]] = None,
        rng: Optional[random.Random] = None,
    ) -> "GatewayManager":
        """Build a manager from the gateway section of Settings."""
        gw = settings.gateway
        if transport_factory is None:
            def _websocket_transport() -> Transport:
                return WebSocketTransport(max_size=gw.max_message_size)
            transport_factory = _websocket_transport
        return cls(
            token=settings.discord_token or "",
            intents=gw.intents,
            properties=settings.identify_properties,
            url=gw.url,
            handshake_timeout=gw.handshake_timeout_seconds,
            reconnect_delay=gw.reconnect_delay.as_tuple(),
            invalid_session_delay=gw.invalid_session_delay.as_tuple(),
            transport_factory=transport_factory,
            rng=rng,
        )

    async def __aenter__(self) -> "GatewayManager":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.disconnect()

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def sequence(self) -> Optional[int]:
        return self._sequence

    @property
    def user(self) -> Optional[GatewayUser]:
        return self._user

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def active_timers(self) -> tuple[str, ...]:
        """Names of the timers currently armed."""
        return tuple(
            name for name, task in self._timers.items()
            if task is not None and not task.done()
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Listener registration
    # ─────────────────────────────────────────────────────────────────────────

    def on_event(self, event_name: str, handler: Listener) -> None:
        """Route dispatch ``event_name`` to ``handler`` (replaces any previous one)."""
        self._listeners.set_handler(str(event_name), handler)

    def remove_event(self, event_name: str) -> None:
        self._listeners.remove_handler(str(event_name))

    def on(self, kind: SystemEvent, listener: Listener) -> None:
        """Observe a connection-level event; see events.EVENT_PAYLOADS for payload types."""
        self._listeners.add_listener(kind, listener)

    def off(self, kind: SystemEvent, listener: Listener) -> None:
        self._listeners.remove_listener(kind, listener)

    async def drain_events(self) -> None:
        """Wait until every queued listener delivery has run."""
        await self._listeners.join()

    # ─────────────────────────────────────────────────────────────────────────
    # Connection lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> bool:
        """
        Open the gateway and wait for READY (or RESUMED).

        Returns True once connected, False without touching the network if a
        connection is already active or recovering.

        Raises:
            GatewayTimeoutError:   no READY/RESUMED within the handshake timeout
            GatewayTransportError: the socket failed or closed before the handshake
        """
        if self._state is not ConnectionState.DISCONNECTED:
            self._log.warning("gateway.connect_ignored", state=self._state.value)
            return False

        self._state = ConnectionState.CONNECTING
        self._log.info("gateway.connecting", url=self._url)

        future = asyncio.get_running_loop().create_future()
        self._connect_future = future
        self._ensure_actor()
        try:
            await self._open_transport()
        except GatewayTransportError:
            await self._teardown()
            self._state = ConnectionState.DISCONNECTED
            self._connect_future = None
            if not future.done():
                future.cancel()
            await self._stop_actor()
            raise

        try:
            return await future
        except asyncio.CancelledError:
            await self.disconnect()
            raise
        except GatewayError:
            await self._stop_actor()
            raise
        finally:
            self._connect_future = None

    async def disconnect(self) -> None:
        """Close the connection from any state. Idempotent."""
        previous = self._state
        self._state = ConnectionState.DISCONNECTED
        await self._teardown(NORMAL_CLOSURE, "Client requested disconnect")

        pending = self._pending_connect()
        if pending is not None:
            pending.set_exception(
                GatewayTransportError("Disconnected before the handshake completed")
            )
        await self._stop_actor()

        if previous is ConnectionState.DISCONNECTED:
            return
        self._log.info("gateway.disconnected", previous_state=previous.value)
        self._bind_session(None)
        self._listeners.emit(
            SystemEvent.DISCONNECTED,
            DisconnectedEvent(code=NORMAL_CLOSURE, reason="User requested disconnect"),
        )
        self._listeners.close()

    # ─────────────────────────────────────────────────────────────────────────
    # Actor
    # ─────────────────────────────────────────────────────────────────────────

    def _ensure_actor(self) -> None:
        if self._actor is None or self._actor.done():
            self._mailbox = asyncio.Queue()
            self._actor = asyncio.get_running_loop().create_task(
                self._run(), name="gateway-actor"
            )

    async def _stop_actor(self) -> None:
        actor, self._actor = self._actor, None
        if actor is None or actor is asyncio.current_task():
            return
        actor.cancel()
        try:
            await actor
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            msg = await self._mailbox.get()
            if msg.gen != self._gen:
                self._log.debug("gateway.stale_message", kind=type(msg).__name__, gen=msg.gen)
                continue
            try:
                await self._handle(msg)
            except Exception as exc:
                # The actor must outlive a bad message.
                self._log.exception(
                    "gateway.actor_error",
                    kind=type(msg).__name__,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def _handle(self, msg: Any) -> None:
        if isinstance(msg, _Frame):
            await self._on_frame(msg.raw)
        elif isinstance(msg, _HeartbeatTick):
            await self._on_heartbeat_tick()
        elif isinstance(msg, _Closed):
            await self._on_closed(msg.code, msg.reason)
        elif isinstance(msg, _Failed):
            await self._on_failed(msg.error)
        elif isinstance(msg, _HandshakeTimeout):
            await self._on_handshake_timeout()
        elif isinstance(msg, _ReconnectDue):
            await self._on_reconnect_due()
        elif isinstance(msg, _SessionRetryDue):
            if msg.resume:
                await self._send_resume()
            else:
                await self._send_identify()

    def _arm(self, name: str, delay: float, msg: Any) -> None:
        """Arm timer ``name`` to post ``msg`` after ``delay`` seconds, replacing any live one."""
        self._cancel_timer(name)
        self._timers[name] = asyncio.get_running_loop().create_task(
            self._post_after(delay, msg), name=f"gateway-{name}-timer"
        )

    def _cancel_timer(self, name: str) -> None:
        task, self._timers[name] = self._timers[name], None
        if task is not None and not task.done():
            task.cancel()

    async def _post_after(self, delay: float, msg: Any) -> None:
        await asyncio.sleep(delay)
        self._mailbox.put_nowait(msg)

    # ─────────────────────────────────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────────────────────────────────

    async def _open_transport(self) -> None:
        self._gen += 1
        gen = self._gen
        transport = self._transport_factory()
        await transport.connect(self._url)

        if gen != self._gen:
            # disconnect() ran while the socket was opening
            await transport.close(NORMAL_CLOSURE, "Connection aborted")
            raise GatewayTransportError("Connection aborted while opening the gateway socket")

        self._transport = transport
        self._reader = asyncio.get_running_loop().create_task(
            self._read_loop(transport, gen), name="gateway-reader"
        )
        self._arm("handshake", self._handshake_timeout, _HandshakeTimeout(gen))
        self._log.debug("gateway.socket_opened", gen=gen)

    async def _read_loop(self, transport: Transport, gen: int) -> None:
        try:
            while True:
                raw = await transport.recv()
                self._mailbox.put_nowait(_Frame(gen, raw))
        except TransportClosed as exc:
            self._mailbox.put_nowait(_Closed(gen, exc.code, exc.reason))
        except GatewayTransportError as exc:
            self._mailbox.put_nowait(_Failed(gen, exc))
        except Exception as exc:
            error = GatewayTransportError(f"Gateway socket error: {type(exc).__name__}: {exc}")
            self._mailbox.put_nowait(_Failed(gen, error))

    async def _teardown(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        """Invalidate the current generation, cancel every timer and close the socket."""
        self._gen += 1
        for name in _TIMER_NAMES:
            self._cancel_timer(name)
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close(code, reason)

    async def _send(self, payload: GatewayPayload) -> None:
        if self._transport is None:
            self._log.debug("gateway.send_skipped", op=int(payload.op))
            return
        try:
            await self._transport.send(payload.to_json())
        except (TransportClosed, GatewayTransportError) as exc:
            # The reader reports the close; nothing else to do here.
            self._log.warning("gateway.send_failed", op=int(payload.op), error=str(exc))

    def _pending_connect(self) -> Optional[asyncio.Future]:
        future = self._connect_future
        if future is None or future.done():
            return None
        return future

    async def _fail_connect(self, future: asyncio.Future, error: Exception) -> None:
        await self._teardown()
        self._state = ConnectionState.DISCONNECTED
        future.set_exception(error)

    def _bind_session(self, session_id: Optional[str]) -> None:
        """Tag manager and listener log lines with the current session id."""
        self._log = bind_connection(log, session_id)
        self._listeners.session_id = session_id

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound frames
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_frame(self, raw: str) -> None:
        try:
            payload = GatewayPayload.from_json(raw)
        except ProtocolViolationError as exc:
            self._log.warning("gateway.protocol_violation", error=str(exc), frame=raw[:200])
            return

        self._track_sequence(payload.s)
        op = payload.op

        if op == GatewayOpCode.HELLO:
            await self._on_hello(payload.d)
        elif op == GatewayOpCode.HEARTBEAT_ACK:
            self._heartbeat_acked = True
            self._log.debug("gateway.heartbeat.ack")
        elif op == GatewayOpCode.HEARTBEAT:
            self._log.debug("gateway.heartbeat.requested")
            await self._send(make_heartbeat(self._sequence))
        elif op == GatewayOpCode.RECONNECT:
            self._log.info("gateway.reconnect_requested")
            await self._schedule_reconnect("server_requested")
        elif op == GatewayOpCode.INVALID_SESSION:
            self._on_invalid_session(bool(payload.d))
        elif op == GatewayOpCode.DISPATCH:
            self._on_dispatch(payload)
        else:
            self._log.debug("gateway.unhandled_op", op=op)

    def _track_sequence(self, seq: Optional[int]) -> None:
        if seq is None:
            return
        if self._sequence is not None and seq < self._sequence:
            self._log.warning("gateway.sequence_regressed", current=self._sequence, received=seq)
            return
        self._sequence = seq

    async def _on_hello(self, data: Any) -> None:
        interval = data.get("heartbeat_interval") if isinstance(data, dict) else None
        if not isinstance(interval, (int, float)) or isinstance(interval, bool) or interval <= 0:
            self._log.warning("gateway.protocol_violation", error="HELLO without a valid heartbeat_interval")
            return

        self._log.info("gateway.hello", heartbeat_interval_ms=interval)
        self._start_heartbeat(interval / 1000.0)

        resume = (
            self._state is ConnectionState.RESUMING
            and self._session_id is not None
            and self._sequence is not None
        )
        self._state = ConnectionState.CONNECTING
        if resume:
            await self._send_resume()
        else:
            await self._send_identify()

    def _on_dispatch(self, payload: GatewayPayload) -> None:
        name = payload.t or ""
        self._log.debug("gateway.dispatch", event_name=name, sequence=payload.s)

        if name == GatewayEventType.READY.value:
            self._on_ready(payload.d)
        elif name == GatewayEventType.RESUMED.value:
            self._on_resumed()

        self._listeners.dispatch(DispatchEvent(name=name, data=payload.d, sequence=payload.s))

    def _on_ready(self, data: Any) -> None:
        session_id = data.get("session_id") if isinstance(data, dict) else None
        if not isinstance(session_id, str) or not session_id:
            self._log.warning("gateway.protocol_violation", error="READY without a session_id")
            return

        self._session_id = session_id
        self._user = GatewayUser.from_payload(data.get("user"))
        self._state = ConnectionState.CONNECTED
        self._cancel_timer("handshake")
        self._bind_session(session_id)
        self._log.info("gateway.ready", user=self._user.tag, session_id=session_id)

        pending = self._pending_connect()
        if pending is not None:
            pending.set_result(True)
        self._listeners.emit(
            SystemEvent.CONNECTED,
            ConnectedEvent(session_id=session_id, user=self._user, data=data),
        )

    def _on_resumed(self) -> None:
        self._state = ConnectionState.CONNECTED
        self._cancel_timer("handshake")
        self._log.info("gateway.resumed", session_id=self._session_id, sequence=self._sequence)

        pending = self._pending_connect()
        if pending is not None:
            pending.set_result(True)
        self._listeners.emit(
            SystemEvent.RESUMED,
            ResumedEvent(session_id=self._session_id, sequence=self._sequence),
        )

    def _on_invalid_session(self, resumable: bool) -> None:
        self._log.warning("gateway.session_invalidated", resumable=resumable)
        if not resumable:
            self._session_id = None
            self._sequence = None
            self._bind_session(None)
        delay = self._rng.uniform(*self._invalid_session_delay)
        self._arm("session_retry", delay, _SessionRetryDue(self._gen, resume=resumable))

    # ─────────────────────────────────────────────────────────────────────────
    # Heartbeat
    # ─────────────────────────────────────────────────────────────────────────

    def _start_heartbeat(self, interval: float) -> None:
        self._cancel_timer("heartbeat")
        self._heartbeat_acked = True
        self._heartbeat_interval = interval
        gen = self._gen
        self._timers["heartbeat"] = asyncio.get_running_loop().create_task(
            self._heartbeat_loop(interval, gen), name="gateway-heartbeat-timer"
        )

    async def _heartbeat_loop(self, interval: float, gen: int) -> None:
        while True:
            await asyncio.sleep(interval)
            self._mailbox.put_nowait(_HeartbeatTick(gen))

    async def _on_heartbeat_tick(self) -> None:
        if self._transport is None:
            return
        if not self._heartbeat_acked:
            self._log.warning("gateway.heartbeat.ack_missed", interval=self._heartbeat_interval)
            await self._schedule_reconnect("heartbeat_timeout")
            return
        self._heartbeat_acked = False
        await self._send(make_heartbeat(self._sequence))
        self._log.debug("gateway.heartbeat.sent", sequence=self._sequence)

    # ─────────────────────────────────────────────────────────────────────────
    # Identify / resume
    # ─────────────────────────────────────────────────────────────────────────

    async def _send_identify(self) -> None:
        # A fresh session starts a fresh sequence.
        self._session_id = None
        self._sequence = None
        self._log.info("gateway.identify", intents=self._intents)
        await self._send(make_identify(self._token, self._intents, self._properties))

    async def _send_resume(self) -> None:
        if self._session_id is None or self._sequence is None:
            self._log.warning("gateway.resume_unavailable", session_id=self._session_id)
            await self._send_identify()
            return
        self._log.info("gateway.resume", session_id=self._session_id, sequence=self._sequence)
        await self._send(make_resume(self._token, self._session_id, self._sequence))

    # ─────────────────────────────────────────────────────────────────────────
    # Failure handling / recovery
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_closed(self, code: int, reason: str) -> None:
        self._log.warning("gateway.closed", code=code, reason=reason, state=self._state.value)

        pending = self._pending_connect()
        if pending is not None:
            await self._fail_connect(
                pending,
                GatewayTransportError(
                    f"Gateway closed the connection before the handshake completed "
                    f"(code={code})",
                    code=code,
                    reason=reason,
                ),
            )
            return

        if code == NORMAL_CLOSURE:
            await self._teardown()
            self._state = ConnectionState.DISCONNECTED
            self._bind_session(None)
            self._log.info("gateway.closed_normally")
            self._listeners.emit(SystemEvent.DISCONNECTED, DisconnectedEvent(code=code, reason=reason))
            return

        await self._schedule_reconnect(f"closed:{code}")

    async def _on_failed(self, error: Exception) -> None:
        self._log.error("gateway.transport_error", error=str(error), state=self._state.value)
        self._listeners.emit(SystemEvent.ERROR, ErrorEvent(error=error))

        pending = self._pending_connect()
        if pending is not None:
            await self._fail_connect(pending, error)
            return
        await self._schedule_reconnect("transport_error")

    async def _on_handshake_timeout(self) -> None:
        if self._state is ConnectionState.CONNECTED:
            return
        self._log.error("gateway.handshake_timeout", timeout=self._handshake_timeout)

        pending = self._pending_connect()
        if pending is not None:
            await self._fail_connect(pending, GatewayTimeoutError(self._handshake_timeout))
            return
        await self._schedule_reconnect("handshake_timeout")

    async def _schedule_reconnect(self, reason: str) -> None:
        if self._state is ConnectionState.RECONNECTING:
            return

        pending = self._pending_connect()
        if pending is not None:
            # Recovery only starts once connect() has succeeded
            self._log.warning("gateway.connect_aborted", reason=reason)
            await self._fail_connect(
                pending,
                GatewayTransportError(
                    f"Gateway connection lost before the handshake completed ({reason})"
                ),
            )
            return

        self._state = ConnectionState.RECONNECTING
        await self._teardown(RECONNECT_CLOSE_CODE, "Reconnecting")

        delay = self._rng.uniform(*self._reconnect_delay)
        self._log.info("gateway.reconnect.scheduled", reason=reason, delay_seconds=round(delay, 3))
        self._arm("reconnect", delay, _ReconnectDue(self._gen))

    async def _on_reconnect_due(self) -> None:
        resumable = self._session_id is not None and self._sequence is not None
        self._state = ConnectionState.RESUMING if resumable else ConnectionState.CONNECTING
        self._log.info("gateway.reconnecting", resume=resumable)
        try:
            await self._open_transport()
        except GatewayTransportError as exc:
            self._log.warning("gateway.reconnect.failed", error=str(exc))
            await self._schedule_reconnect("reconnect_failed")
