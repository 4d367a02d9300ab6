"""
tests/unit/test_gateway_manager.py — Gateway Connection Manager Tests

Drives GatewayManager against a scripted in-memory transport.

Covers:
  - Fresh connect: HELLO → IDENTIFY → READY → CONNECTED, "connected" fired once
  - connect() failures: handshake timeout, open failure, socket error and
    close before the handshake, disconnect() while connecting
  - Recovery triggers during the handshake (op 7, missed ack, unexpected
    socket error) fail connect() instead of reconnecting
  - connect() while active returns False without opening another socket
  - Sequence tracking: null keeps the watermark, regressions are ignored
  - Heartbeat: cadence with acks, missed ack triggers exactly one reconnect,
    server-requested heartbeat, old timer inactive after reconnect
  - Resume after abnormal close and after op 7 RECONNECT
  - Unexpected reader errors after connect are reported and recovered from
  - INVALID_SESSION resumable / non-resumable
  - Clean server close (1000) ends the session without reconnecting
  - disconnect() from any state cancels every timer and is idempotent
  - Dispatch: handlers see consistent internal state, malformed frames are
    dropped, slow listeners do not starve the heartbeat
  - Log lines from the manager and from listeners carry the current session id
"""

import asyncio
import json
import random

import pytest
import pytest_asyncio
import structlog

from notionbot.exceptions import GatewayTimeoutError, GatewayTransportError
from notionbot.gateway.events import SystemEvent
import notionbot.gateway.manager as manager_module
from notionbot.gateway.manager import RECONNECT_CLOSE_CODE, ConnectionState, GatewayManager
from notionbot.gateway.transport import TransportClosed

PROPS = {"os": "linux", "browser": "test", "device": "test"}


# ── Helpers ───────────────────────────────────────────────────────────────────

class FakeTransport:
    """In-memory socket: the test plays the server through push()/server_close()."""

    def __init__(self, fail_connect=None):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.url = None
        self.closed_with = None
        self._fail_connect = fail_connect

    async def connect(self, url):
        if self._fail_connect is not None:
            raise self._fail_connect
        self.url = url

    async def send(self, data):
        if self.closed_with is not None:
            raise TransportClosed(self.closed_with, "closed")
        self.sent.append(json.loads(data))

    async def recv(self):
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code=1000, reason=""):
        if self.closed_with is None:
            self.closed_with = code

    # -- server side ----------------------------------------------------------

    def push(self, op, d=None, s=None, t=None):
        frame = {"op": op, "d": d}
        if s is not None:
            frame["s"] = s
        if t is not None:
            frame["t"] = t
        self.inbox.put_nowait(json.dumps(frame))

    def push_raw(self, raw):
        self.inbox.put_nowait(raw)

    def hello(self, interval_ms=30000):
        self.push(10, {"heartbeat_interval": interval_ms})

    def ready(self, session_id="abc", seq=1):
        self.push(0, {
            "session_id": session_id,
            "user": {"id": "42", "username": "Bot", "discriminator": "0001"},
        }, s=seq, t="READY")

    def dispatch(self, name, data, seq):
        self.push(0, data, s=seq, t=name)

    def ack(self):
        self.push(11)

    def server_close(self, code, reason=""):
        self.inbox.put_nowait(TransportClosed(code, reason))

    def fail(self, message="connection reset"):
        self.inbox.put_nowait(GatewayTransportError(message))

    def ops(self):
        return [frame["op"] for frame in self.sent]

    def frames(self, op):
        return [frame for frame in self.sent if frame["op"] == op]


class TransportFactory:
    """Records every transport the manager opens; failures are used in order."""

    def __init__(self, failures=None):
        self.created: list[FakeTransport] = []
        self._failures = list(failures or [])

    def __call__(self):
        error = self._failures.pop(0) if self._failures else None
        transport = FakeTransport(fail_connect=error)
        self.created.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.created[-1]


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_manager(factory, **overrides):
    options = dict(
        properties=PROPS,
        url="wss://gateway.test/?v=10",
        handshake_timeout=5.0,
        reconnect_delay=(0.01, 0.02),
        invalid_session_delay=(0.01, 0.02),
        transport_factory=factory,
        rng=random.Random(7),
    )
    options.update(overrides)
    return GatewayManager("tok", 513, **options)


async def connect_ready(manager, factory, interval_ms=30000, session_id="abc", seq=1):
    task = asyncio.create_task(manager.connect())
    await wait_until(lambda: factory.created and factory.current.url is not None)
    transport = factory.current
    transport.hello(interval_ms)
    await wait_until(lambda: 2 in transport.ops())
    transport.ready(session_id, seq)
    assert await task is True
    return transport


def record(manager, kind):
    seen = []
    manager.on(kind, seen.append)
    return seen


@pytest.fixture
def factory():
    return TransportFactory()


@pytest_asyncio.fixture
async def manager(factory):
    mgr = make_manager(factory)
    yield mgr
    await mgr.disconnect()


# ─────────────────────────────────────────────────────────────────────────────
# Connect
# ─────────────────────────────────────────────────────────────────────────────

class TestConnect:
    @pytest.mark.asyncio
    async def test_fresh_connect(self, manager, factory):
        connected = record(manager, SystemEvent.CONNECTED)

        transport = await connect_ready(manager, factory)
        await manager.drain_events()

        assert transport.url == "wss://gateway.test/?v=10"
        assert transport.ops() == [2]
        assert transport.sent[0]["d"] == {"token": "tok", "intents": 513, "properties": PROPS}
        assert manager.state is ConnectionState.CONNECTED
        assert manager.is_connected
        assert manager.session_id == "abc"
        assert manager.sequence == 1
        assert manager.user.tag == "Bot#0001"
        assert len(connected) == 1
        assert connected[0].session_id == "abc"
        assert connected[0].user.tag == "Bot#0001"
        assert manager.active_timers == ("heartbeat",)

    @pytest.mark.asyncio
    async def test_resumed_during_connect_completes(self, manager, factory):
        resumed = record(manager, SystemEvent.RESUMED)
        task = asyncio.create_task(manager.connect())
        await wait_until(lambda: factory.created and factory.current.url is not None)
        factory.current.hello()
        await wait_until(lambda: factory.current.sent)
        factory.current.dispatch("RESUMED", {}, seq=3)

        assert await task is True
        await manager.drain_events()
        assert manager.state is ConnectionState.CONNECTED
        assert len(resumed) == 1

    @pytest.mark.asyncio
    async def test_connect_while_connected_returns_false(self, manager, factory):
        await connect_ready(manager, factory)

        assert await manager.connect() is False
        assert len(factory.created) == 1
        assert manager.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_connect_while_connecting_returns_false(self, manager, factory):
        task = asyncio.create_task(manager.connect())
        await wait_until(lambda: factory.created)

        assert await manager.connect() is False
        assert len(factory.created) == 1

        await manager.disconnect()
        with pytest.raises(GatewayTransportError):
            await task

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, factory):
        manager = make_manager(factory, handshake_timeout=0.05)

        with pytest.raises(GatewayTimeoutError) as exc_info:
            await manager.connect()

        assert exc_info.value.timeout == 0.05
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.active_timers == ()
        assert factory.current.closed_with == 1000

    @pytest.mark.asyncio
    async def test_hello_without_ready_times_out(self, factory):
        manager = make_manager(factory, handshake_timeout=0.1)
        task = asyncio.create_task(manager.connect())
        await wait_until(lambda: factory.created and factory.current.url is not None)
        factory.current.hello()

        with pytest.raises(GatewayTimeoutError):
            await task
        assert manager.active_timers == ()
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_open_failure_raises(self):
        factory = TransportFactory(failures=[GatewayTransportError("refused")])
        manager = make_manager(factory)

        with pytest.raises(GatewayTransportError, match="refused"):
            await manager.connect()
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.active_timers == ()

    @pytest.mark.asyncio
    async def test_socket_error_before_handshake(self, manager, factory):
        errors = record(manager, SystemEvent.ERROR)
        task = asyncio.create_task(manager.connect())
        await wait_until(lambda: factory.created and factory.current.url is not None)
        factory.current.fail("reset by peer")

        with pytest.raises(GatewayTransportError, match="reset by peer"):
            await task
        await manager.drain_events()
        assert len(errors) == 1
        assert manager.state is ConnectionState.DISCONNECTED
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_close_before_handshake(self, manager, factory):
        task = asyncio.create_task(manager.connect())
        await wait_until(lambda: factory.created and factory.current.url is not None)
        factory.current.hello()
        await wait_until(lambda: factory.current.sent)
        factory.current.server_close(4004, "Authentication failed")

        with pytest.raises(GatewayTransportError) as exc_info:
            await task
        assert exc_info.value.code == 4004
        assert exc_info.value.reason == "Authentication failed"
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.active_timers == ()

    @pytest.mark.asyncio
    async def test_can_connect_again_after_failure(self, factory):
        manager = make_manager(factory, handshake_timeout=0.05)
        with pytest.raises(GatewayTimeoutError):
            await manager.connect()

        transport = await connect_ready(manager, factory)
        assert transport is factory.created[1]
        assert manager.is_connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, factory):
        manager = make_manager(factory)
        disconnected = record(manager, SystemEvent.DISCONNECTED)

        async def serve():
            await wait_until(lambda: factory.created and factory.current.url is not None)
            factory.current.hello()
            await wait_until(lambda: factory.current.sent)
            factory.current.ready()

        server = asyncio.create_task(serve())
        async with manager as mgr:
            assert mgr.is_connected
        await server
        await manager.drain_events()

        assert manager.state is ConnectionState.DISCONNECTED
        assert [ev.code for ev in disconnected] == [1000]

    @pytest.mark.asyncio
    async def test_reconnect_opcode_during_handshake_fails_connect(self):
        refused = [GatewayTransportError("refused") for _ in range(5)]
        factory = TransportFactory(failures=[None, *refused])
        manager = make_manager(factory, handshake_timeout=0.2)
        try:
            task = asyncio.create_task(manager.connect())
            await wait_until(lambda: factory.created and factory.current.url is not None)
            transport = factory.current
            transport.hello()
            await wait_until(lambda: transport.sent)

            transport.push(7)

            with pytest.raises(GatewayTransportError, match="before the handshake"):
                await asyncio.wait_for(task, timeout=1.0)
            assert len(factory.created) == 1
            assert transport.closed_with == 1000
            assert manager.state is ConnectionState.DISCONNECTED
            assert manager.active_timers == ()
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_missed_ack_during_handshake_fails_connect(self, manager, factory):
        task = asyncio.create_task(manager.connect())
        await wait_until(lambda: factory.created and factory.current.url is not None)
        factory.current.hello(30)

        with pytest.raises(GatewayTransportError, match="heartbeat_timeout"):
            await asyncio.wait_for(task, timeout=1.0)
        assert len(factory.created) == 1
        assert len(factory.current.frames(1)) == 1
        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.active_timers == ()

    @pytest.mark.asyncio
    async def test_unexpected_recv_error_fails_connect(self, manager, factory):
        task = asyncio.create_task(manager.connect())
        await wait_until(lambda: factory.created and factory.current.url is not None)
        factory.current.inbox.put_nowait(RuntimeError("decoder blew up"))

        with pytest.raises(GatewayTransportError, match="RuntimeError: decoder blew up"):
            await asyncio.wait_for(task, timeout=1.0)
        assert manager.state is ConnectionState.DISCONNECTED


# ─────────────────────────────────────────────────────────────────────────────
# Sequence tracking
# ─────────────────────────────────────────────────────────────────────────────

class TestSequence:
    @pytest.mark.asyncio
    async def test_sequence_advances_and_never_regresses(self, manager, factory):
        transport = await connect_ready(manager, factory, seq=1)

        transport.dispatch("MESSAGE_CREATE", {"content": "a"}, seq=2)
        transport.ack()
        transport.dispatch("MESSAGE_CREATE", {"content": "b"}, seq=5)
        transport.dispatch("MESSAGE_CREATE", {"content": "c"}, seq=3)
        transport.dispatch("TYPING_START", {}, seq=6)
        await wait_until(lambda: manager.sequence == 6)

        transport.dispatch("MESSAGE_CREATE", {"content": "d"}, seq=4)
        transport.ack()
        await asyncio.sleep(0.02)
        assert manager.sequence == 6

    @pytest.mark.asyncio
    async def test_identify_starts_fresh_sequence(self, manager, factory):
        transport = await connect_ready(manager, factory, seq=1)
        transport.dispatch("MESSAGE_CREATE", {}, seq=40)
        await wait_until(lambda: manager.sequence == 40)
        await manager.disconnect()

        transport = await connect_ready(manager, factory, session_id="new", seq=1)
        assert transport.ops() == [2]
        assert manager.session_id == "new"
        assert manager.sequence == 1


# ─────────────────────────────────────────────────────────────────────────────
# Heartbeat
# ─────────────────────────────────────────────────────────────────────────────

class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_heartbeats_with_acks_keep_connection(self, manager, factory):
        transport = await connect_ready(manager, factory, interval_ms=50, seq=9)

        for count in (1, 2, 3):
            await wait_until(lambda: len(transport.frames(1)) >= count)
            transport.ack()

        assert all(frame["d"] == 9 for frame in transport.frames(1))
        assert manager.state is ConnectionState.CONNECTED
        assert len(factory.created) == 1

    @pytest.mark.asyncio
    async def test_missed_ack_triggers_single_reconnect(self, manager, factory):
        first = await connect_ready(manager, factory, interval_ms=40)

        await wait_until(lambda: len(factory.created) == 2)
        await asyncio.sleep(0.15)

        assert len(first.frames(1)) == 1
        assert first.closed_with == RECONNECT_CLOSE_CODE
        assert len(factory.created) == 2
        assert manager.state is ConnectionState.RESUMING

    @pytest.mark.asyncio
    async def test_server_requested_heartbeat(self, manager, factory):
        transport = await connect_ready(manager, factory, seq=4)

        transport.push(1)
        await wait_until(lambda: transport.frames(1))

        assert transport.frames(1) == [{"op": 1, "d": 4}]

    @pytest.mark.asyncio
    async def test_old_heartbeat_timer_inactive_after_reconnect(self, manager, factory):
        first = await connect_ready(manager, factory, interval_ms=40)
        old_timer = manager._timers["heartbeat"]

        first.server_close(4000)
        await wait_until(lambda: len(factory.created) == 2 and factory.current.url is not None)
        second = factory.current
        second.hello(80)
        await wait_until(lambda: second.sent)
        second.dispatch("RESUMED", {}, seq=2)
        await wait_until(lambda: manager.is_connected)

        new_timer = manager._timers["heartbeat"]
        assert old_timer.done()
        assert new_timer is not old_timer
        assert not new_timer.done()

        sent_on_first = len(first.sent)
        await wait_until(lambda: second.frames(1))
        second.ack()
        await asyncio.sleep(0.03)
        assert len(first.sent) == sent_on_first
        assert len(second.frames(1)) == 1
        assert manager.active_timers == ("heartbeat",)

    @pytest.mark.asyncio
    async def test_slow_listener_does_not_starve_heartbeat(self, manager, factory):
        release = asyncio.Event()

        async def slow(data):
            await release.wait()

        manager.on_event("MESSAGE_CREATE", slow)
        transport = await connect_ready(manager, factory, interval_ms=30)
        transport.dispatch("MESSAGE_CREATE", {"content": "slow"}, seq=2)

        for count in (1, 2, 3):
            await wait_until(lambda: len(transport.frames(1)) >= count)
            transport.ack()

        assert manager.is_connected
        release.set()
        await manager.drain_events()


# ─────────────────────────────────────────────────────────────────────────────
# Reconnect / resume
# ─────────────────────────────────────────────────────────────────────────────

class TestReconnect:
    @pytest.mark.asyncio
    async def test_resume_after_abnormal_close(self, manager, factory):
        connected = record(manager, SystemEvent.CONNECTED)
        resumed = record(manager, SystemEvent.RESUMED)
        first = await connect_ready(manager, factory)
        first.dispatch("MESSAGE_CREATE", {}, seq=42)
        await wait_until(lambda: manager.sequence == 42)

        first.server_close(4000, "Unknown error")
        await wait_until(lambda: manager.state is not ConnectionState.CONNECTED)
        assert manager.state in (ConnectionState.RECONNECTING, ConnectionState.RESUMING)

        await wait_until(lambda: len(factory.created) == 2 and factory.current.url is not None)
        second = factory.current
        assert manager.state is ConnectionState.RESUMING

        second.hello()
        await wait_until(lambda: second.sent)
        assert second.sent == [{"op": 6, "d": {"token": "tok", "session_id": "abc", "seq": 42}}]
        assert manager.state is ConnectionState.CONNECTING

        second.dispatch("RESUMED", {}, seq=43)
        await wait_until(lambda: manager.is_connected)
        await manager.drain_events()

        assert manager.session_id == "abc"
        assert manager.sequence == 43
        assert len(resumed) == 1
        assert resumed[0].session_id == "abc"
        assert len(connected) == 1

    @pytest.mark.asyncio
    async def test_reconnect_opcode(self, manager, factory):
        first = await connect_ready(manager, factory, seq=5)

        first.push(7)
        await wait_until(lambda: len(factory.created) == 2 and factory.current.url is not None)
        assert first.closed_with == RECONNECT_CLOSE_CODE

        second = factory.current
        second.hello()
        await wait_until(lambda: second.sent)
        assert second.ops() == [6]
        assert second.sent[0]["d"]["seq"] == 5

    @pytest.mark.asyncio
    async def test_transport_error_after_connect_reconnects(self, manager, factory):
        errors = record(manager, SystemEvent.ERROR)
        first = await connect_ready(manager, factory)

        first.fail()
        await wait_until(lambda: len(factory.created) == 2)
        await manager.drain_events()

        assert len(errors) == 1
        assert isinstance(errors[0].error, GatewayTransportError)

    @pytest.mark.asyncio
    async def test_unexpected_recv_error_after_connect_reconnects(self, manager, factory):
        errors = record(manager, SystemEvent.ERROR)
        first = await connect_ready(manager, factory)

        first.inbox.put_nowait(ValueError("bad frame buffer"))
        await wait_until(lambda: len(factory.created) == 2)
        await manager.drain_events()

        assert first.closed_with == RECONNECT_CLOSE_CODE
        assert len(errors) == 1
        assert isinstance(errors[0].error, GatewayTransportError)
        assert "ValueError" in str(errors[0].error)

    @pytest.mark.asyncio
    async def test_failed_reopen_is_retried(self):
        factory = TransportFactory(failures=[None, GatewayTransportError("refused")])
        manager = make_manager(factory)
        try:
            first = await connect_ready(manager, factory)
            first.server_close(1006)

            await wait_until(lambda: len(factory.created) == 3 and factory.current.url is not None)
            third = factory.current
            third.hello()
            await wait_until(lambda: third.sent)
            assert third.ops() == [6]
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_handshake_timeout_during_recovery_reconnects(self, factory):
        manager = make_manager(factory, handshake_timeout=0.1)
        try:
            first = await connect_ready(manager, factory)
            first.server_close(4000)

            await wait_until(lambda: len(factory.created) >= 3, timeout=3.0)
            assert factory.created[1].closed_with == RECONNECT_CLOSE_CODE
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_clean_close_ends_session(self, manager, factory):
        disconnected = record(manager, SystemEvent.DISCONNECTED)
        first = await connect_ready(manager, factory)

        first.server_close(1000, "bye")
        await wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)
        await asyncio.sleep(0.05)
        await manager.drain_events()

        assert len(factory.created) == 1
        assert manager.active_timers == ()
        assert [(ev.code, ev.reason) for ev in disconnected] == [(1000, "bye")]


# ─────────────────────────────────────────────────────────────────────────────
# INVALID_SESSION
# ─────────────────────────────────────────────────────────────────────────────

class TestInvalidSession:
    @pytest.mark.asyncio
    async def test_resumable_sends_resume(self, manager, factory):
        transport = await connect_ready(manager, factory)
        transport.dispatch("MESSAGE_CREATE", {}, seq=7)
        await wait_until(lambda: manager.sequence == 7)
        before = len(transport.sent)

        transport.push(9, True)
        await wait_until(lambda: len(transport.sent) > before)

        assert transport.sent[before] == {
            "op": 6, "d": {"token": "tok", "session_id": "abc", "seq": 7},
        }
        assert manager.session_id == "abc"

    @pytest.mark.asyncio
    async def test_not_resumable_reidentifies(self, manager, factory):
        transport = await connect_ready(manager, factory)
        transport.dispatch("MESSAGE_CREATE", {}, seq=7)
        await wait_until(lambda: manager.sequence == 7)
        before = len(transport.sent)

        transport.push(9, False)
        await wait_until(lambda: manager.session_id is None)
        assert manager.sequence is None

        await wait_until(lambda: len(transport.sent) > before)
        assert transport.sent[before]["op"] == 2

        transport.ready(session_id="def", seq=1)
        await wait_until(lambda: manager.session_id == "def")
        assert manager.is_connected
        assert manager.sequence == 1


# ─────────────────────────────────────────────────────────────────────────────
# Disconnect
# ─────────────────────────────────────────────────────────────────────────────

class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_when_idle_is_noop(self, manager, factory):
        disconnected = record(manager, SystemEvent.DISCONNECTED)

        await manager.disconnect()
        await manager.drain_events()

        assert manager.state is ConnectionState.DISCONNECTED
        assert factory.created == []
        assert disconnected == []

    @pytest.mark.asyncio
    async def test_disconnect_when_connected(self, manager, factory):
        disconnected = record(manager, SystemEvent.DISCONNECTED)
        transport = await connect_ready(manager, factory)

        await manager.disconnect()
        await manager.disconnect()
        await manager.drain_events()

        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.active_timers == ()
        assert transport.closed_with == 1000
        assert len(disconnected) == 1
        assert disconnected[0].code == 1000

    @pytest.mark.asyncio
    async def test_disconnect_during_reconnect_backoff(self, factory):
        manager = make_manager(factory, reconnect_delay=(0.2, 0.3))
        first = await connect_ready(manager, factory)

        first.server_close(4000)
        await wait_until(lambda: manager.state is ConnectionState.RECONNECTING)
        assert manager.active_timers == ("reconnect",)

        await manager.disconnect()
        assert manager.active_timers == ()
        await asyncio.sleep(0.35)
        assert len(factory.created) == 1
        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_cancels_session_retry(self, factory):
        manager = make_manager(factory, invalid_session_delay=(0.2, 0.3))
        transport = await connect_ready(manager, factory)
        before = len(transport.sent)

        transport.push(9, False)
        await wait_until(lambda: "session_retry" in manager.active_timers)
        await manager.disconnect()

        assert manager.active_timers == ()
        await asyncio.sleep(0.35)
        assert len(transport.sent) == before


# ─────────────────────────────────────────────────────────────────────────────
# Dispatch
# ─────────────────────────────────────────────────────────────────────────────

class TestDispatch:
    @pytest.mark.asyncio
    async def test_handler_and_message_listener(self, manager, factory):
        calls = []
        manager.on_event("MESSAGE_CREATE", lambda data: calls.append(("handler", data["content"])))
        manager.on(SystemEvent.MESSAGE, lambda ev: calls.append(("message", ev.name)))
        transport = await connect_ready(manager, factory)

        transport.dispatch("MESSAGE_CREATE", {"content": "hi"}, seq=2)
        await wait_until(lambda: manager.sequence == 2)
        await manager.drain_events()

        assert ("handler", "hi") in calls
        assert calls.index(("handler", "hi")) < calls.index(("message", "MESSAGE_CREATE"))

    @pytest.mark.asyncio
    async def test_ready_handler_sees_connected_state(self, manager, factory):
        observed = []
        manager.on_event(
            "READY", lambda data: observed.append((manager.session_id, manager.state))
        )

        await connect_ready(manager, factory)
        await manager.drain_events()

        assert observed == [("abc", ConnectionState.CONNECTED)]

    @pytest.mark.asyncio
    async def test_remove_event(self, manager, factory):
        seen = []
        manager.on_event("MESSAGE_CREATE", seen.append)
        manager.remove_event("MESSAGE_CREATE")
        manager.remove_event("MESSAGE_CREATE")
        transport = await connect_ready(manager, factory)

        transport.dispatch("MESSAGE_CREATE", {"content": "hi"}, seq=2)
        await wait_until(lambda: manager.sequence == 2)
        await manager.drain_events()

        assert seen == []

    @pytest.mark.asyncio
    async def test_raising_handler_keeps_connection(self, manager, factory):
        seen = []

        def broken(data):
            raise RuntimeError("handler bug")

        manager.on_event("MESSAGE_CREATE", broken)
        manager.on(SystemEvent.MESSAGE, seen.append)
        transport = await connect_ready(manager, factory)

        transport.dispatch("MESSAGE_CREATE", {}, seq=2)
        transport.dispatch("MESSAGE_CREATE", {}, seq=3)
        await wait_until(lambda: manager.sequence == 3)
        await manager.drain_events()

        assert manager.is_connected
        assert [ev.sequence for ev in seen] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_malformed_frames_dropped(self, manager, factory):
        seen = []
        manager.on_event("MESSAGE_CREATE", seen.append)
        transport = await connect_ready(manager, factory)

        transport.push_raw("not json at all")
        transport.push_raw('{"op": "zero"}')
        transport.push(0, {"content": "after"}, s="x", t="MESSAGE_CREATE")
        transport.dispatch("MESSAGE_CREATE", {"content": "ok"}, seq=2)
        await wait_until(lambda: manager.sequence == 2)
        await manager.drain_events()

        assert manager.is_connected
        assert seen == [{"content": "ok"}]

    @pytest.mark.asyncio
    async def test_unknown_opcode_ignored(self, manager, factory):
        transport = await connect_ready(manager, factory)

        transport.push(42, {"anything": True})
        transport.dispatch("MESSAGE_CREATE", {}, seq=2)
        await wait_until(lambda: manager.sequence == 2)

        assert manager.is_connected


# ─────────────────────────────────────────────────────────────────────────────
# from_settings
# ─────────────────────────────────────────────────────────────────────────────

class TestFromSettings:
    @pytest.mark.asyncio
    async def test_settings_drive_identify(self, factory):
        from notionbot.config.settings import Settings
        settings = Settings(
            DISCORD_TOKEN="secret",
            gateway={
                "url": "ws://localhost:9999",
                "intents": ["GUILDS", "GUILD_MESSAGES"],
                "properties": {"os": "linux", "browser": "b", "device": "d"},
            },
        )
        manager = GatewayManager.from_settings(settings, transport_factory=factory)
        try:
            transport = await connect_ready(manager, factory)
            assert transport.url == "ws://localhost:9999"
            assert transport.sent[0]["d"] == {
                "token": "secret",
                "intents": 513,
                "properties": {"os": "linux", "browser": "b", "device": "d"},
            }
        finally:
            await manager.disconnect()


# ─────────────────────────────────────────────────────────────────────────────
# Session id on log lines
# ─────────────────────────────────────────────────────────────────────────────

def _bound_session_id():
    return structlog.contextvars.get_contextvars().get("gateway_session_id")


class TestSessionLogging:
    @pytest.mark.asyncio
    async def test_listeners_see_current_session_after_reidentify(self, manager, factory):
        seen = []
        manager.on(SystemEvent.CONNECTED, lambda ev: seen.append((ev.session_id, _bound_session_id())))
        transport = await connect_ready(manager, factory, session_id="abc")

        transport.push(9, False)
        await wait_until(lambda: len(transport.frames(2)) == 2)
        transport.ready(session_id="new", seq=1)
        await wait_until(lambda: manager.session_id == "new")
        await manager.drain_events()

        assert seen == [("abc", "abc"), ("new", "new")]

    @pytest.mark.asyncio
    async def test_disconnected_listener_has_no_session(self, manager, factory):
        seen = []
        manager.on(SystemEvent.DISCONNECTED, lambda ev: seen.append(_bound_session_id()))
        await connect_ready(manager, factory)

        await manager.disconnect()
        await manager.drain_events()

        assert seen == [None]

    @pytest.mark.asyncio
    async def test_binding_does_not_leak_into_caller(self, manager, factory):
        await connect_ready(manager, factory)
        await manager.drain_events()

        assert _bound_session_id() is None

    @pytest.mark.asyncio
    async def test_manager_logger_follows_session(self, manager, factory):
        await connect_ready(manager, factory, session_id="abc")
        assert structlog.get_context(manager._log)["gateway_session_id"] == "abc"

        await manager.disconnect()
        assert manager._log is manager_module.log
