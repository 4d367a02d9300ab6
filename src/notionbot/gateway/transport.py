"""
gateway/transport.py — Duplex Text-Frame Transport

The gateway manager talks to the network only through the Transport
interface below, so tests can script a fake socket. WebSocketTransport is
the production implementation on top of the ``websockets`` asyncio client.

Contract:
    await transport.connect(url)   # raises GatewayTransportError
    await transport.send(text)     # raises TransportClosed / GatewayTransportError
    await transport.recv()         # returns one text frame,
                                   # raises TransportClosed(code, reason) on close
    await transport.close(code)    # idempotent, never raises
"""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol

import websockets
from websockets.asyncio.client import ClientConnection, connect

from notionbot.exceptions import GatewayTransportError
from notionbot.gateway.protocol import ABNORMAL_CLOSURE, NORMAL_CLOSURE
from notionbot.observability.logger import get_logger

log = get_logger(__name__)


class TransportClosed(Exception):
    """The remote end (or the network) closed the socket."""

    def __init__(self, code: int = ABNORMAL_CLOSURE, reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Transport closed: code={code} reason={reason!r}")


class Transport(Protocol):
    """Interface the manager needs from a socket."""

    async def connect(self, url: str) -> None: ...

    async def send(self, data: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


class WebSocketTransport:
    """
    Transport over a ``websockets`` client connection.

    The library's own ping/pong keepalive is disabled: liveness is the
    gateway heartbeat's job.
    """

    def __init__(self, max_size: Optional[int] = 2**22, open_timeout: float = 10.0):
        self._max_size = max_size
        self._open_timeout = open_timeout
        self._ws: Optional[ClientConnection] = None

    async def connect(self, url: str) -> None:
        try:
            self._ws = await connect(
                url,
                max_size=self._max_size,
                open_timeout=self._open_timeout,
                ping_interval=None,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
            raise GatewayTransportError(
                f"Failed to open gateway socket: {type(exc).__name__}: {exc}"
            ) from exc
        log.debug("transport.opened", url=url)

    async def send(self, data: str) -> None:
        if self._ws is None:
            raise TransportClosed(ABNORMAL_CLOSURE, "socket not open")
        try:
            await self._ws.send(data)
        except websockets.ConnectionClosed as exc:
            raise _closed_from(exc) from exc

    async def recv(self) -> str:
        if self._ws is None:
            raise TransportClosed(ABNORMAL_CLOSURE, "socket not open")
        try:
            frame = await self._ws.recv()
        except websockets.ConnectionClosed as exc:
            raise _closed_from(exc) from exc
        except (OSError, websockets.WebSocketException) as exc:
            raise GatewayTransportError(
                f"Gateway socket error: {type(exc).__name__}: {exc}"
            ) from exc
        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close(code=code, reason=reason)
        except (OSError, websockets.WebSocketException) as exc:
            log.warning("transport.close_failed", error=str(exc), error_type=type(exc).__name__)


def _closed_from(exc: websockets.ConnectionClosed) -> TransportClosed:
    """Map a websockets close into TransportClosed using the peer's close frame."""
    rcvd = exc.rcvd
    if rcvd is None:
        return TransportClosed(ABNORMAL_CLOSURE, "")
    return TransportClosed(rcvd.code, rcvd.reason)
