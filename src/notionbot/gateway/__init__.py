"""
gateway/ — Discord Gateway Connection

A hand-rolled client for the Discord gateway WebSocket protocol:
heartbeats, identify/resume, sequence tracking, reconnect with jitter and
invalid-session recovery. Dispatched events are fanned out to handlers
registered on the GatewayManager.
"""

from notionbot.gateway.events import (
    ConnectedEvent,
    DisconnectedEvent,
    DispatchEvent,
    ErrorEvent,
    GatewayUser,
    ResumedEvent,
    SystemEvent,
)
from notionbot.gateway.manager import ConnectionState, GatewayManager
from notionbot.gateway.protocol import GatewayEventType, GatewayIntent, GatewayOpCode, GatewayPayload
from notionbot.gateway.transport import Transport, TransportClosed, WebSocketTransport

__all__ = [
    "ConnectionState",
    "GatewayManager",
    "SystemEvent",
    "ConnectedEvent",
    "ResumedEvent",
    "DisconnectedEvent",
    "DispatchEvent",
    "ErrorEvent",
    "GatewayUser",
    "GatewayEventType",
    "GatewayIntent",
    "GatewayOpCode",
    "GatewayPayload",
    "Transport",
    "TransportClosed",
    "WebSocketTransport",
]
