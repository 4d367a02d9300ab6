"""
gateway/protocol.py — Discord Gateway Wire Protocol

Typed frame schema for the gateway connection. Every frame is a JSON
object of the form ``{"op": int, "d": any, "s": int | null, "t": str | null}``.
Only ``op`` is mandatory; ``s`` and ``t`` are set on DISPATCH frames.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from enum import Enum, IntEnum, IntFlag
from typing import Any, Optional

from notionbot.exceptions import ProtocolViolationError

DEFAULT_GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"

# Reported as browser/device in IDENTIFY properties
CLIENT_NAME = "Notion MCP Discord Bot"

# WebSocket close codes used by the manager
NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006


# ─────────────────────────────────────────────────────────────────────────────
# Opcodes / event names / intents
# ─────────────────────────────────────────────────────────────────────────────

class GatewayOpCode(IntEnum):
    """Gateway opcodes. Only a subset is handled by the manager."""

    DISPATCH              = 0
    HEARTBEAT             = 1
    IDENTIFY              = 2
    PRESENCE_UPDATE       = 3
    VOICE_STATE_UPDATE    = 4
    RESUME                = 6
    RECONNECT             = 7
    REQUEST_GUILD_MEMBERS = 8
    INVALID_SESSION       = 9
    HELLO                 = 10
    HEARTBEAT_ACK         = 11


class GatewayEventType(str, Enum):
    """Dispatch event names (the ``t`` field) the bot knows by name."""

    READY          = "READY"
    RESUMED        = "RESUMED"
    MESSAGE_CREATE = "MESSAGE_CREATE"
    GUILD_CREATE   = "GUILD_CREATE"


class GatewayIntent(IntFlag):
    """Event subscription bits sent in IDENTIFY."""

    GUILDS                   = 1 << 0
    GUILD_MEMBERS            = 1 << 1
    GUILD_MODERATION         = 1 << 2
    GUILD_EXPRESSIONS        = 1 << 3
    GUILD_INTEGRATIONS       = 1 << 4
    GUILD_WEBHOOKS           = 1 << 5
    GUILD_INVITES            = 1 << 6
    GUILD_VOICE_STATES       = 1 << 7
    GUILD_PRESENCES          = 1 << 8
    GUILD_MESSAGES           = 1 << 9
    GUILD_MESSAGE_REACTIONS  = 1 << 10
    GUILD_MESSAGE_TYPING     = 1 << 11
    DIRECT_MESSAGES          = 1 << 12
    DIRECT_MESSAGE_REACTIONS = 1 << 13
    DIRECT_MESSAGE_TYPING    = 1 << 14
    MESSAGE_CONTENT          = 1 << 15


DEFAULT_INTENTS = int(
    GatewayIntent.GUILDS | GatewayIntent.GUILD_MESSAGES | GatewayIntent.MESSAGE_CONTENT
)


def default_identify_properties() -> dict[str, str]:
    """IDENTIFY properties used when none are configured."""
    return {"os": sys.platform, "browser": CLIENT_NAME, "device": CLIENT_NAME}


def intents_from_names(names: list[str]) -> int:
    """Combine intent names (case-insensitive) into a bitmask."""
    value = 0
    for name in names:
        try:
            value |= GatewayIntent[name.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown gateway intent: '{name}'") from None
    return int(value)


# ─────────────────────────────────────────────────────────────────────────────
# Frame envelope
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GatewayPayload:
    """One gateway frame, inbound or outbound."""

    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None

    def to_json(self) -> str:
        """Serialize to JSON. ``s``/``t`` are only emitted when set."""
        frame: dict[str, Any] = {"op": self.op, "d": self.d}
        if self.s is not None:
            frame["s"] = self.s
        if self.t is not None:
            frame["t"] = self.t
        return json.dumps(frame)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "GatewayPayload":
        """
        Parse a text frame.

        Raises ProtocolViolationError if the frame is not a JSON object with
        an integer ``op``, or if ``s``/``t`` have the wrong type.
        """
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            frame = json.loads(text)
        except ValueError as exc:
            raise ProtocolViolationError(f"Frame is not valid JSON: {exc}", raw=text) from exc

        if not isinstance(frame, dict):
            raise ProtocolViolationError("Frame is not a JSON object", raw=text)

        op = frame.get("op")
        if not isinstance(op, int) or isinstance(op, bool):
            raise ProtocolViolationError(f"Frame has invalid op: {op!r}", raw=text)

        seq = frame.get("s")
        if seq is not None and (not isinstance(seq, int) or isinstance(seq, bool)):
            raise ProtocolViolationError(f"Frame has invalid sequence: {seq!r}", raw=text)

        event = frame.get("t")
        if event is not None and not isinstance(event, str):
            raise ProtocolViolationError(f"Frame has invalid event name: {event!r}", raw=text)

        return cls(op=op, d=frame.get("d"), s=seq, t=event)


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers — Client → Gateway frames
# ─────────────────────────────────────────────────────────────────────────────

def make_heartbeat(sequence: Optional[int]) -> GatewayPayload:
    """Build a HEARTBEAT carrying the last seen sequence (or null)."""
    return GatewayPayload(op=GatewayOpCode.HEARTBEAT, d=sequence)


def make_identify(token: str, intents: int, properties: dict[str, str]) -> GatewayPayload:
    """Build an IDENTIFY that starts a brand-new session."""
    return GatewayPayload(
        op=GatewayOpCode.IDENTIFY,
        d={
            "token": token,
            "intents": intents,
            "properties": dict(properties),
        },
    )


def make_resume(token: str, session_id: str, sequence: int) -> GatewayPayload:
    """Build a RESUME asking to replay events after ``sequence``."""
    return GatewayPayload(
        op=GatewayOpCode.RESUME,
        d={
            "token": token,
            "session_id": session_id,
            "seq": sequence,
        },
    )
