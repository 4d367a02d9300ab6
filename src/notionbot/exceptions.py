"""
exceptions.py — notionbot Unified Error Hierarchy

All bot-specific exceptions live here. Every layer raises typed
subclasses of BotError — never bare Exception.

Import from here, not from individual modules:
    from notionbot.exceptions import GatewayTimeoutError, GatewayTransportError

Hierarchy:
    BotError
    ├── ConfigError
    └── GatewayError
        ├── GatewayTimeoutError
        ├── GatewayTransportError
        └── ProtocolViolationError

Session invalidation (INVALID_SESSION) is not an exception: the gateway
manager recovers from it internally by resuming or re-identifying.
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class BotError(Exception):
    """Base class for all notionbot exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Config layer
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(BotError):
    """Raised by Settings.validate_all() when configuration problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Gateway layer
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(BotError):
    """Base for gateway connection errors."""


class GatewayTimeoutError(GatewayError):
    """READY/RESUMED did not arrive within the handshake timeout."""

    def __init__(self, timeout: float, message: str = "") -> None:
        self.timeout = timeout
        super().__init__(
            message or f"Gateway handshake did not complete within {timeout:g}s"
        )


class GatewayTransportError(GatewayError):
    """The socket failed or closed before the handshake completed."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        reason: str = "",
    ) -> None:
        self.code = code
        self.reason = reason
        super().__init__(message)


class ProtocolViolationError(GatewayError):
    """An inbound frame was malformed or not a valid gateway payload."""

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


__all__ = [
    "BotError",
    "ConfigError",
    # Gateway
    "GatewayError",
    "GatewayTimeoutError",
    "GatewayTransportError",
    "ProtocolViolationError",
]
