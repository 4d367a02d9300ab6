"""
main.py — notionbot Entry Point

Usage:
    python -m notionbot                          # default settings
    python -m notionbot --log-level DEBUG        # verbose logging
    python -m notionbot --config path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv


def _find_env_file() -> Path | None:
    """Walk up from CWD looking for .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="notionbot",
        description="Discord bot answering mentions from a Notion database",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $NOTIONBOT_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from notionbot.config.settings import load_settings
    from notionbot.exceptions import ConfigError
    from notionbot.observability.logger import get_logger, setup_logging

    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    log = get_logger("notionbot.main")
    return settings, log


def mentions_user(message: Any, user_id: Optional[str]) -> bool:
    """
    True if a MESSAGE_CREATE payload addresses ``user_id`` directly.

    Messages from bots and @everyone/@here pings never count.
    """
    if not user_id or not isinstance(message, dict):
        return False
    author = message.get("author") or {}
    if author.get("bot"):
        return False
    if message.get("mention_everyone"):
        return False
    return any(
        isinstance(u, dict) and str(u.get("id")) == user_id
        for u in message.get("mentions") or []
    )


async def run_bot(settings, log, *, manager=None) -> int:
    """Connect to the gateway and run until a signal or a clean server close."""
    from notionbot.exceptions import GatewayError
    from notionbot.gateway import GatewayEventType, GatewayManager, SystemEvent

    gateway = manager or GatewayManager.from_settings(settings)
    stop = asyncio.Event()

    def _on_connected(event) -> None:
        log.info("bot.online", user=event.user.tag, session_id=event.session_id)

    def _on_resumed(event) -> None:
        log.info("bot.resumed", session_id=event.session_id)

    def _on_disconnected(event) -> None:
        log.info("bot.offline", code=event.code, reason=event.reason)
        stop.set()

    def _on_message(message) -> None:
        user = gateway.user
        if not mentions_user(message, user.id if user else None):
            return
        log.info(
            "bot.mention_received",
            channel_id=message.get("channel_id"),
            message_id=message.get("id"),
            author_id=(message.get("author") or {}).get("id"),
        )

    gateway.on(SystemEvent.CONNECTED, _on_connected)
    gateway.on(SystemEvent.RESUMED, _on_resumed)
    gateway.on(SystemEvent.DISCONNECTED, _on_disconnected)
    gateway.on_event(GatewayEventType.MESSAGE_CREATE.value, _on_message)

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support
            pass

    try:
        try:
            await gateway.connect()
        except GatewayError as exc:
            log.error("bot.connect_failed", error=str(exc), error_type=type(exc).__name__)
            return 1

        await stop.wait()
        log.info("bot.shutting_down")
        await gateway.disconnect()
        await gateway.drain_events()
        return 0
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)
    log.info("bot.starting", gateway_url=settings.gateway.url, intents=settings.gateway.intents)
    return await run_bot(settings, log)


def run() -> None:
    """Console-script entry point."""
    sys.exit(asyncio.run(main()))
