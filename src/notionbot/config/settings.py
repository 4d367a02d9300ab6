"""
config/settings.py — notionbot Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - GatewayConfig accepts intents as a bitmask or a list of intent names
  - JitterRange rejects negative or inverted delay bounds at parse time
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found
  - load_settings() respects NOTIONBOT_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import sys
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from notionbot.exceptions import ConfigError
from notionbot.gateway.protocol import (
    CLIENT_NAME,
    DEFAULT_GATEWAY_URL,
    DEFAULT_INTENTS,
    intents_from_names,
)

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class JitterRange(BaseModel):
    """Bounds (seconds) for a uniformly random delay."""
    min_seconds: float
    max_seconds: float

    @model_validator(mode="after")
    def _ordered(self) -> "JitterRange":
        if self.min_seconds < 0:
            raise ValueError("min_seconds must be >= 0")
        if self.max_seconds < self.min_seconds:
            raise ValueError(
                f"max_seconds ({self.max_seconds}) must be >= min_seconds ({self.min_seconds})"
            )
        return self

    def as_tuple(self) -> tuple[float, float]:
        return (self.min_seconds, self.max_seconds)


class IdentifyProperties(BaseModel):
    os: str = Field(default_factory=lambda: sys.platform)
    browser: str = CLIENT_NAME
    device: str = CLIENT_NAME


class GatewayConfig(BaseModel):
    url: str = DEFAULT_GATEWAY_URL
    intents: int = DEFAULT_INTENTS
    properties: IdentifyProperties = Field(default_factory=IdentifyProperties)
    handshake_timeout_seconds: float = 30.0
    reconnect_delay: JitterRange = Field(
        default_factory=lambda: JitterRange(min_seconds=1.0, max_seconds=6.0)
    )
    invalid_session_delay: JitterRange = Field(
        default_factory=lambda: JitterRange(min_seconds=2.0, max_seconds=5.0)
    )
    max_message_size: int = 4 * 1024 * 1024

    @field_validator("url")
    @classmethod
    def _websocket_url(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"gateway.url must be a ws:// or wss:// URL, got '{v}'")
        return v

    @field_validator("intents", mode="before")
    @classmethod
    def _coerce_intents(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return intents_from_names([str(name) for name in v])
        return v

    @field_validator("intents")
    @classmethod
    def _non_negative_intents(cls, v: int) -> int:
        if v < 0:
            raise ValueError("gateway.intents must be >= 0")
        return v

    @field_validator("handshake_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("gateway.handshake_timeout_seconds must be > 0")
        return v

    @field_validator("max_message_size")
    @classmethod
    def _positive_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("gateway.max_message_size must be >= 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = True
    json_format: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    notionbot runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    discord_token: Optional[str] = Field(default=None, alias="DISCORD_TOKEN")
    discord_application_id: Optional[str] = Field(default=None, alias="DISCORD_APPLICATION_ID")

    # -- Structured config (from config.yaml) --------------------------------
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("gateway", mode="before")
    @classmethod
    def _coerce_gateway(cls, v: Any) -> Any:
        return GatewayConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def identify_properties(self) -> dict[str, str]:
        return self.gateway.properties.model_dump()

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches what a running bot needs on top of that.
        """
        errors: list[str] = []

        if not (self.discord_token or "").strip():
            errors.append("DISCORD_TOKEN is not set. Add it to your .env file.")

        if self.gateway.intents == 0:
            errors.append(
                "gateway.intents is 0 — the bot would receive no events. "
                "Set it to a bitmask or a list such as [GUILDS, GUILD_MESSAGES]."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nnotionbot startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"gateway", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. NOTIONBOT_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("NOTIONBOT_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading it from the default
    config path on first use.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(
                **{k: v for k, v in _load_yaml(_resolve_config_path(None)).items()
                   if k in _KNOWN_SECTIONS}
            )
        return _singleton
