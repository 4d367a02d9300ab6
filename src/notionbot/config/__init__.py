"""config/ — Settings loading (config.yaml + .env)."""

from notionbot.config.settings import Settings, get_settings, load_settings

__all__ = ["Settings", "get_settings", "load_settings"]
