"""
Root conftest — isolate bot secrets from the developer environment so that
Settings() behaves as if no token is present unless a test provides one.
Also disables .env file loading so a local .env never leaks into tests.
"""
import pytest

_SECRET_ENV_VARS = [
    "DISCORD_TOKEN",
    "DISCORD_APPLICATION_ID",
    "NOTIONBOT_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_secrets_from_env(monkeypatch):
    for var in _SECRET_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import notionbot.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
