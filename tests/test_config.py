from __future__ import annotations

from presence.config import DEFAULT_REALTIME_CHANNELS, AppConfig


def test_from_env_defaults_without_database() -> None:
    config = AppConfig.from_env({})

    assert config.database is None
    assert config.default_tenant == "default"
    assert config.realtime_channels == DEFAULT_REALTIME_CHANNELS
    assert config.log_level == "INFO"


def test_from_env_reads_presence_variables() -> None:
    config = AppConfig.from_env(
        {
            "DATABASE_URL": "postgres://db/presence",
            "PRESENCE_DB_SCHEMA": "agents",
            "PRESENCE_DEFAULT_TENANT": "acme",
            "PRESENCE_REALTIME_CHANNELS": " telephone , ,webchat",
            "PRESENCE_LOG_LEVEL": "DEBUG",
        }
    )

    assert config.database is not None
    assert config.database.pool.dsn == "postgres://db/presence"
    assert config.database.schema == "agents"
    assert config.default_tenant == "acme"
    assert config.realtime_channels == ("telephone", "webchat")
    assert config.log_level == "DEBUG"


def test_is_realtime_ignores_case() -> None:
    config = AppConfig(realtime_channels=("Telephone",))

    assert config.is_realtime("telephone")
    assert config.is_realtime("TELEPHONE")
    assert not config.is_realtime("email")
