"""Application configuration objects."""

from __future__ import annotations

import os
from typing import Mapping

from msgspec import Struct

from .database import DatabaseConfig, PoolConfig

DEFAULT_REALTIME_CHANNELS = ("telephone", "video-chat", "asseco-chat")


class AppConfig(Struct, frozen=True):
    """Typed configuration for the status services and the provisioner."""

    database: DatabaseConfig | None = None
    default_tenant: str = "default"
    realtime_channels: tuple[str, ...] = DEFAULT_REALTIME_CHANNELS
    log_level: str = "INFO"

    def is_realtime(self, channel_name: str) -> bool:
        return channel_name.lower() in {name.lower() for name in self.realtime_channels}

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Build a configuration from ``PRESENCE_*`` and ``DATABASE_URL`` variables."""

        env = os.environ if environ is None else environ
        database = None
        dsn = env.get("DATABASE_URL")
        if dsn:
            database = DatabaseConfig(
                pool=PoolConfig(dsn=dsn),
                schema=env.get("PRESENCE_DB_SCHEMA", "presence"),
            )
        realtime = _parse_names(env.get("PRESENCE_REALTIME_CHANNELS")) or DEFAULT_REALTIME_CHANNELS
        return cls(
            database=database,
            default_tenant=env.get("PRESENCE_DEFAULT_TENANT", "default"),
            realtime_channels=realtime,
            log_level=env.get("PRESENCE_LOG_LEVEL", "INFO"),
        )


def _parse_names(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(name.strip() for name in raw.split(",") if name.strip())


__all__ = ["DEFAULT_REALTIME_CHANNELS", "AppConfig"]
