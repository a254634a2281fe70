"""Client configuration.

Values can be overridden with ``PHD2_``-prefixed environment variables,
e.g. ``PHD2_HOST=guider.local`` or ``PHD2_COMMAND_TIMEOUT=30``.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Connection defaults shared by both PHD2 clients."""

    model_config = SettingsConfigDict(env_prefix="PHD2_", env_file=".env", extra="ignore")

    host: str = "localhost"
    rpc_port: int = 4400  # event server (JSON-RPC), instance 1
    socket_port: int = 4300  # legacy socket server, instance 1

    connection_timeout: float = 10.0
    # None waits forever for a method response, like the wire protocol itself
    command_timeout: Optional[float] = None

    event_queue_size: int = Field(default=10, ge=10)
    stream_limit: int = 1024 * 1024  # max bytes in one JSON line


@lru_cache()
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
