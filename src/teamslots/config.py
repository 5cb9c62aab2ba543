"""Sync configuration loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings


class SyncConfig(BaseSettings):
    """Settings for the stores, the sync coordinator and logging.

    Every field can be set through a ``TEAMSLOTS_``-prefixed environment
    variable. For local development, create a .env file in the project root.
    """

    # Local persistence
    local_store_dir: str = Field(
        default="data/local",
        description="Directory holding one JSON file per LocalStore key",
    )

    # Remote document store
    remote_base_url: str = Field(
        default="http://localhost:8080/v1",
        description="Base URL of the JSON document API",
    )
    remote_timeout_seconds: float = Field(
        default=8.0,
        gt=0,
        description="Timeout applied to every RemoteStore call",
    )
    remote_poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Polling interval for HTTP subscriptions",
    )

    # Pending-operation replay
    retry_initial_seconds: float = Field(
        default=1.0,
        ge=0,
        description="First backoff delay when replaying a queued write",
    )
    retry_max_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Backoff ceiling when replaying a queued write",
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Immediate attempts per replay cycle before leaving it queued",
    )

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = {
        "env_prefix": "TEAMSLOTS_",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


_config: SyncConfig | None = None


def get_config() -> SyncConfig:
    """Get the sync configuration singleton.

    Returns:
        SyncConfig: Configuration read from the environment on first use.
    """
    global _config
    if _config is None:
        _config = SyncConfig()
    return _config
