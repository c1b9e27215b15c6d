from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Signal transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    signal_topic: str = "flowstate.ready"


class RetryConfig(BaseModel):
    """Backoff settings for recoverable step failures."""

    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    max_retries: int = Field(default=3, ge=0)


class FlowstateConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    archive_url: Optional[str] = None
    retry: RetryConfig = RetryConfig()
    default_wait_timeout: float = Field(default=3600.0, gt=0)
    conflict_retries: int = Field(default=5, ge=1)
    retention: float = Field(default=7 * 24 * 3600.0, ge=0)
    inline_retries: bool = True
    # seconds between run_pending passes inside a running worker
    poll_interval: float = Field(default=5.0, gt=0)
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> FlowstateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWSTATE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWSTATE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowstateConfig(**data)
    else:
        config = FlowstateConfig()

    env_db_url = os.getenv("FLOWSTATE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_archive_url = os.getenv("FLOWSTATE_ARCHIVE_URL")
    if env_archive_url:
        config.archive_url = env_archive_url
    return config
