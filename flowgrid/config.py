from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MODEL,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    MAX_TASK_ITERATIONS,
    ROUTING_CONTEXT_LIMIT,
    SUMMARY_LIMIT,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis live channel."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class ChannelConfig(BaseModel):
    """Live channel configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Execution engine tuning."""

    max_task_iterations: int = MAX_TASK_ITERATIONS
    summary_limit: int = SUMMARY_LIMIT
    routing_context_limit: int = ROUTING_CONTEXT_LIMIT
    recover_on_resume: bool = False


class RetryConfig(BaseModel):
    """Retry policy for worker invocations.

    The delay before retry ``n`` (1-based) is ``base_delay * 2 ** n`` capped at
    ``max_delay``, so the first retry already waits twice ``base_delay``.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    max_delay: float = DEFAULT_RETRY_MAX_DELAY


class ApprovalConfig(BaseModel):
    """Policy applied to steps waiting for a human decision.

    ``timeout_seconds`` of ``None`` waits indefinitely.
    """

    timeout_seconds: Optional[float] = None
    on_timeout: Literal["approve", "reject", "fail"] = "fail"


class FlowgridConfig(BaseModel):
    """Top-level configuration model."""

    channel: ChannelConfig = ChannelConfig()
    engine: EngineConfig = EngineConfig()
    retry: RetryConfig = RetryConfig()
    approval: ApprovalConfig = ApprovalConfig()
    database_url: Optional[str] = None
    catalog_path: str = "catalog.yaml"
    default_model: str = DEFAULT_MODEL
    # Creative tasks render images only when an image model is set
    image_model: Optional[str] = None


def load_config(path: Optional[str] = None) -> FlowgridConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWGRID_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWGRID_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowgridConfig(**data)
    else:
        config = FlowgridConfig()

    env_db_url = os.getenv("FLOWGRID_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_channel = os.getenv("FLOWGRID_CHANNEL")
    if env_channel:
        config.channel.backend = env_channel.lower()
    env_model = os.getenv("FLOWGRID_MODEL")
    if env_model:
        config.default_model = env_model
    env_catalog = os.getenv("FLOWGRID_CATALOG")
    if env_catalog:
        config.catalog_path = env_catalog
    return config
