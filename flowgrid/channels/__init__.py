"""Live channel factory and initialization."""

from __future__ import annotations

from typing import Optional

from ..config import FlowgridConfig, load_config
from .base import BaseChannel
from .inmemory import InMemoryChannel


def get_channel(
    backend: Optional[str] = None, config: Optional[FlowgridConfig] = None
) -> BaseChannel:
    """Factory function to get the configured live channel."""

    config = config or load_config()
    backend = (backend or config.channel.backend).lower()

    if backend == "inmemory":
        return InMemoryChannel()
    elif backend == "redis":
        from .redis import RedisChannel

        redis_conf = config.channel.redis
        return RedisChannel(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported channel backend: {backend}")


__all__ = ["BaseChannel", "InMemoryChannel", "get_channel"]
