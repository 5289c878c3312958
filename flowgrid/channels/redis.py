"""Redis pub/sub channel for cross-process live streaming."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import RunEvent
from .base import BaseChannel

logger = logging.getLogger(__name__)


class RedisChannel(BaseChannel):
    """Redis-based channel; each run publishes on ``flowgrid:run:<id>``."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    @staticmethod
    def channel_name(run_id: str) -> str:
        return f"flowgrid:run:{run_id}"

    async def connect(self) -> None:
        """Open the Redis connection used for publishing and subscriptions."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info(f"Live channel connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        """Close the Redis connection, if open."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, event: RunEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(self.channel_name(event.run_id), event.to_json())

    @asynccontextmanager
    async def subscription(
        self, run_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[AsyncIterator[RunEvent]]:
        if not self._redis:
            await self.connect()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self.channel_name(run_id))
        try:
            yield self._listen(pubsub, lifespan)
        finally:
            await pubsub.unsubscribe(self.channel_name(run_id))
            await pubsub.aclose()

    @staticmethod
    async def _listen(pubsub: Any, lifespan: Optional[float]) -> AsyncIterator[RunEvent]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            if lifespan and loop.time() - start_time >= lifespan:
                return
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message is None:
                continue
            try:
                event = RunEvent.from_json(message["data"])
            except ValidationError as e:
                logger.warning(f"Failed to parse run event: {e}")
                continue
            yield event
            if event.is_final:
                return
