"""In-process event channel."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator, Dict, Optional, Set

from ..contracts import RunEvent
from .base import BaseChannel

logger = logging.getLogger(__name__)


class InMemoryChannel(BaseChannel):
    """One bounded queue per subscriber; slow subscribers are dropped."""

    def __init__(self, max_queue: int = 200) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue[RunEvent]]] = defaultdict(set)
        self._max_queue = max_queue

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, ()))

    async def publish(self, event: RunEvent) -> None:
        dead: list[asyncio.Queue[RunEvent]] = []
        for queue in self._subscribers.get(event.run_id, set()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead.append(queue)
        for queue in dead:
            logger.warning(f"Dropping slow subscriber of run {event.run_id}")
            self._subscribers[event.run_id].discard(queue)

    @asynccontextmanager
    async def subscription(
        self, run_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[AsyncIterator[RunEvent]]:
        queue: asyncio.Queue[RunEvent] = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers[run_id].add(queue)
        try:
            yield self._drain(queue, lifespan)
        finally:
            subscribers = self._subscribers.get(run_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    with suppress(KeyError):
                        del self._subscribers[run_id]

    @staticmethod
    async def _drain(
        queue: asyncio.Queue[RunEvent], lifespan: Optional[float]
    ) -> AsyncIterator[RunEvent]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        while True:
            timeout = None
            if deadline is not None:
                timeout = deadline - loop.time()
                if timeout <= 0:
                    return
            try:
                event = await asyncio.wait_for(queue.get(), timeout)
            except asyncio.TimeoutError:
                return
            yield event
            if event.is_final:
                return
