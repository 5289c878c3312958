"""Base interface for run event channels."""

from __future__ import annotations

import abc
from typing import AsyncContextManager, AsyncIterator, Optional

from ..contracts import RunEvent


class BaseChannel(metaclass=abc.ABCMeta):
    """Fan-out of run events to live subscribers."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, event: RunEvent) -> None:
        """Deliver an event to every current subscriber of its run."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscription(
        self, run_id: str, lifespan: Optional[float] = None
    ) -> AsyncContextManager[AsyncIterator[RunEvent]]:
        """Register a subscriber of ``run_id`` on enter and yield its event stream.

        Events published after the context is entered are delivered, so a
        caller can read stored state inside the context without missing
        anything published in between. The stream ends after a final event.

        Args:
            run_id: The run to follow
            lifespan: Maximum time in seconds to keep the subscription open.
                If None, runs until the run ends or the consumer stops.
        """
        raise NotImplementedError

    async def subscribe(
        self, run_id: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[RunEvent]:
        """Yield events of ``run_id`` until a final event arrives."""
        async with self.subscription(run_id, lifespan) as events:
            async for event in events:
                yield event
