"""The opaque reasoning call used by workers and the gateway router."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from pydantic_ai import Agent
from pydantic_ai.exceptions import AgentRunError, ModelHTTPError

from ..constants import DEFAULT_MODEL, TRANSIENT_STATUS_CODES
from ..exceptions import WorkerInvocationError

logger = logging.getLogger(__name__)


class Reasoner(Protocol):
    """Anything able to answer a prompt with text."""

    async def complete(
        self, system_prompt: str, user_prompt: str, model: Optional[str] = None
    ) -> str:
        """Return the model's answer; raise ``WorkerInvocationError`` on failure."""


class PydanticAIReasoner:
    """Reasoning call backed by a ``pydantic_ai.Agent``.

    A fresh agent is built per call since the system prompt and model vary
    with the worker.
    """

    def __init__(self, default_model: str = DEFAULT_MODEL) -> None:
        self.default_model = default_model

    def _agent(self, system_prompt: str, model: Optional[str]) -> Agent:
        return Agent(model or self.default_model, system_prompt=system_prompt)

    async def complete(
        self, system_prompt: str, user_prompt: str, model: Optional[str] = None
    ) -> str:
        agent = self._agent(system_prompt, model)
        try:
            result = await agent.run(user_prompt)
        except ModelHTTPError as e:
            raise WorkerInvocationError(
                str(e),
                transient=e.status_code in TRANSIENT_STATUS_CODES,
                status_code=e.status_code,
            ) from e
        except AgentRunError as e:
            raise WorkerInvocationError(str(e)) from e
        except Exception as e:
            raise WorkerInvocationError(f"Reasoning call failed: {e}") from e
        return str(result.output)
