from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

import flowgrid.persistence as persistence
from flowgrid.agent import AgentExecutor
from flowgrid.channels import InMemoryChannel
from flowgrid.config import FlowgridConfig
from flowgrid.contracts import WorkerRef
from flowgrid.engine import FlowRunner
from flowgrid.persistence import InMemoryRunRepository
from flowgrid.registry import InMemoryCatalog, ProcessEntry
from flowgrid.routing import ROUTING_SYSTEM_PROMPT, TaskRouter

FIXTURES = Path(__file__).parent / "fixtures"

COORDINATOR = WorkerRef(
    id="worker-coordinator",
    name="Coordinator Agent",
    role="orchestrator",
    system_prompt="You coordinate the campaign.",
)


class ScriptedReasoner:
    """Reasoner answering from a script instead of a model.

    Worker prompts are matched against ``replies`` by substring (the task
    name appears in every worker prompt). Routing prompts consume
    ``route_answers`` in order and fall back to ``"1"``.
    """

    def __init__(
        self,
        replies: Optional[Dict[str, str]] = None,
        route_answers: Optional[List[str]] = None,
        default_reply: str = "Done.",
    ) -> None:
        self.replies = replies or {}
        self.route_answers = list(route_answers or [])
        self.default_reply = default_reply
        self.worker_calls: List[str] = []
        self.routing_calls: List[str] = []

    async def complete(
        self, system_prompt: str, user_prompt: str, model: Optional[str] = None
    ) -> str:
        if system_prompt == ROUTING_SYSTEM_PROMPT:
            self.routing_calls.append(user_prompt)
            return self.route_answers.pop(0) if self.route_answers else "1"
        self.worker_calls.append(user_prompt)
        for marker, reply in self.replies.items():
            if marker in user_prompt:
                return reply
        return self.default_reply


def load_bpmn(name: str) -> str:
    return (FIXTURES / f"{name}.bpmn").read_text()


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for var in (
        "FLOWGRID_CONFIG",
        "FLOWGRID_DATABASE_URL",
        "DATABASE_URL",
        "FLOWGRID_CHANNEL",
        "FLOWGRID_MODEL",
        "FLOWGRID_CATALOG",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence.reset_repository()
    yield
    persistence.reset_repository()


@pytest.fixture
def bpmn() -> Callable[[str], str]:
    return load_bpmn


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog(
        [
            ProcessEntry(id="linear", bpmn=load_bpmn("linear"), workers=[COORDINATOR]),
            ProcessEntry(
                id="approval",
                bpmn=load_bpmn("approval"),
                workers=[COORDINATOR],
                reasoning_gateways=False,
            ),
            ProcessEntry(
                id="parallel", bpmn=load_bpmn("parallel"), workers=[COORDINATOR]
            ),
            ProcessEntry(id="loop", bpmn=load_bpmn("loop"), workers=[COORDINATOR]),
            ProcessEntry(
                id="parallel_review",
                bpmn=load_bpmn("parallel_review"),
                workers=[COORDINATOR],
            ),
        ]
    )


@pytest.fixture
def make_runner(catalog):
    """Factory building a runner on in-memory backends around a reasoner."""

    def _make(
        reasoner: Optional[ScriptedReasoner] = None,
        config: Optional[FlowgridConfig] = None,
        repository: Optional[InMemoryRunRepository] = None,
    ) -> FlowRunner:
        reasoner = reasoner or ScriptedReasoner()
        config = config or FlowgridConfig()
        return FlowRunner(
            repository=repository or InMemoryRunRepository(),
            channel=InMemoryChannel(),
            catalog=catalog,
            executor=AgentExecutor(reasoner, retry=config.retry),
            router=TaskRouter(reasoner),
            config=config,
        )

    return _make


@pytest.fixture
def scripted() -> type[ScriptedReasoner]:
    return ScriptedReasoner
