"""Executable graph model built from a process definition."""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import TaskDataContract, TaskKind


class Task(BaseModel):
    """A node of the executable graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    kind: TaskKind
    process_id: str
    element_type: str
    documentation: str = ""
    # Gateways only
    gateway_type: Optional[str] = None  # exclusive, parallel, inclusive, eventBased
    routing: Optional[str] = None  # reasoning, static
    default_flow: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.id


class Flow(BaseModel):
    """A sequence flow between two nodes."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    source: str
    target: str
    # Condition evaluated at runtime; may be rewritten for reasoning gateways
    condition: Optional[str] = None
    # Condition as authored, shown to the router
    declared_condition: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.id


class Participant(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    process_ref: Optional[str] = None
    human: bool = False


class MessageFlow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str


class ExecutableGraph(BaseModel):
    """Nodes and sequence flows of the coordinating process."""

    model_config = ConfigDict(frozen=True)

    process_id: str
    tasks: Dict[str, Task]
    flows: List[Flow]

    def task(self, task_id: str) -> Task:
        return self.tasks[task_id]

    def outgoing(self, node_id: str) -> List[Flow]:
        return [f for f in self.flows if f.source == node_id]

    def incoming(self, node_id: str) -> List[Flow]:
        return [f for f in self.flows if f.target == node_id]

    def flow(self, flow_id: str) -> Flow | None:
        return next((f for f in self.flows if f.id == flow_id), None)

    def start_events(self) -> List[Task]:
        return [t for t in self.tasks.values() if t.kind == TaskKind.START]

    def is_join(self, node_id: str) -> bool:
        task = self.tasks.get(node_id)
        return (
            task is not None
            and task.kind == TaskKind.GATEWAY
            and task.gateway_type == "parallel"
            and len(self.incoming(node_id)) > 1
        )


class ProcessDefinition(BaseModel):
    """Normalized process: the graph plus the metadata the engine needs.

    Built once when a run starts and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    graph: ExecutableGraph
    coordinator: Participant
    participants: List[Participant] = Field(default_factory=list)
    message_flows: List[MessageFlow] = Field(default_factory=list)
    human_task_ids: FrozenSet[str] = frozenset()
    gateway_flows: Dict[str, List[Flow]] = Field(default_factory=dict)
    contracts: Dict[str, TaskDataContract] = Field(default_factory=dict)
    # element id -> id of the process that owns it, across all pools
    element_process: Dict[str, str] = Field(default_factory=dict)

    def participant_for_process(self, process_id: str) -> Participant | None:
        return next(
            (p for p in self.participants if p.process_ref == process_id), None
        )

    def participant_of(self, element_id: str) -> Participant | None:
        """Participant owning ``element_id``, or the pool itself when it is one."""
        for participant in self.participants:
            if participant.id == element_id:
                return participant
        process_id = self.element_process.get(element_id)
        if process_id is None:
            return None
        return self.participant_for_process(process_id)

    def reasoning_gateways(self) -> List[Task]:
        return [
            t
            for t in self.graph.tasks.values()
            if t.kind == TaskKind.GATEWAY and t.routing == "reasoning"
        ]
