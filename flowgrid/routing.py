"""Task to worker assignment and gateway flow selection."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional, Sequence

from .agent.reasoning import Reasoner
from .constants import LATEST_OUTPUT_LIMIT, ROUTING_CONTEXT_LIMIT, ROUTING_PROMPT_CONTEXT_LIMIT
from .context import FlowState
from .contracts import TaskKind, WorkerRef
from .exceptions import RoutingAmbiguityError
from .process.bpmn import match_key
from .process.graph import Flow, ProcessDefinition

logger = logging.getLogger(__name__)

ROUTING_SYSTEM_PROMPT = (
    "You are a workflow routing engine. Given a gateway decision point, the "
    "available paths, and the current context, pick the most logical path. "
    "Respond with ONLY the number (1, 2, etc.) of the best path. Nothing else."
)

_NUMBER_RE = re.compile(r"^\s*(\d+)")


def _worker_lookup(workers: Sequence[WorkerRef]) -> Dict[str, WorkerRef]:
    lookup: Dict[str, WorkerRef] = {}
    for worker in workers:
        lookup.setdefault(worker.name.strip().lower(), worker)
        lookup.setdefault(match_key(worker.name), worker)
    return lookup


def _find_worker(lookup: Dict[str, WorkerRef], name: str) -> Optional[WorkerRef]:
    if not name:
        return None
    return lookup.get(name.strip().lower()) or lookup.get(match_key(name))


def map_tasks_to_workers(
    definition: ProcessDefinition,
    workers: Sequence[WorkerRef],
    worker_override: Optional[str] = None,
) -> Dict[str, WorkerRef]:
    """Assign a worker to every service and human task of the graph.

    Priority: the worker named in the task's data contract, then the worker
    of a non-human pool the task sends a message to, then the worker of the
    coordinating pool. ``worker_override`` replaces the coordinating pool's
    worker. Tasks left unmatched run as pass-throughs.
    """
    lookup = _worker_lookup(workers)
    coordinator_worker = (
        _find_worker(lookup, worker_override) if worker_override else None
    ) or _find_worker(lookup, definition.coordinator.name)
    if coordinator_worker is None:
        logger.info(f"No worker match for participant {definition.coordinator.name!r}")

    delegates: Dict[str, WorkerRef] = {}
    for message_flow in definition.message_flows:
        target = definition.participant_of(message_flow.target)
        if target is None or target.human or target.id == definition.coordinator.id:
            continue
        worker = _find_worker(lookup, target.name)
        if worker is not None:
            delegates.setdefault(message_flow.source, worker)

    mapping: Dict[str, WorkerRef] = {}
    for task in definition.graph.tasks.values():
        if task.kind not in (TaskKind.SERVICE, TaskKind.HUMAN):
            continue
        contract = definition.contracts.get(task.id)
        worker = (
            (_find_worker(lookup, contract.worker_name) if contract else None)
            or delegates.get(task.id)
            or coordinator_worker
        )
        if worker is None:
            logger.warning(f"No worker for task {task.label!r}, it will pass through")
            continue
        mapping[task.id] = worker
        logger.info(f"Mapped task {task.label!r} ({task.id}) to worker {worker.name!r}")
    return mapping


def build_routing_context(
    flow_state: FlowState,
    latest_output: Optional[Dict[str, Any]] = None,
    limit: int = ROUTING_CONTEXT_LIMIT,
) -> str:
    """Context for a routing decision: summary, request and latest output."""
    parts = [
        f"Flow summary: {flow_state.flow_summary or 'Flow just started.'}",
        f"Original request: {flow_state.original_request}",
    ]
    if latest_output:
        parts.append(
            f"Latest output: {json.dumps(latest_output, default=str)[:LATEST_OUTPUT_LIMIT]}"
        )
    return "\n".join(parts)[:limit]


def format_flow_options(flows: Sequence[Flow]) -> str:
    return "\n".join(
        f'{index}. "{flow.label}"'
        + (f" (condition: {flow.declared_condition})" if flow.declared_condition else "")
        for index, flow in enumerate(flows, start=1)
    )


def parse_route_choice(answer: str, flows: Sequence[Flow]) -> Flow:
    """Map a 1-based numeric answer onto a flow.

    Raises:
        RoutingAmbiguityError: The answer is not a number or out of range.
    """
    match = _NUMBER_RE.match(answer or "")
    if not match:
        raise RoutingAmbiguityError(f"Unparseable routing answer: {answer!r}")
    index = int(match.group(1)) - 1
    if not 0 <= index < len(flows):
        raise RoutingAmbiguityError(f"Routing answer out of range: {answer!r}")
    return flows[index]


class TaskRouter:
    """Pick an outgoing flow of an exclusive gateway with one reasoning call."""

    def __init__(
        self,
        reasoner: Reasoner,
        model: Optional[str] = None,
        context_limit: int = ROUTING_PROMPT_CONTEXT_LIMIT,
    ) -> None:
        self.reasoner = reasoner
        self.model = model
        self.context_limit = context_limit

    def build_prompt(self, gateway_name: str, flows: Sequence[Flow], context: str) -> str:
        return (
            f'Gateway: "{gateway_name}"\n\n'
            f"Available paths:\n{format_flow_options(flows)}\n\n"
            f"Current context (recent agent output):\n{context[: self.context_limit]}\n\n"
            "Which path? Reply with just the number."
        )

    async def choose_gateway_flow(
        self, gateway_name: str, flows: Sequence[Flow], context: str
    ) -> str:
        """Return the id of the chosen flow.

        Falls back to the last declared flow when the answer cannot be used
        or the call fails.
        """
        if not flows:
            raise ValueError(f"Gateway {gateway_name!r} has no outgoing flows")
        fallback = flows[-1]
        try:
            answer = await self.reasoner.complete(
                ROUTING_SYSTEM_PROMPT,
                self.build_prompt(gateway_name, flows, context),
                self.model,
            )
            chosen = parse_route_choice(answer, flows)
        except RoutingAmbiguityError as e:
            logger.info(f"Gateway {gateway_name!r}: {e}, using last path")
            return fallback.id
        except Exception as e:
            logger.error(f"Error routing gateway {gateway_name!r}: {e}")
            return fallback.id
        logger.info(f"Routed gateway {gateway_name!r} to {chosen.label!r}")
        return chosen.id
