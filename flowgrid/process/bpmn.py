"""Extract and normalize the executable graph of a BPMN collaboration."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Dict, Iterable, List, Optional, Sequence

from ..constants import HUMAN_ROLE_KEYWORDS, ROUTE_VARIABLE_PREFIX
from ..contracts import TaskDataContract, TaskKind, WorkerRef
from ..exceptions import DefinitionError
from .contracts import parse_data_contract
from .graph import (
    ExecutableGraph,
    Flow,
    MessageFlow,
    Participant,
    ProcessDefinition,
    Task,
)

logger = logging.getLogger(__name__)

SERVICE_TYPES = frozenset(
    {
        "task",
        "serviceTask",
        "sendTask",
        "receiveTask",
        "scriptTask",
        "businessRuleTask",
        "callActivity",
        "subProcess",
    }
)
HUMAN_TYPES = frozenset({"userTask", "manualTask"})
GATEWAY_TYPES = {
    "exclusiveGateway": "exclusive",
    "inclusiveGateway": "inclusive",
    "parallelGateway": "parallel",
    "eventBasedGateway": "eventBased",
    "complexGateway": "complex",
}
EVENT_TYPES = {
    "startEvent": TaskKind.START,
    "endEvent": TaskKind.END,
    "intermediateCatchEvent": TaskKind.INTERMEDIATE_EVENT,
    "intermediateThrowEvent": TaskKind.INTERMEDIATE_EVENT,
}
# Gateways that pick exactly one outgoing flow
CHOICE_GATEWAYS = frozenset({"exclusive", "inclusive", "eventBased", "complex"})

_HUMAN_RE = re.compile("|".join(HUMAN_ROLE_KEYWORDS), re.IGNORECASE)
_AGENT_SUFFIX_RE = re.compile(r"\s+agent$", re.IGNORECASE)


def match_key(name: str) -> str:
    """Case-insensitive lookup key with a trailing " agent" stripped."""
    return _AGENT_SUFFIX_RE.sub("", name.strip()).lower()


def route_variable(gateway_id: str) -> str:
    return f"{ROUTE_VARIABLE_PREFIX}{gateway_id}"


def route_condition(gateway_id: str, flow_id: str) -> str:
    return f"${{{route_variable(gateway_id)} == '{flow_id}'}}"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def _text(element: ET.Element, name: str) -> str:
    found = _children(element, name)
    return (found[0].text or "").strip() if found else ""


def _spring_to_dollar(expression: str) -> str:
    return expression.replace("#{", "${")


def _parse_participants(root: ET.Element) -> List[Participant]:
    participants = []
    for element in root.iter():
        if _local(element.tag) != "participant":
            continue
        name = element.get("name") or element.get("id", "")
        participants.append(
            Participant(
                id=element.get("id", ""),
                name=name,
                process_ref=element.get("processRef"),
                human=bool(_HUMAN_RE.search(name)),
            )
        )
    return participants


def _parse_message_flows(root: ET.Element) -> List[MessageFlow]:
    return [
        MessageFlow(
            id=element.get("id", ""),
            source=element.get("sourceRef", ""),
            target=element.get("targetRef", ""),
        )
        for element in root.iter()
        if _local(element.tag) == "messageFlow"
    ]


def _select_coordinator(
    processes: Sequence[ET.Element],
    participants: Sequence[Participant],
    candidate_names: Iterable[str],
) -> Participant:
    for name in candidate_names:
        key = match_key(name)
        for participant in participants:
            if participant.process_ref and match_key(participant.name) == key:
                return participant

    by_process = {p.process_ref: p for p in participants if p.process_ref}
    for process in processes:
        process_id = process.get("id", "")
        participant = by_process.get(process_id)
        flagged = "human" in process_id.lower() or (
            participant is not None and "human" in participant.name.lower()
        )
        if flagged:
            continue
        if participant is not None:
            return participant
        if not participants:
            return Participant(
                id=process_id,
                name=process.get("name") or process_id,
                process_ref=process_id,
            )

    raise DefinitionError("Cannot find a coordinating process in the definition")


def _human_task_ids(
    process: ET.Element,
    coordinator: Participant,
    participants: Sequence[Participant],
    message_flows: Sequence[MessageFlow],
    element_process: Dict[str, str],
) -> set[str]:
    human_pools = {p.id for p in participants if p.human and p.id != coordinator.id}
    human_processes = {
        p.process_ref for p in participants if p.id in human_pools and p.process_ref
    }

    ids: set[str] = set()
    for flow in message_flows:
        if element_process.get(flow.source) != coordinator.process_ref:
            continue
        if flow.target in human_pools or element_process.get(flow.target) in human_processes:
            logger.info(f"Human checkpoint detected: {flow.source} sends to {flow.target}")
            ids.add(flow.source)

    for child in process:
        if _local(child.tag) in HUMAN_TYPES:
            ids.add(child.get("id", ""))
    return ids


def _parse_contracts(processes: Iterable[ET.Element]) -> Dict[str, TaskDataContract]:
    contracts: Dict[str, TaskDataContract] = {}
    for process in processes:
        for element in process.iter():
            if _local(element.tag) not in SERVICE_TYPES | HUMAN_TYPES:
                continue
            task_id = element.get("id", "")
            try:
                contract = parse_data_contract(_text(element, "documentation"))
            except DefinitionError as e:
                raise DefinitionError(f"Task {task_id}: {e}") from e
            if contract is not None:
                contracts[task_id] = contract
                logger.debug(
                    f"Task {task_id}: input={contract.input_keys} output={contract.output_keys}"
                )
    return contracts


def normalize(
    raw_definition: str,
    workers: Sequence[WorkerRef] = (),
    coordinator: Optional[str] = None,
    reasoning_gateways: bool = True,
) -> ProcessDefinition:
    """Build the executable definition of a BPMN collaboration.

    Args:
        raw_definition: BPMN 2.0 XML, either a collaboration of several pools
            or a single bare process.
        workers: Workers of the process; one with role ``orchestrator``
            names the coordinating pool when ``coordinator`` is not given.
        coordinator: Explicit name of the coordinating participant.
        reasoning_gateways: Route exclusive gateways with two or more
            outgoing flows through the reasoning call.

    Raises:
        DefinitionError: The XML is malformed, has no coordinating process
            or the coordinating process has no start event.
    """
    try:
        root = ET.fromstring(raw_definition)
    except ET.ParseError as e:
        raise DefinitionError(f"Malformed process definition: {e}") from e

    processes = [e for e in root.iter() if _local(e.tag) == "process"]
    if not processes:
        raise DefinitionError("No process found in the definition")

    participants = _parse_participants(root)
    message_flows = _parse_message_flows(root)
    element_process = {
        element.get("id"): process.get("id", "")
        for process in processes
        for element in process.iter()
        if element.get("id") and element is not process
    }

    names = [coordinator] if coordinator else [w.name for w in workers if w.is_orchestrator]
    coordinating = _select_coordinator(processes, participants, names)
    # The coordinating pool is never a human pool, whatever its name
    coordinating = coordinating.model_copy(update={"human": False})
    participants = [
        coordinating if p.id == coordinating.id else p for p in participants
    ] or [coordinating]
    process = next(
        (p for p in processes if p.get("id") == coordinating.process_ref), None
    )
    if process is None:
        raise DefinitionError(
            f"Participant {coordinating.name} references unknown process "
            f"{coordinating.process_ref}"
        )
    process_id = process.get("id", "")
    logger.info(f"Coordinating process: {process_id} ({coordinating.name})")

    human_ids = _human_task_ids(
        process, coordinating, participants, message_flows, element_process
    )

    tasks: Dict[str, Task] = {}
    for child in process:
        element_type = _local(child.tag)
        task_id = child.get("id")
        if not task_id:
            continue
        name = child.get("name") or ""
        documentation = _text(child, "documentation")

        if element_type in EVENT_TYPES:
            kind = EVENT_TYPES[element_type]
        elif element_type in GATEWAY_TYPES:
            kind = TaskKind.GATEWAY
        elif element_type in SERVICE_TYPES or element_type in HUMAN_TYPES:
            kind = TaskKind.HUMAN if task_id in human_ids else TaskKind.SERVICE
        else:
            if element_type == "boundaryEvent":
                logger.warning(f"Ignoring unsupported boundary event {task_id}")
            continue

        tasks[task_id] = Task(
            id=task_id,
            name=name,
            kind=kind,
            process_id=process_id,
            element_type=element_type,
            documentation=documentation,
            gateway_type=GATEWAY_TYPES.get(element_type),
            default_flow=child.get("default"),
        )

    if not any(t.kind == TaskKind.START for t in tasks.values()):
        raise DefinitionError(f"Process {process_id} has no start event")

    declared: List[Flow] = []
    for child in _children(process, "sequenceFlow"):
        source, target = child.get("sourceRef", ""), child.get("targetRef", "")
        if source not in tasks or target not in tasks:
            logger.warning(
                f"Dropping sequence flow {child.get('id')} to or from an unsupported node"
            )
            continue
        condition = _text(child, "conditionExpression")
        condition = _spring_to_dollar(condition) if condition else None
        declared.append(
            Flow(
                id=child.get("id", ""),
                name=child.get("name") or "",
                source=source,
                target=target,
                condition=condition,
                declared_condition=condition,
            )
        )

    gateway_flows: Dict[str, List[Flow]] = {}
    for task in list(tasks.values()):
        if task.gateway_type not in CHOICE_GATEWAYS:
            continue
        outgoing = [f for f in declared if f.source == task.id]
        reasoning = reasoning_gateways and len(outgoing) >= 2
        tasks[task.id] = task.model_copy(
            update={"routing": "reasoning" if reasoning else "static"}
        )
        if reasoning:
            outgoing = [
                f.model_copy(update={"condition": route_condition(task.id, f.id)})
                for f in outgoing
            ]
        gateway_flows[task.id] = outgoing

    rewritten = {f.id: f for flows_ in gateway_flows.values() for f in flows_}
    flows = [rewritten.get(f.id, f) for f in declared]

    logger.info(
        f"Normalized {process_id}: {len(tasks)} nodes, {len(flows)} flows, "
        f"human checkpoints: {', '.join(sorted(human_ids)) or 'none'}"
    )

    return ProcessDefinition(
        graph=ExecutableGraph(process_id=process_id, tasks=tasks, flows=flows),
        coordinator=coordinating,
        participants=participants,
        message_flows=message_flows,
        human_task_ids=frozenset(human_ids),
        gateway_flows=gateway_flows,
        contracts=_parse_contracts(processes),
        element_process=element_process,
    )
