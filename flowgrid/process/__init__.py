"""Process model: parse and normalize process definitions."""

from .bpmn import match_key, normalize, route_condition, route_variable
from .conditions import evaluate
from .contracts import parse_data_contract
from .graph import ExecutableGraph, Flow, MessageFlow, Participant, ProcessDefinition, Task

__all__ = [
    "ExecutableGraph",
    "Flow",
    "MessageFlow",
    "Participant",
    "ProcessDefinition",
    "Task",
    "evaluate",
    "match_key",
    "normalize",
    "parse_data_contract",
    "route_condition",
    "route_variable",
]
