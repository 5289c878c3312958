"""Run-scoped flow state and the helpers that move data between tasks.

Workers talk in free text. These helpers pull structured data back out of
that text, keep a short rolling summary of what happened so far and build the
scoped input a task receives when it declares a data contract.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .constants import (
    CURRENT_TASK_KEY,
    FLOW_SUMMARY_KEY,
    KNOWN_DECISION_KEYS,
    MISSING_INPUTS_KEY,
    ORIGINAL_REQUEST_KEY,
    RAW_OUTPUT_KEY,
    SUMMARY_LIMIT,
)
from .contracts import StepStatus, TaskDataContract

if TYPE_CHECKING:
    from .persistence.models import FlowStep


_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_BARE_JSON_RE = re.compile(r"(?:^|\n)\s*(\{[^{}]*\"[^\"]+\"\s*:\s*[^{}]*\})")
_INLINE_JSON_RE = re.compile(r"\{[^{}]*\"[^\"]+\"\s*:\s*[^{}]*\}")


def _key_pattern(key: str) -> re.Pattern[str]:
    return re.compile(
        rf"[\"']?{re.escape(key)}[\"']?\s*[:=]\s*[\"']?([\w-]+)[\"']?", re.IGNORECASE
    )


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _scalars(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: v for k, v in obj.items() if isinstance(v, (str, bool, int, float))
    }


def derive_original_request(input_data: Any) -> str:
    """Best guess at the user's request inside a run's input payload."""
    if isinstance(input_data, str):
        return input_data[:500]
    if isinstance(input_data, dict):
        if input_data.get("request"):
            return str(input_data["request"])
        nested = input_data.get("input")
        if isinstance(nested, dict) and nested.get("request"):
            return str(nested["request"])
    return json.dumps(input_data, default=str)[:500]


def extract_structured_output(
    text: str, contract: Optional[TaskDataContract] = None
) -> Dict[str, Any]:
    """Extract structured data embedded in a worker's free-text answer.

    Fenced JSON blocks are merged first, then bare one-level JSON objects.
    Declared output keys still missing are looked up as ``key: value``
    patterns. The untouched text is always kept under ``_raw``.
    """
    result: Dict[str, Any] = {}

    for match in _JSON_BLOCK_RE.finditer(text):
        parsed = _loads_object(match.group(1))
        if parsed is not None:
            result.update(parsed)

    for match in _BARE_JSON_RE.finditer(text):
        parsed = _loads_object(match.group(1))
        if parsed is not None:
            result.update(parsed)

    if contract and contract.output_keys:
        for key in contract.output_keys:
            if key in result:
                continue
            match = _key_pattern(key).search(text)
            if match:
                result[key] = match.group(1)

    result[RAW_OUTPUT_KEY] = text
    return result


def extract_decision_variables(text: str) -> Dict[str, Any]:
    """Pull routing-relevant variables out of worker output.

    Top-level scalars of any embedded JSON object are taken as they are.
    Well-known decision keys written as ``key: value`` are lower-cased, with
    ``true``/``false`` turned into booleans.
    """
    variables: Dict[str, Any] = {}

    for match in _JSON_BLOCK_RE.finditer(text):
        parsed = _loads_object(match.group(1))
        if parsed is not None:
            variables.update(_scalars(parsed))

    for match in _INLINE_JSON_RE.finditer(text):
        parsed = _loads_object(match.group(0))
        if parsed is not None:
            variables.update(_scalars(parsed))

    for key in KNOWN_DECISION_KEYS:
        match = _key_pattern(key).search(text)
        if not match:
            continue
        value: Any = match.group(1).lower()
        if value == "true":
            value = True
        elif value == "false":
            value = False
        variables[key] = value

    return variables


def _summary_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return "[object]"
    return str(value)


def update_flow_summary(
    current: str,
    task_name: str,
    outputs: Dict[str, Any],
    limit: int = SUMMARY_LIMIT,
) -> str:
    """Append a one-line digest of ``outputs`` and keep the summary bounded.

    When the summary grows past ``limit`` the oldest text is dropped, cutting
    at a sentence boundary and prefixing ``...``.
    """
    pairs = [
        f"{key}={_summary_value(value)[:30]}"
        for key, value in outputs.items()
        if key not in (RAW_OUTPUT_KEY, "_lastOutput")
    ][:3]
    addition = f"{task_name}: {', '.join(pairs)}. " if pairs else f"{task_name} completed. "
    updated = current + addition

    if len(updated) <= limit:
        return updated
    trimmed = updated[-(limit - 20):]
    boundary = trimmed.find(". ")
    return "..." + (trimmed[boundary + 2:] if boundary >= 0 else trimmed)


class FlowState(BaseModel):
    """In-memory state of one run.

    Not persisted on its own; snapshots are written to the run row so a run
    can be reconstructed, and it can also be rebuilt from step history.
    """

    original_request: str = ""
    flow_summary: str = ""
    task_outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def from_input(cls, input_data: Any) -> "FlowState":
        return cls(original_request=derive_original_request(input_data))

    @classmethod
    def from_steps(
        cls,
        input_data: Any,
        steps: Iterable["FlowStep"],
        summary_limit: int = SUMMARY_LIMIT,
    ) -> "FlowState":
        """Replay completed step outputs in order."""
        state = cls.from_input(input_data)
        for step in steps:
            if step.status != StepStatus.COMPLETED or not step.output:
                continue
            structured = step.output.get("structured")
            if isinstance(structured, dict):
                state.record(step.task_id, step.name, structured, summary_limit)
        return state

    def record(
        self,
        task_id: str,
        task_name: str,
        structured: Dict[str, Any],
        summary_limit: int = SUMMARY_LIMIT,
    ) -> None:
        # Re-inserting moves the task to the end so merge order follows execution
        self.task_outputs.pop(task_id, None)
        self.task_outputs[task_id] = structured
        self.flow_summary = update_flow_summary(
            self.flow_summary, task_name, structured, summary_limit
        )

    def merged_output(self) -> Dict[str, Any]:
        """Task outputs merged in execution order; later keys win."""
        merged: Dict[str, Any] = {}
        for outputs in self.task_outputs.values():
            merged.update(outputs)
        return merged

    def running_context(self, task_name: str) -> Dict[str, Any]:
        """Full context handed to tasks without a data contract."""
        return {
            **self.task_outputs,
            CURRENT_TASK_KEY: task_name,
            FLOW_SUMMARY_KEY: self.flow_summary,
            ORIGINAL_REQUEST_KEY: self.original_request,
        }


def build_scoped_input(
    task_name: str,
    contract: Optional[TaskDataContract],
    flow_state: FlowState,
) -> Dict[str, Any]:
    """Build the input for a task from the keys its contract declares.

    Each declared key is taken from the first prior task output that has it.
    Keys found nowhere are listed under ``_missingInputs``; this never raises.
    Without a contract (or with no input keys) the full running context is
    returned.
    """
    if contract is None or not contract.input_keys:
        return flow_state.running_context(task_name)

    scoped: Dict[str, Any] = {}
    missing: List[str] = []
    for key in contract.input_keys:
        for outputs in flow_state.task_outputs.values():
            if outputs and key in outputs:
                scoped[key] = outputs[key]
                break
        else:
            missing.append(key)

    if missing:
        scoped[MISSING_INPUTS_KEY] = missing

    return {
        **scoped,
        CURRENT_TASK_KEY: task_name,
        FLOW_SUMMARY_KEY: flow_state.flow_summary,
        ORIGINAL_REQUEST_KEY: flow_state.original_request,
    }
