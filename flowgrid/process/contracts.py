"""Parse task data contracts from task documentation."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional

from ..contracts import TaskDataContract
from ..exceptions import DefinitionError

logger = logging.getLogger(__name__)

_AGENT_RE = re.compile(r"Agent:\s*(.+)", re.IGNORECASE)
_SKILL_RE = re.compile(r"Skill:\s*(.+)", re.IGNORECASE)
_INPUT_RE = re.compile(r"Input:\s*(\{[^}]+\})", re.IGNORECASE)
_OUTPUT_RE = re.compile(r"Output:\s*(\{[^}]+\})", re.IGNORECASE)


def _field_keys(block: str) -> List[str]:
    """Field names of ``{ name: type, other: type }``."""
    inner = block.strip()[1:-1]
    keys = [part.split(":")[0].strip() for part in inner.split(",")]
    return [k for k in keys if k]


def _key_list(value: Any) -> List[str]:
    if isinstance(value, dict):
        return [str(k) for k in value]
    if isinstance(value, list):
        keys = []
        for item in value:
            if isinstance(item, dict) and "name" in item:
                keys.append(str(item["name"]))
            elif isinstance(item, str):
                keys.append(item)
        return keys
    return []


def _from_json(documentation: str) -> Optional[TaskDataContract]:
    try:
        doc = json.loads(documentation)
    except ValueError:
        return None
    if not isinstance(doc, dict) or not ("input" in doc or "output" in doc):
        return None
    version = doc.get("version", 1)
    try:
        if isinstance(version, bool):
            raise TypeError(version)
        version = int(version)
    except (TypeError, ValueError) as e:
        raise DefinitionError(
            f"Data contract version must be an integer, got {version!r}"
        ) from e
    return TaskDataContract(
        version=version,
        input_keys=_key_list(doc.get("input")),
        output_keys=_key_list(doc.get("output")),
        worker_name=str(doc.get("worker") or doc.get("agent") or "").strip(),
        skill_name=str(doc.get("skill") or "").strip(),
    )


def _from_text(documentation: str) -> TaskDataContract:
    input_match = _INPUT_RE.search(documentation)
    output_match = _OUTPUT_RE.search(documentation)
    agent_match = _AGENT_RE.search(documentation)
    skill_match = _SKILL_RE.search(documentation)
    return TaskDataContract(
        version=0,
        input_keys=_field_keys(input_match.group(1)) if input_match else [],
        output_keys=_field_keys(output_match.group(1)) if output_match else [],
        worker_name=agent_match.group(1).strip() if agent_match else "",
        skill_name=skill_match.group(1).strip() if skill_match else "",
    )


def parse_data_contract(documentation: str | None) -> Optional[TaskDataContract]:
    """Parse a task's documentation into a data contract.

    The versioned JSON document is tried first, then the free-text
    ``Input: {...}`` / ``Output: {...}`` / ``Agent:`` / ``Skill:`` lines. A
    contract only exists when it declares input or output keys.
    A JSON contract whose ``version`` is not an integer raises
    ``DefinitionError``.
    """
    if not documentation or not documentation.strip():
        return None
    text = documentation.strip()
    contract = _from_json(text) or _from_text(text)
    if not contract.input_keys and not contract.output_keys:
        return None
    return contract
