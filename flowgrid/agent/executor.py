"""Invoke workers through the reasoning call."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional

from ..config import RetryConfig
from ..constants import (
    CREATIVE_OUTPUT_KEYWORDS,
    CREATIVE_TASK_KEYWORDS,
    CREATIVE_WORKER_KEYWORDS,
    CURRENT_TASK_KEY,
    FLOW_SUMMARY_KEY,
    MAX_IMAGES_PER_TASK,
    MISSING_INPUTS_KEY,
    ORIGINAL_REQUEST_KEY,
)
from ..contracts import ExecutionResult, GeneratedImage, ScopedContext, WorkerRef
from ..exceptions import WorkerInvocationError
from ..utils.retry import schedule_retry
from .images import ImageGenerator
from .reasoning import Reasoner

logger = logging.getLogger(__name__)

_DECISION_BLOCK = (
    "IMPORTANT: At the end of your response, include a JSON block with key "
    "decision variables, e.g.:\n"
    '```json\n{"validationStatus": "valid", "conceptQuality": "acceptable"}\n```'
)

_THEME_SYSTEM_PROMPT = (
    "You are an image prompt engineer. Given a creative task output, extract the "
    "distinct design themes/concepts and create a detailed image prompt for each. "
    f"Return a JSON array only, max {MAX_IMAGES_PER_TASK} items: "
    '[{"theme": "short name", "prompt": "detailed image prompt"}]. '
    "No markdown, just JSON."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


def build_worker_prompt(
    input_data: Any = None, scoped: Optional[ScopedContext] = None
) -> str:
    """Compose the user prompt handed to a worker.

    With a scoped context the prompt lists the current task, the skill, the
    declared inputs (and any missing ones), the flow summary, the output
    format and the user request. Without one the running context is
    serialized whole.
    """
    if scoped is None:
        input_text = (
            input_data
            if isinstance(input_data, str)
            else json.dumps(input_data, indent=2, default=str)
        )
        return (
            "Process the following input and provide your output.\n\n"
            f"{_DECISION_BLOCK}\n"
            'Use values like "valid"/"invalid" for validationStatus, '
            '"acceptable"/"needs_revision" for conceptQuality.\n\n'
            f"Input:\n{input_text}"
        )

    fields = {
        k: v
        for k, v in scoped.scoped_input.items()
        if k
        not in (CURRENT_TASK_KEY, FLOW_SUMMARY_KEY, ORIGINAL_REQUEST_KEY, MISSING_INPUTS_KEY)
    }
    input_text = (
        json.dumps(fields, indent=2, default=str)
        if fields
        else "(No specific input fields from previous steps)"
    )
    missing = scoped.scoped_input.get(MISSING_INPUTS_KEY)
    missing_note = (
        "\nNote: These expected inputs were not found in previous outputs: "
        + ", ".join(missing)
        if missing
        else ""
    )

    if scoped.output_keys:
        keys = ", ".join(f'"{k}": "..."' for k in scoped.output_keys)
        output_format = (
            "EXPECTED OUTPUT FORMAT:\n"
            "Please structure your response to include these fields: "
            f"{', '.join(scoped.output_keys)}\n"
            "Include a JSON block at the end with these exact keys.\n"
            f"```json\n{{{keys}}}\n```"
        )
    else:
        output_format = _DECISION_BLOCK

    skill = f"\nYOUR SKILL: {scoped.skill_name}" if scoped.skill_name else ""
    return (
        f"CURRENT TASK: {scoped.task_name}{skill}\n\n"
        f"EXPECTED INPUT:\n{input_text}{missing_note}\n\n"
        f"FLOW CONTEXT:\n{scoped.flow_summary or 'This is the first step in the flow.'}\n\n"
        f"{output_format}\n\n"
        f"USER REQUEST:\n{scoped.original_request}"
    )


def is_creative_task(
    task_name: str = "", worker_name: str = "", output_keys: Optional[List[str]] = None
) -> bool:
    task = task_name.lower()
    worker = worker_name.lower()
    keys = [k.lower() for k in output_keys or []]
    return (
        any(kw in task for kw in CREATIVE_TASK_KEYWORDS)
        or any(kw in worker for kw in CREATIVE_WORKER_KEYWORDS)
        or any(kw in key for kw in CREATIVE_OUTPUT_KEYWORDS for key in keys)
    )


class AgentExecutor:
    """Run a worker's reasoning call with retries and the creative side task."""

    def __init__(
        self,
        reasoner: Reasoner,
        image_generator: Optional[ImageGenerator] = None,
        retry: Optional[RetryConfig] = None,
    ) -> None:
        self.reasoner = reasoner
        self.image_generator = image_generator
        self.retry = retry or RetryConfig()

    async def complete(
        self, worker: WorkerRef, system_prompt: str, prompt: str
    ) -> str:
        """Reasoning call retried on transient failures.

        Raises the last ``WorkerInvocationError`` once attempts run out or a
        permanent failure occurs.
        """
        attempts = max(1, self.retry.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self.reasoner.complete(system_prompt, prompt, worker.model)
            except WorkerInvocationError as e:
                if not e.transient or attempt >= attempts:
                    raise
                logger.warning(
                    f"{worker.name} attempt {attempt}/{attempts} failed "
                    f"({e.status_code}), retrying"
                )
                await schedule_retry(
                    attempt, base=self.retry.base_delay, cap=self.retry.max_delay
                )
        raise WorkerInvocationError("Max retries exceeded")

    async def invoke(
        self,
        worker: WorkerRef,
        prompt: str,
        scoped: Optional[ScopedContext] = None,
        task_name: str = "",
    ) -> ExecutionResult:
        """Invoke ``worker`` with ``prompt``; never raises for worker failures."""
        try:
            output = await self.complete(worker, worker.instructions(), prompt)
        except WorkerInvocationError as e:
            logger.error(f"Error executing worker {worker.name}: {e}")
            return ExecutionResult(success=False, error=str(e))

        images: List[GeneratedImage] = []
        task = scoped.task_name if scoped else task_name
        output_keys = scoped.output_keys if scoped else []
        if self.image_generator is not None and is_creative_task(
            task, worker.name, output_keys
        ):
            logger.info(f"Creative task detected: {task or worker.name}, generating images")
            images = await self._generate_images(worker, output, scoped)

        return ExecutionResult(success=True, output=output, images=images)

    async def _generate_images(
        self, worker: WorkerRef, output: str, scoped: Optional[ScopedContext]
    ) -> List[GeneratedImage]:
        try:
            themes = await self._extract_themes(worker, output, scoped)
        except Exception as e:
            logger.error(f"Failed to extract image themes: {e}")
            return []

        images: List[GeneratedImage] = []
        for item in themes[:MAX_IMAGES_PER_TASK]:
            theme, prompt = item.get("theme", ""), item.get("prompt", "")
            if not prompt:
                continue
            try:
                url = await self.image_generator.generate(prompt)
            except Exception as e:
                logger.error(f"Image generation failed for {theme!r}: {e}")
                continue
            if url:
                images.append(GeneratedImage(url=url, prompt=prompt, theme=theme))
        return images

    async def _extract_themes(
        self, worker: WorkerRef, output: str, scoped: Optional[ScopedContext]
    ) -> List[dict]:
        context = (
            f"Task: {scoped.task_name}\nOriginal request: {scoped.original_request}\n"
            f"Agent output:\n{output[:2000]}"
            if scoped
            else output[:2000]
        )
        raw = await self.reasoner.complete(_THEME_SYSTEM_PROMPT, context, worker.model)
        parsed = json.loads(_FENCE_RE.sub("", raw.strip()) or "[]")
        if not isinstance(parsed, list):
            return []
        return [item for item in parsed if isinstance(item, dict)]
