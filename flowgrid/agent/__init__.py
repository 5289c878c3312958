"""Worker invocation: reasoning call, retries and creative side task."""

from .executor import AgentExecutor, build_worker_prompt, is_creative_task
from .images import ImageGenerator, OpenAIImageGenerator
from .reasoning import PydanticAIReasoner, Reasoner

__all__ = [
    "AgentExecutor",
    "ImageGenerator",
    "OpenAIImageGenerator",
    "PydanticAIReasoner",
    "Reasoner",
    "build_worker_prompt",
    "is_creative_task",
]
