"""flowgrid: BPMN process orchestration for AI workers."""

__version__ = "0.1.0"

from .channels import get_channel
from .config import FlowgridConfig, load_config
from .contracts import RunEvent, RunStatus, StepStatus, WorkerRef
from .engine import FlowRunner
from .persistence import get_repository
from .process import normalize
from .registry import InMemoryCatalog, ProcessEntry, load_catalog

__all__ = [
    "FlowRunner",
    "FlowgridConfig",
    "InMemoryCatalog",
    "ProcessEntry",
    "RunEvent",
    "RunStatus",
    "StepStatus",
    "WorkerRef",
    "get_channel",
    "get_repository",
    "load_catalog",
    "load_config",
    "normalize",
]
