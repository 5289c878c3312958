"""Process catalog: resolves process ids to definitions and workers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import yaml
from pydantic import ValidationError

from ..contracts import WorkerRef
from ..exceptions import DefinitionError
from .models import ProcessEntry

logger = logging.getLogger(__name__)


class ProcessCatalog(Protocol):
    async def get_process(self, tenant_id: str, process_id: str) -> ProcessEntry | None:
        """Return the process visible to ``tenant_id`` or ``None``."""

    async def list_workers(self, process_id: str) -> List[WorkerRef]:
        """Return the workers attached to a process."""


class InMemoryCatalog:
    """Catalog held in local memory."""

    def __init__(self, entries: Optional[List[ProcessEntry]] = None) -> None:
        self._entries: Dict[str, ProcessEntry] = {}
        for entry in entries or []:
            self.register(entry)

    def register(self, entry: ProcessEntry) -> None:
        if entry.id in self._entries:
            logger.warning(f"Replacing catalog entry {entry.id}")
        self._entries[entry.id] = entry

    def entries(self) -> List[ProcessEntry]:
        return list(self._entries.values())

    async def get_process(self, tenant_id: str, process_id: str) -> ProcessEntry | None:
        entry = self._entries.get(process_id)
        if entry is None or not entry.visible_to(tenant_id):
            return None
        return entry

    async def list_workers(self, process_id: str) -> List[WorkerRef]:
        entry = self._entries.get(process_id)
        return list(entry.workers) if entry else []


def load_catalog(path: str | Path) -> InMemoryCatalog:
    """Load a catalog from a YAML manifest.

    Each process names its BPMN inline (``bpmn``) or through ``bpmn_file``,
    resolved relative to the manifest::

        processes:
          - id: campaign
            bpmn_file: campaign.bpmn
            workers:
              - id: w1
                name: Creative Director Agent
                role: orchestrator
    """
    manifest = Path(path)
    with open(manifest) as f:
        data = yaml.safe_load(f) or {}

    catalog = InMemoryCatalog()
    for raw in data.get("processes", []):
        raw = dict(raw)
        bpmn_file = raw.pop("bpmn_file", None)
        if bpmn_file:
            raw["bpmn"] = (manifest.parent / bpmn_file).read_text()
        if "tenant" in raw:
            raw["tenant_id"] = raw.pop("tenant")
        try:
            catalog.register(ProcessEntry(**raw))
        except ValidationError as e:
            raise DefinitionError(
                f"Invalid catalog entry {raw.get('id')!r} in {manifest}: {e}"
            ) from e
    logger.info(f"Loaded {len(catalog.entries())} processes from {manifest}")
    return catalog
