"""Pydantic models describing catalog entries."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ..contracts import WorkerRef


class ProcessEntry(BaseModel):
    """A process definition available to start runs from."""

    id: str
    name: Optional[str] = None
    # Owning tenant; None makes the process visible to every tenant
    tenant_id: Optional[str] = None
    bpmn: str
    coordinator: Optional[str] = None
    reasoning_gateways: bool = True
    workers: List[WorkerRef] = Field(default_factory=list)

    @field_validator("bpmn")
    @classmethod
    def _ensure_bpmn(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("bpmn must be a non-empty document")
        return v

    def visible_to(self, tenant_id: str) -> bool:
        return self.tenant_id is None or self.tenant_id == tenant_id
