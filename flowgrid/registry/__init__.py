"""Process catalog and its models."""

from __future__ import annotations

from .catalog import InMemoryCatalog, ProcessCatalog, load_catalog
from .models import ProcessEntry

__all__ = ["InMemoryCatalog", "ProcessCatalog", "ProcessEntry", "load_catalog"]
