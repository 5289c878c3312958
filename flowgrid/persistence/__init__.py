"""Persistence layer for flowgrid runs, steps and approvals."""

from __future__ import annotations

from typing import Optional

from ..config import FlowgridConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import ApprovalRequest, FlowRun, FlowStep, RunDetail
from .repository import RunRepository
from .sqlite import SQLiteRunRepository

_repository_instance: RunRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowgridConfig] = None
) -> RunRepository:
    """Factory function to obtain a run repository.

    The backend is selected from ``database_url``, which can be passed
    explicitly or come from the loaded configuration (where the
    ``FLOWGRID_DATABASE_URL``/``DATABASE_URL`` env overrides already apply).
    With no database configured an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url:
        if not isinstance(_repository_instance, InMemoryRunRepository):
            _repository_instance = InMemoryRunRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteRunRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresRunRepository

        _repository_instance = PostgresRunRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository instance."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "ApprovalRequest",
    "FlowRun",
    "FlowStep",
    "RunDetail",
    "RunRepository",
    "InMemoryRunRepository",
    "SQLiteRunRepository",
    "get_repository",
    "reset_repository",
]
