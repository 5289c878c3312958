"""Exception hierarchy for flowgrid."""

from __future__ import annotations

from typing import Optional


class FlowgridError(Exception):
    """Base class for all flowgrid errors."""


class DefinitionError(FlowgridError):
    """Process definition is malformed or has no executable coordinating process."""


class WorkerInvocationError(FlowgridError):
    """A reasoning call made on behalf of a worker failed.

    ``transient`` marks failures worth retrying (rate limits, overload,
    temporary unavailability).
    """

    def __init__(
        self, message: str, transient: bool = False, status_code: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class RoutingAmbiguityError(FlowgridError):
    """A gateway routing answer could not be mapped onto an outgoing flow."""


class RunNotFound(FlowgridError):
    """No run exists with the given id for the tenant."""


class ApprovalNotFound(FlowgridError):
    """No approval request exists with the given id for the tenant."""


class EngineNotFound(FlowgridError):
    """The engine instance for a run is not resident in this process."""


class NotPaused(FlowgridError):
    """The run is not waiting for an approval."""


class InvalidTransition(FlowgridError):
    """A run status change outside the run state machine was attempted."""


class PersistenceError(FlowgridError):
    """The state store failed to read or write."""
