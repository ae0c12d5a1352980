"""Error taxonomy for the run engine.

Every failure is raised synchronously to the caller (worker or UI action) and
is never retried by the engine itself.
"""

from typing import Optional


class FlowRunError(Exception):
    """Base class for all engine errors."""


class NotFoundError(FlowRunError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ValidationFailed(FlowRunError):
    """The request is malformed for the current snapshot or run."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class InvalidStateTransition(FlowRunError):
    def __init__(self, entity_id: str, current: str, action: str):
        self.entity_id = entity_id
        self.current = current
        self.action = action
        super().__init__(f"cannot {action} {entity_id}: current state is {current}")


class AlreadyTerminal(FlowRunError):
    def __init__(self, run_id: str, state: str):
        self.run_id = run_id
        self.state = state
        super().__init__(f"run {run_id} already finished with state {state}")


class ClaimConflict(FlowRunError):
    """Another worker claimed the run first; poll for the next pending run."""

    def __init__(self, run_id: str, state: str):
        self.run_id = run_id
        self.state = state
        super().__init__(f"run {run_id} is not claimable (state={state})")


class RerunIneligible(FlowRunError):
    def __init__(self, reason: str, message: str):
        self.reason = reason
        self.message = message
        super().__init__(message)
