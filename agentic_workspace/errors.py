"""
Error taxonomy for Agentic Workspace.

Every task-level failure maps onto one of these classes so terminal
states can carry a human-readable reason.
"""

from typing import Optional


class AgentWorkspaceError(Exception):
    """Base class for all Agentic Workspace errors."""


class ConfigurationError(AgentWorkspaceError):
    """Invalid workspace or component configuration."""


class WorkspaceNotFound(AgentWorkspaceError):
    """Raised when a workspace id does not resolve."""

    def __init__(self, workspace_id: str):
        super().__init__(f"Workspace {workspace_id} not found")
        self.workspace_id = workspace_id


class WorkspaceBusy(AgentWorkspaceError):
    """Raised when a workspace already has an active task."""

    def __init__(self, workspace_id: str, active_task_id: str):
        super().__init__(
            f"Workspace {workspace_id} already has an active task ({active_task_id})"
        )
        self.workspace_id = workspace_id
        self.active_task_id = active_task_id


class IsolationViolation(AgentWorkspaceError):
    """A read or write tried to cross a workspace boundary.

    Always indicates a caller bug; never retried.
    """

    def __init__(self, expected: str, actual: str, what: str = "record"):
        super().__init__(
            f"Isolation violation: {what} belongs to workspace {actual!r}, "
            f"not {expected!r}"
        )
        self.expected = expected
        self.actual = actual


class FactNotFound(AgentWorkspaceError):
    """Raised when a semantic fact id does not resolve."""


class ContextItemNotFound(AgentWorkspaceError):
    """Raised when a context item id does not resolve."""


class ValidationError(AgentWorkspaceError):
    """The LLM returned malformed structured output, even after repair."""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.raw_output = raw_output


class CapabilityUnavailable(AgentWorkspaceError):
    """No LLM provider could serve the request."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class AutomationError(AgentWorkspaceError):
    """A browser action failed.

    ``precondition_failed`` marks page-state drift: the page no longer
    matches what the step expected, so blind retries are pointless.
    """

    def __init__(
        self,
        message: str,
        precondition_failed: bool = False,
        data: Optional[dict] = None,
    ):
        super().__init__(message)
        self.precondition_failed = precondition_failed
        self.data = data or {}


class BudgetExceeded(AgentWorkspaceError):
    """Pinned context alone does not fit the workspace token budget."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Pinned context needs {required} tokens but only {available} are available"
        )
        self.required = required
        self.available = available


class ApprovalTimeout(AgentWorkspaceError):
    """An approval request was not resolved in time."""

    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"Approval request {request_id} timed out after {timeout:g}s")
        self.request_id = request_id
        self.timeout = timeout


def describe_error(error: BaseException) -> str:
    """Turn an exception into a reason suitable for a terminal task state."""
    if isinstance(error, ApprovalTimeout):
        return f"Cancelled: no approval received within {error.timeout:g}s"
    if isinstance(error, ValidationError):
        return f"Planner produced invalid output: {error}"
    if isinstance(error, CapabilityUnavailable):
        return f"No language model available: {error}"
    if isinstance(error, AutomationError):
        return f"Browser action failed: {error}"
    if isinstance(error, BudgetExceeded):
        return f"Context budget exceeded: {error}"
    if isinstance(error, IsolationViolation):
        return f"Internal error: {error}"
    if isinstance(error, AgentWorkspaceError):
        return str(error)
    return f"Unexpected error: {type(error).__name__}: {error}"
