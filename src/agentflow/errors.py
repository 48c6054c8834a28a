"""Error kinds raised by the workflow core.

Every error carries a ``kind`` string that is stored verbatim in
``ExecutionState.errors`` when the error terminates an execution, so callers can
tell a timeout from a cycle runaway without parsing messages.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for all agentflow errors."""

    kind = "WorkflowError"

    def __init__(self, message: str, *, node_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id


# ── Definition errors ────────────────────────────────────────────────────────


class DefinitionValidationError(WorkflowError):
    """The workflow definition is structurally invalid.

    ``errors`` holds every problem found, not just the first.
    """

    kind = "DefinitionValidationError"

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = errors
        super().__init__("; ".join(errors))


class CycleError(DefinitionValidationError):
    """A cycle was found and the definition disallows cycles."""

    kind = "CycleError"

    def __init__(self, cycle_nodes: list[str]):
        self.cycle_nodes = cycle_nodes
        super().__init__(f"Workflow contains a cycle through nodes: {', '.join(cycle_nodes)}")


class DanglingEdgeError(DefinitionValidationError):
    """An edge references a node that does not exist."""

    kind = "DanglingEdgeError"


class ExpressionError(WorkflowError):
    """An expression failed to parse or used a construct outside the sandbox."""

    kind = "ExpressionError"

    def __init__(self, message: str, expression: str = ""):
        super().__init__(message)
        self.expression = expression


# ── Execution errors ─────────────────────────────────────────────────────────


class CycleIterationExceeded(WorkflowError):
    kind = "CycleIterationExceeded"

    def __init__(self, node_id: str, limit: int):
        super().__init__(
            f"Node '{node_id}' exceeded its iteration limit of {limit}", node_id=node_id
        )
        self.limit = limit


class NodeTimeoutError(WorkflowError):
    kind = "NodeTimeoutError"

    def __init__(self, node_id: str, timeout_ms: int):
        super().__init__(
            f"Node '{node_id}' execution timed out after {timeout_ms}ms", node_id=node_id
        )
        self.timeout_ms = timeout_ms


class NodeExecutionError(WorkflowError):
    """Wraps an executor-specific failure (returned or raised)."""

    kind = "NodeExecutionError"

    def __init__(self, message: str, *, node_id: str | None = None, cause: BaseException | None = None):
        super().__init__(message, node_id=node_id)
        self.cause = cause


class MaxNodesExceededError(WorkflowError):
    kind = "MaxNodesExceededError"

    def __init__(self, limit: int):
        super().__init__(f"Workflow exceeded the maximum of {limit} node executions")
        self.limit = limit


class MaxExecutionTimeExceededError(WorkflowError):
    kind = "MaxExecutionTimeExceededError"

    def __init__(self, limit_ms: int):
        super().__init__(f"Workflow exceeded the maximum execution time of {limit_ms}ms")
        self.limit_ms = limit_ms


class CheckpointPersistError(WorkflowError):
    kind = "CheckpointPersistError"


class BackendError(WorkflowError):
    """The LLM/tool execution backend returned an error or is not configured."""

    kind = "BackendError"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.code = code


# ── Control errors (raised to callers, never stored on a state) ─────────────


class ExecutionNotFoundError(WorkflowError):
    kind = "ExecutionNotFoundError"

    def __init__(self, execution_id: str):
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class ResumeRejectedError(WorkflowError):
    """A resume call did not match the single pending checkpoint."""

    kind = "ResumeRejectedError"


class InvalidTransitionError(WorkflowError):
    kind = "InvalidTransitionError"
