"""Error taxonomy for the orchestrator.

"The system could not run the task" is signalled by ConfigurationError,
ResourceError, NotFoundError and StateConflictError. "The task failed" is an
ExecutionOutcomeError, which the agent engine captures into its result.
"""


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class ConfigurationError(OrchestratorError):
    """Missing or invalid configuration. Not retryable."""


class NotFoundError(OrchestratorError):
    """Referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str, detail: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        message = f"{entity} with id {entity_id} not found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StateConflictError(OrchestratorError):
    """Operation is invalid for the entity's current state."""

    def __init__(self, entity: str, entity_id: str, current: str, operation: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.operation = operation
        super().__init__(f"Cannot {operation} {entity} {entity_id}: current status is {current}")


class ResourceError(OrchestratorError):
    """Workspace or container allocation/lifecycle failure."""

    def __init__(self, entity: str, entity_id: str | None, operation: str, message: str):
        self.entity = entity
        self.entity_id = entity_id
        self.operation = operation
        target = f"{entity} {entity_id}" if entity_id else entity
        super().__init__(f"Failed to {operation} {target}: {message}")


class ExecutionOutcomeError(OrchestratorError):
    """Provider or tool failure during the agent loop."""


class ProviderError(ExecutionOutcomeError):
    """LLM backend request failed."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ToolExecutionError(ExecutionOutcomeError):
    """Tool could not be executed against the sandbox."""


class ExecutionCancelled(OrchestratorError):
    """Cancellation was requested while an operation was in flight."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)
