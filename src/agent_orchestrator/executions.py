"""Execution tracker - status, timing and metrics of task execution attempts."""

from typing import Any

import structlog

from agent_orchestrator.errors import NotFoundError, StateConflictError
from agent_orchestrator.events import EventHub, ExecutionMetricsUpdated, ExecutionStatusChanged
from agent_orchestrator.models import Execution, ExecutionStatus, utcnow

logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {
            ExecutionStatus.RUNNING,
            ExecutionStatus.SUCCESS,
            ExecutionStatus.ERROR,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.RUNNING: frozenset(
        {ExecutionStatus.SUCCESS, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED}
    ),
}


class ExecutionTracker:
    """Records execution attempts and publishes their changes."""

    def __init__(self, events: EventHub):
        self.events = events
        self._executions: dict[str, Execution] = {}

    def _require(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    async def create_execution(self, worker_id: str, task_id: str) -> Execution:
        """Open a pending execution.

        Raises:
            StateConflictError: the worker already has a pending or running execution.
        """
        active = next((e for e in self.find_by_worker_id(worker_id) if not e.status.is_terminal), None)
        if active is not None:
            raise StateConflictError("Worker", worker_id, f"busy with execution {active.id}", "create an execution on")

        execution = Execution(worker_id=worker_id, task_id=task_id)
        self._executions[execution.id] = execution
        logger.info("execution_created", execution_id=execution.id, worker_id=worker_id, task_id=task_id)
        await self.events.publish(
            ExecutionStatusChanged(
                execution_id=execution.id,
                worker_id=worker_id,
                old_status=None,
                new_status=execution.status.value,
            )
        )
        return execution

    async def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        error: str | None = None,
    ) -> Execution:
        """Move an execution along pending -> running -> terminal.

        Entering `running` stamps `started_at`. Entering a terminal status
        stamps `completed_at`, back-fills `started_at` and computes
        `duration_ms`. Re-entering the current non-terminal status is a no-op.

        Raises:
            NotFoundError: unknown execution.
            StateConflictError: the transition is not allowed, including any
                move out of a terminal status.
        """
        execution = self._require(execution_id)
        old = execution.status

        if old == status and not old.is_terminal:
            return execution
        if status not in ALLOWED_TRANSITIONS.get(old, frozenset()):
            raise StateConflictError("Execution", execution_id, old.value, f"move to {status.value}")

        now = utcnow()
        execution.status = status
        if status == ExecutionStatus.RUNNING and execution.started_at is None:
            execution.started_at = now
        if status.is_terminal:
            execution.completed_at = now
            if execution.started_at is None:
                execution.started_at = now
            execution.duration_ms = int((now - execution.started_at).total_seconds() * 1000)
        if error is not None:
            execution.error = error

        logger.info(
            "execution_status_changed",
            execution_id=execution_id,
            old_status=old.value,
            new_status=status.value,
            duration_ms=execution.duration_ms,
        )
        await self.events.publish(
            ExecutionStatusChanged(
                execution_id=execution_id,
                worker_id=execution.worker_id,
                old_status=old.value,
                new_status=status.value,
                error=execution.error,
            )
        )
        return execution

    async def cancel(self, execution_id: str) -> Execution:
        """Cancel a pending or running execution."""
        execution = self._require(execution_id)
        if execution.status not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
            raise StateConflictError("Execution", execution_id, execution.status.value, "cancel")
        return await self.update_status(execution_id, ExecutionStatus.CANCELLED, error="cancelled")

    async def update_metrics(
        self,
        execution_id: str,
        tokens_used: int = 0,
        cost_usd: float = 0.0,
        tool_calls_count: int = 0,
    ) -> Execution:
        """Add metric deltas to the running totals."""
        if tokens_used < 0 or cost_usd < 0 or tool_calls_count < 0:
            raise ValueError(
                f"Metric deltas must be non-negative, got tokens_used={tokens_used}, "
                f"cost_usd={cost_usd}, tool_calls_count={tool_calls_count}"
            )

        execution = self._require(execution_id)
        execution.tokens_used += tokens_used
        execution.cost_usd += cost_usd
        execution.tool_calls_count += tool_calls_count

        await self.events.publish(
            ExecutionMetricsUpdated(
                execution_id=execution_id,
                worker_id=execution.worker_id,
                tokens_used=execution.tokens_used,
                cost_usd=execution.cost_usd,
                tool_calls_count=execution.tool_calls_count,
            )
        )
        return execution

    def set_output(self, execution_id: str, output: dict[str, Any]) -> Execution:
        execution = self._require(execution_id)
        execution.output = output
        return execution

    def get_execution(self, execution_id: str) -> Execution | None:
        return self._executions.get(execution_id)

    def find_by_worker_id(self, worker_id: str) -> list[Execution]:
        return [e for e in self._executions.values() if e.worker_id == worker_id]

    def find_by_task_id(self, task_id: str) -> list[Execution]:
        return [e for e in self._executions.values() if e.task_id == task_id]

    def find_by_statuses(self, statuses: list[ExecutionStatus]) -> list[Execution]:
        wanted = set(statuses)
        return [e for e in self._executions.values() if e.status in wanted]

    def find_recent(self, limit: int = 10) -> list[Execution]:
        return sorted(self._executions.values(), key=lambda e: e.created_at, reverse=True)[:limit]
