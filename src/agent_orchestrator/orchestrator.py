"""Task orchestrator - runs one task end to end.

admission -> worker -> execution -> workspace -> container -> agent loop ->
teardown. Resources acquired on the way are always released, whatever the
outcome.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from agent_orchestrator.admission import AdmissionController, AdmissionScope
from agent_orchestrator.agent.engine import AgentEngine, AgentResult, IterationMetrics
from agent_orchestrator.agent.tools import AgentToolExecutor
from agent_orchestrator.cancellation import CancellationToken
from agent_orchestrator.config import get_settings
from agent_orchestrator.containers import ContainerManager
from agent_orchestrator.errors import OrchestratorError
from agent_orchestrator.executions import ExecutionTracker
from agent_orchestrator.llm.base import LLMProvider
from agent_orchestrator.logging_config import bind_execution_context, clear_execution_context
from agent_orchestrator.models import (
    Container,
    ContainerCreateOptions,
    ContainerStatus,
    Execution,
    ExecutionStatus,
    Workspace,
    new_id,
)
from agent_orchestrator.outputs import OutputCollector
from agent_orchestrator.tasks import TaskStore
from agent_orchestrator.workers import WorkerPool
from agent_orchestrator.workspaces import WorkspaceManager

logger = structlog.get_logger()


@dataclass
class TaskRunOutcome:
    task_id: str
    admitted: bool
    exhausted_scope: AdmissionScope | None = None
    reason: str | None = None
    worker_id: str | None = None
    execution_id: str | None = None
    status: ExecutionStatus | None = None
    result: AgentResult | None = None


class TaskOrchestrator:
    """Wires the components together for single task runs."""

    def __init__(
        self,
        admission: AdmissionController,
        workers: WorkerPool,
        workspaces: WorkspaceManager,
        containers: ContainerManager,
        executions: ExecutionTracker,
        task_store: TaskStore,
        provider: LLMProvider,
        sandbox_image: str | None = None,
        max_iterations: int | None = None,
        command_timeout_seconds: float | None = None,
        cpu_limit: float | None = None,
        memory_limit: int | None = None,
    ):
        settings = get_settings()
        self.admission = admission
        self.workers = workers
        self.workspaces = workspaces
        self.containers = containers
        self.executions = executions
        self.task_store = task_store
        self.provider = provider
        self.sandbox_image = sandbox_image or settings.sandbox_image
        self.max_iterations = max_iterations if max_iterations is not None else settings.agent_max_iterations
        self.command_timeout_seconds = (
            command_timeout_seconds if command_timeout_seconds is not None else settings.command_timeout_seconds
        )
        self.cpu_limit = cpu_limit
        self.memory_limit = memory_limit
        self.outputs = OutputCollector(containers)
        self._tokens: dict[str, CancellationToken] = {}

    async def run_task(
        self,
        task_id: str,
        repo_id: str | None = None,
        user_id: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> TaskRunOutcome:
        """Run `task_id` through the agent loop in a fresh sandbox.

        A refused admission is reported in the outcome, not raised.

        Raises:
            ConfigurationError, ResourceError, NotFoundError: the system could
                not run the task. The execution is marked `error` first.
        """
        worker_id = new_id()
        admission = self.admission.try_admit(worker_id, repo_id=repo_id, user_id=user_id)
        if not admission.admitted:
            return TaskRunOutcome(
                task_id=task_id,
                admitted=False,
                exhausted_scope=admission.exhausted_scope,
                reason=admission.reason,
            )

        token = cancellation or CancellationToken()
        execution: Execution | None = None
        workspace: Workspace | None = None
        container: Container | None = None

        try:
            await self.workers.spawn(repo_id=repo_id, user_id=user_id, worker_id=worker_id)
            execution = await self.executions.create_execution(worker_id, task_id)
            token.execution_id = token.execution_id or execution.id
            self._tokens[execution.id] = token
            bind_execution_context(execution.id, worker_id=worker_id, task_id=task_id)
            await self.workers.assign_task(worker_id, task_id, execution.id)

            try:
                workspace = await self.workspaces.create_workspace(worker_id, task_id, repo_id)
                container = await self.containers.create_container(
                    ContainerCreateOptions(
                        image=self.sandbox_image,
                        name=f"agent-{execution.id[:12]}",
                        workspace_id=workspace.id,
                        execution_id=execution.id,
                        env={"TASK_ID": task_id, "EXECUTION_ID": execution.id},
                        cpu_limit=self.cpu_limit,
                        memory_limit=self.memory_limit,
                    )
                )
                await self.containers.start_container(container.id)
                # cancel_execution may land while the sandbox is provisioning
                if token.is_cancelled or execution.status.is_terminal:
                    if not execution.status.is_terminal:
                        await self.executions.cancel(execution.id)
                    logger.info("task_run_cancelled_before_start", task_id=task_id, execution_id=execution.id)
                    await self.workers.complete_task(worker_id)
                    return TaskRunOutcome(
                        task_id=task_id,
                        admitted=True,
                        worker_id=worker_id,
                        execution_id=execution.id,
                        status=execution.status,
                    )
                await self.executions.update_status(execution.id, ExecutionStatus.RUNNING)

                result = await self._engine(execution.id, workspace, container).execute_task(task_id, token)
            except Exception as e:
                logger.error("task_run_failed", task_id=task_id, error=str(e), error_type=type(e).__name__)
                await self._fail(execution, str(e))
                await self.workers.mark_error(worker_id)
                raise

            status = await self._finish(execution, container, result, token)
            await self.workers.complete_task(worker_id)
            return TaskRunOutcome(
                task_id=task_id,
                admitted=True,
                worker_id=worker_id,
                execution_id=execution.id,
                status=status,
                result=result,
            )
        finally:
            await self._teardown(container, workspace)
            if execution is not None:
                self._tokens.pop(execution.id, None)
            if self.workers.get_worker(worker_id) is not None:
                await self.workers.terminate(worker_id)
            clear_execution_context()
            self.admission.release(worker_id)

    def _engine(self, execution_id: str, workspace: Workspace, container: Container) -> AgentEngine:
        tools = AgentToolExecutor(
            workspace.path,
            containers=self.containers,
            container_id=container.id,
            command_timeout_seconds=self.command_timeout_seconds,
        )

        async def record(metrics: IterationMetrics) -> None:
            await self.executions.update_metrics(
                execution_id,
                tokens_used=metrics.tokens_used,
                tool_calls_count=metrics.tool_calls_count,
            )

        return AgentEngine(
            self.provider,
            tools,
            self.task_store,
            max_iterations=self.max_iterations,
            on_iteration=record,
        )

    async def _finish(
        self,
        execution: Execution,
        container: Container,
        result: AgentResult,
        token: CancellationToken,
    ) -> ExecutionStatus:
        if result.success:
            status = ExecutionStatus.SUCCESS
        elif token.is_cancelled:
            status = ExecutionStatus.CANCELLED
        else:
            status = ExecutionStatus.ERROR

        output: dict[str, Any] = {
            "final_message": result.final_message,
            "iterations": result.iterations,
            "tool_calls_count": result.tool_calls_count,
            "tokens_used": result.tokens_used,
        }
        if status == ExecutionStatus.SUCCESS and container.status == ContainerStatus.RUNNING:
            collected = await self.outputs.collect(container.id, summary=result.final_message)
            output.update(collected.to_dict())
        self.executions.set_output(execution.id, output)

        # cancel_execution may already have closed it
        if execution.status.is_terminal:
            return execution.status
        await self.executions.update_status(execution.id, status, error=result.error)
        return status

    async def _fail(self, execution: Execution | None, error: str) -> None:
        if execution is None or execution.status.is_terminal:
            return
        await self.executions.update_status(execution.id, ExecutionStatus.ERROR, error=error)

    async def _teardown(self, container: Container | None, workspace: Workspace | None) -> None:
        if container is not None and self.containers.get_container_status(container.id) is not None:
            if container.status == ContainerStatus.RUNNING:
                try:
                    await self.containers.stop_container(container.id)
                except OrchestratorError as e:
                    logger.warning("teardown_stop_failed", container_id=container.id, error=str(e))
            try:
                await self.containers.remove_container(container.id, force=True)
            except OrchestratorError as e:
                logger.error("teardown_remove_failed", container_id=container.id, error=str(e))

        if workspace is not None:
            try:
                await self.workspaces.cleanup_workspace(workspace.id)
            except OrchestratorError as e:
                logger.error("teardown_workspace_failed", workspace_id=workspace.id, error=str(e))

    async def cancel_execution(self, execution_id: str) -> Execution:
        """Mark the execution cancelled and stop its in-flight run.

        Raises:
            NotFoundError: unknown execution.
            StateConflictError: execution already finished.
        """
        execution = await self.executions.cancel(execution_id)
        token = self._tokens.get(execution_id)
        if token is not None:
            token.cancel("cancelled")
        logger.info("execution_cancel_requested", execution_id=execution_id, in_flight=token is not None)
        return execution
