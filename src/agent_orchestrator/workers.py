"""Worker pool - logical execution slots and their status transitions."""

import structlog

from agent_orchestrator.errors import NotFoundError, StateConflictError
from agent_orchestrator.events import EventHub, WorkerStatusChanged
from agent_orchestrator.models import Worker, WorkerStatus

logger = structlog.get_logger()


class WorkerPool:
    """Tracks workers. Admission limits are enforced by AdmissionController."""

    def __init__(self, events: EventHub):
        self.events = events
        self._workers: dict[str, Worker] = {}

    def _require(self, worker_id: str) -> Worker:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise NotFoundError("Worker", worker_id)
        return worker

    async def _transition(self, worker: Worker, status: WorkerStatus) -> Worker:
        old = worker.status
        worker.status = status
        logger.info("worker_status_changed", worker_id=worker.id, old_status=old.value, new_status=status.value)
        await self.events.publish(
            WorkerStatusChanged(
                worker_id=worker.id,
                old_status=old.value,
                new_status=status.value,
                task_id=worker.current_task_id,
            )
        )
        return worker

    async def spawn(
        self,
        repo_id: str | None = None,
        user_id: str | None = None,
        worker_id: str | None = None,
    ) -> Worker:
        worker = Worker(repo_id=repo_id, user_id=user_id)
        if worker_id is not None:
            if worker_id in self._workers:
                raise StateConflictError("Worker", worker_id, self._workers[worker_id].status.value, "spawn")
            worker.id = worker_id
        self._workers[worker.id] = worker
        logger.info("worker_spawned", worker_id=worker.id, repo_id=repo_id, user_id=user_id)
        await self.events.publish(
            WorkerStatusChanged(worker_id=worker.id, old_status=None, new_status=worker.status.value)
        )
        return worker

    async def terminate(self, worker_id: str) -> Worker:
        worker = self._require(worker_id)
        worker.current_task_id = None
        worker.current_execution_id = None
        return await self._transition(worker, WorkerStatus.TERMINATED)

    async def pause(self, worker_id: str) -> Worker:
        worker = self._require(worker_id)
        if worker.status != WorkerStatus.WORKING:
            raise StateConflictError("Worker", worker_id, worker.status.value, "pause")
        return await self._transition(worker, WorkerStatus.PAUSED)

    async def resume(self, worker_id: str) -> Worker:
        """Resume a paused worker, back to working if it still holds a task."""
        worker = self._require(worker_id)
        if worker.status != WorkerStatus.PAUSED:
            raise StateConflictError("Worker", worker_id, worker.status.value, "resume")
        status = WorkerStatus.WORKING if worker.current_task_id else WorkerStatus.IDLE
        return await self._transition(worker, status)

    async def assign_task(self, worker_id: str, task_id: str, execution_id: str | None = None) -> Worker:
        worker = self._require(worker_id)
        if worker.status != WorkerStatus.IDLE:
            raise StateConflictError("Worker", worker_id, worker.status.value, "assign a task to")
        worker.current_task_id = task_id
        worker.current_execution_id = execution_id
        return await self._transition(worker, WorkerStatus.WORKING)

    async def complete_task(self, worker_id: str) -> Worker:
        worker = self._require(worker_id)
        if worker.status == WorkerStatus.TERMINATED:
            raise StateConflictError("Worker", worker_id, worker.status.value, "complete a task on")
        worker.current_task_id = None
        worker.current_execution_id = None
        return await self._transition(worker, WorkerStatus.IDLE)

    async def mark_error(self, worker_id: str) -> Worker:
        worker = self._require(worker_id)
        return await self._transition(worker, WorkerStatus.ERROR)

    def get_worker(self, worker_id: str) -> Worker | None:
        return self._workers.get(worker_id)

    def list_workers(self, status: WorkerStatus | None = None) -> list[Worker]:
        if status is None:
            return list(self._workers.values())
        return [w for w in self._workers.values() if w.status == status]
